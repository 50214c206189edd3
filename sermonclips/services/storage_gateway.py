"""
Storage Gateway - S3-compatible object storage for sources, clips and thumbnails.
"""

import asyncio
import logging
import os
from typing import Optional
from urllib.parse import quote, unquote, urlparse

import boto3
import httpx
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError

from sermonclips.config import Settings, get_settings

logger = logging.getLogger(__name__)


class StorageGateway:
    """
    Thin wrapper over a single bucket.

    There is no retry logic here; every failure propagates as StorageError
    and the job queue decides whether to try again.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client=None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self._client = client
        self._http_transport = http_transport

    @property
    def bucket(self) -> str:
        return self.settings.s3_bucket

    @property
    def client(self):
        """Lazy-initialize S3 client."""
        if self._client is None:
            config = {
                "region_name": self.settings.aws_region,
            }
            if self.settings.aws_access_key_id and self.settings.aws_secret_access_key:
                config["aws_access_key_id"] = self.settings.aws_access_key_id
                config["aws_secret_access_key"] = self.settings.aws_secret_access_key
            if self.settings.storage_endpoint_url:
                config["endpoint_url"] = self.settings.storage_endpoint_url

            self._client = boto3.client("s3", **config)

        return self._client

    # ------------------------------------------------------------------
    # URL helpers
    # ------------------------------------------------------------------

    def public_url(self, path: str) -> str:
        """Stable public URL for an object key."""
        key = quote(path.lstrip("/"), safe="/")
        if self.settings.storage_public_base_url:
            return f"{self.settings.storage_public_base_url.rstrip('/')}/{key}"
        return f"https://{self.bucket}.s3.{self.settings.aws_region}.amazonaws.com/{key}"

    def key_from_url(self, url_or_key: str) -> Optional[str]:
        """
        Resolve a URL that points into the configured bucket back to its key.

        Plain keys are returned as-is. URLs for anything outside the bucket
        return None.
        """
        if url_or_key.startswith("s3://"):
            bucket, _, key = url_or_key[5:].partition("/")
            return key if bucket == self.bucket and key else None

        if not url_or_key.startswith(("http://", "https://")):
            return url_or_key.lstrip("/")

        base = self.settings.storage_public_base_url
        if base and url_or_key.startswith(base.rstrip("/") + "/"):
            return unquote(url_or_key[len(base.rstrip("/")) + 1:])

        parsed = urlparse(url_or_key)
        host = parsed.hostname or ""

        # Virtual-hosted style: bucket.s3.region.amazonaws.com/key
        if host.startswith(f"{self.bucket}.s3.") or host == f"{self.bucket}.s3.amazonaws.com":
            return unquote(parsed.path.lstrip("/"))

        # Path style: s3.region.amazonaws.com/bucket/key
        if host.startswith("s3.") or host.startswith("s3-"):
            bucket, _, key = parsed.path.lstrip("/").partition("/")
            if bucket == self.bucket and key:
                return unquote(key)

        return None

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        """Store bytes at ``path`` and return the public URL."""
        logger.info(f"Uploading {len(data)} bytes to s3://{self.bucket}/{path}")

        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(
                None,
                lambda: self.client.put_object(
                    Bucket=self.bucket,
                    Key=path,
                    Body=data,
                    ContentType=content_type,
                ),
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to upload {path}: {e}") from e

        return self.public_url(path)

    async def put_file(self, local_path: str, path: str, content_type: str) -> str:
        """Upload a local file (rendered clip, thumbnail) and return the public URL."""
        if not os.path.isfile(local_path):
            raise StorageError(f"File not found: {local_path}")

        file_size = os.path.getsize(local_path)
        logger.info(f"Uploading {local_path} ({file_size / 1024:.1f} KB) to s3://{self.bucket}/{path}")

        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(
                None,
                lambda: self.client.upload_file(
                    local_path,
                    self.bucket,
                    path,
                    ExtraArgs={"ContentType": content_type},
                ),
            )
        except (ClientError, BotoCoreError, S3UploadFailedError) as e:
            raise StorageError(f"Failed to upload {path}: {e}") from e

        url = self.public_url(path)
        logger.info(f"Upload complete: {url}")
        return url

    async def delete(self, path: str) -> None:
        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(
                None,
                lambda: self.client.delete_object(Bucket=self.bucket, Key=path),
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to delete {path}: {e}") from e

    async def download(self, url_or_key: str, local_path: str) -> str:
        """
        Fetch an object or URL to ``local_path``.

        Keys and URLs inside the configured bucket go through boto3; any
        other HTTP(S) URL is streamed with httpx.
        """
        os.makedirs(os.path.dirname(local_path) or ".", exist_ok=True)

        key = self.key_from_url(url_or_key)
        if key is not None:
            await self._download_object(key, local_path)
        else:
            await self._download_http(url_or_key, local_path)

        if not os.path.isfile(local_path):
            raise StorageError(f"Download completed but file not found: {local_path}")

        file_size = os.path.getsize(local_path)
        logger.info(f"Downloaded {url_or_key} -> {local_path} ({file_size / 1024 / 1024:.1f} MB)")
        return local_path

    async def _download_object(self, key: str, local_path: str) -> None:
        logger.info(f"Downloading s3://{self.bucket}/{key}")

        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(
                None,
                lambda: self.client.download_file(self.bucket, key, local_path),
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to download {key}: {e}") from e

    async def _download_http(self, url: str, local_path: str) -> None:
        logger.info(f"Downloading from direct URL: {url}")

        try:
            async with httpx.AsyncClient(timeout=300, transport=self._http_transport) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()

                    with open(local_path, "wb") as f:
                        async for chunk in response.aiter_bytes():
                            f.write(chunk)
        except httpx.HTTPError as e:
            raise StorageError(f"Failed to download {url}: {e}") from e


class StorageError(Exception):
    """Exception raised when an object storage operation fails."""
    pass
