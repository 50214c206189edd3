"""
Lipsync Service - HeyGen lip synchronization for dubbed clips.

Lipsync is an optional upgrade: every failure returns None so the caller
keeps the plain dubbed clip.
"""

import asyncio
import logging
import os
from typing import Awaitable, Callable, Optional

import httpx

from sermonclips.config import Settings, get_settings

logger = logging.getLogger(__name__)


class LipsyncService:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.settings = settings or get_settings()
        self._transport = transport
        self._sleep = sleep or asyncio.sleep
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    def enabled(self) -> bool:
        return bool(self.settings.heygen_api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                base_url=self.settings.heygen_base_url,
                timeout=httpx.Timeout(300.0, connect=30.0),
                headers={"X-Api-Key": self.settings.heygen_api_key or ""},
                transport=self._transport,
            )
        return self._http_client

    async def generate(
        self,
        video_path: str,
        audio_path: str,
        width: int = 1080,
        height: int = 1920,
    ) -> Optional[str]:
        """
        Produce a lip-synced video and return its URL, or None.

        Uploads both assets, creates the generation job and polls its status.
        """
        if not self.enabled:
            logger.warning("HEYGEN_API_KEY is missing, skipping lipsync")
            return None

        try:
            video_asset = await self._upload_asset(video_path, "video")
            audio_asset = await self._upload_asset(audio_path, "audio")
            logger.info(f"HeyGen assets uploaded (video={video_asset}, audio={audio_asset})")

            client = await self._get_client()
            response = await client.post(
                "/v2/video/generate",
                json={
                    "video_inputs": [
                        {
                            "character": {"type": "video", "video_asset_id": video_asset},
                            "voice": {"type": "audio", "audio_asset_id": audio_asset},
                        }
                    ],
                    "dimension": {"width": width, "height": height},
                },
            )
            response.raise_for_status()
            video_id = response.json()["data"]["video_id"]
            logger.info(f"HeyGen job created: {video_id}")

            return await self._poll_video(video_id)

        except (httpx.HTTPError, KeyError, TypeError, ValueError, LipsyncError) as e:
            logger.error(f"HeyGen lipsync failed, keeping plain dub: {e}")
            return None

    async def _upload_asset(self, path: str, asset_type: str) -> str:
        client = await self._get_client()
        with open(path, "rb") as f:
            response = await client.post(
                "/v1/asset/upload",
                params={"type": asset_type},
                files={"file": (os.path.basename(path), f)},
            )
        response.raise_for_status()
        data = response.json()["data"]
        asset_id = data.get("id") or data.get("asset_id")
        if not asset_id:
            raise LipsyncError(f"No asset id in upload response for {asset_type}")
        return asset_id

    async def _poll_video(self, video_id: str) -> str:
        client = await self._get_client()
        max_attempts = self.settings.lipsync_poll_max_attempts

        for attempt in range(1, max_attempts + 1):
            await self._sleep(self.settings.lipsync_poll_interval_seconds)

            response = await client.get("/v1/video_status.get", params={"video_id": video_id})
            response.raise_for_status()
            data = response.json()["data"]
            status = data.get("status")
            logger.debug(f"HeyGen status for {video_id}: {status} ({attempt}/{max_attempts})")

            if status == "completed":
                return data["video_url"]
            if status == "failed":
                raise LipsyncError(f"HeyGen video generation failed: {data.get('error')}")

        raise LipsyncError(f"HeyGen timeout after {max_attempts} polls")

    async def close(self):
        if self._http_client:
            await self._http_client.aclose()


class LipsyncError(Exception):
    """Exception raised inside the lipsync flow; never escapes ``generate``."""
    pass
