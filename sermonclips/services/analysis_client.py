"""
AI Analysis Client - Gemini video analysis through the REST Files API.

Flow:
1. Download the source video locally
2. Upload it to the Files API (resumable protocol)
3. Poll the remote file until it is ACTIVE
4. Ask the model for highlights as JSON and normalize them
"""

import asyncio
import inspect
import json
import logging
import math
import mimetypes
import os
import re
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union

import httpx

from sermonclips.config import Settings, get_settings
from sermonclips.services.retry import call_with_backoff
from sermonclips.services.storage_gateway import StorageGateway

logger = logging.getLogger(__name__)


ProgressCallback = Callable[[int], Union[None, Awaitable[None]]]

DEFAULT_HIGHLIGHT_TITLE = "Untitled Highlight"
DEFAULT_CLIP_SECONDS = 60
UPLOAD_CHUNK_BYTES = 8 * 1024 * 1024

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


@dataclass
class HighlightCandidate:
    """A normalized highlight proposed by the model."""

    title: str
    start_time: int  # seconds
    end_time: int  # seconds
    caption: str = ""
    emotion: Optional[str] = None
    platform: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AnalysisResult:
    """Result of a full analysis run."""

    highlights: list[HighlightCandidate]
    summary: str
    raw_response: str


@dataclass
class RemoteFile:
    """A file held by the Files API."""

    name: str
    uri: str
    mime_type: str
    state: str = "PROCESSING"


@dataclass
class HealthCheckResult:
    valid: bool
    message: str
    model: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


# ============================================================
# Highlight coercion
# ============================================================

def time_to_seconds(value: Any) -> Optional[float]:
    """
    Convert a model-supplied time to seconds.

    Accepts numbers, numeric strings, "MM:SS" and "HH:MM:SS". Anything
    else yields None.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None

    text = str(value).strip()
    if not text:
        return None

    if ":" in text:
        parts = text.split(":")
        if len(parts) not in (2, 3):
            return None
        try:
            numbers = [float(p) for p in parts]
        except ValueError:
            return None
        if any(n < 0 for n in numbers):
            return None
        if len(numbers) == 2:
            minutes, seconds = numbers
            return minutes * 60 + seconds
        hours, minutes, seconds = numbers
        return hours * 3600 + minutes * 60 + seconds

    match = re.match(r"^-?\d+(?:\.\d+)?", text)
    if not match:
        return None
    return float(match.group())


def coerce_highlight(raw: dict[str, Any]) -> HighlightCandidate:
    """
    Normalize one raw highlight object.

    A bad or negative start becomes 0; a bad end, or one not after the
    start, becomes start + 60.
    """
    start = time_to_seconds(raw.get("startTime", raw.get("start_time")))
    if start is None or start < 0:
        start = 0
    start = int(start)

    end = time_to_seconds(raw.get("endTime", raw.get("end_time")))
    end = int(end) if end is not None else None
    if end is None or end <= start:
        end = start + DEFAULT_CLIP_SECONDS

    title = str(raw.get("title") or "").strip() or DEFAULT_HIGHLIGHT_TITLE
    caption = raw.get("caption")
    emotion = raw.get("emotion")
    platform = raw.get("platform")

    return HighlightCandidate(
        title=title,
        start_time=start,
        end_time=end,
        caption=str(caption) if caption is not None else "",
        emotion=str(emotion) if emotion else None,
        platform=str(platform) if platform else None,
    )


def parse_analysis_response(text: str) -> tuple[list[HighlightCandidate], str]:
    """
    Parse model output into (highlights, summary).

    Strict JSON first, then a fenced ```json block, then the outermost
    {...} span in the text.

    Raises:
        AnalysisParseError: No JSON object could be recovered, or it has no
            ``highlights`` list
    """
    parsed = _load_json_object(text)

    highlights = parsed.get("highlights")
    if not isinstance(highlights, list):
        raise AnalysisParseError("Response JSON has no 'highlights' list")

    candidates = [coerce_highlight(h) for h in highlights if isinstance(h, dict)]
    summary = parsed.get("summary") or ""
    return candidates, str(summary)


def _load_json_object(text: str) -> dict[str, Any]:
    attempts = [text]

    fence = _FENCE_RE.search(text)
    if fence:
        attempts.append(fence.group(1))

    span = _OBJECT_RE.search(text)
    if span:
        attempts.append(span.group())

    for candidate in attempts:
        try:
            parsed = json.loads(candidate)
        except (json.JSONDecodeError, TypeError):
            continue
        if isinstance(parsed, dict):
            return parsed

    logger.error(f"Failed to parse JSON from response: {text[:500]}")
    raise AnalysisParseError(f"Failed to parse JSON from response: {text[:200]}")


async def _iter_file(path: str, chunk_size: int = UPLOAD_CHUNK_BYTES) -> AsyncIterator[bytes]:
    """Read a file in chunks off the event loop."""
    loop = asyncio.get_event_loop()
    with open(path, "rb") as f:
        while True:
            chunk = await loop.run_in_executor(None, f.read, chunk_size)
            if not chunk:
                break
            yield chunk


class _ProgressTracker:
    """Forwards progress to a callback, never going backwards."""

    def __init__(self, callback: Optional[ProgressCallback]):
        self._callback = callback
        self.value = -1

    async def report(self, percent: float) -> None:
        percent = max(0, min(100, int(percent)))
        if percent <= self.value:
            return
        self.value = percent
        if self._callback is None:
            return
        result = self._callback(percent)
        if inspect.isawaitable(result):
            await result


class AnalysisClient:
    """
    Client for Gemini video analysis.

    Features:
    - Resumable upload to the Files API
    - Bounded polling of the remote file state
    - JSON-mode generation with tolerant parsing
    - Back-off on overload and quota errors, honoring server retry hints
    """

    def __init__(
        self,
        storage: StorageGateway,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage
        self._transport = transport
        self._sleep = sleep or asyncio.sleep
        self._http_client: Optional[httpx.AsyncClient] = None

        if not self.settings.gemini_api_key:
            logger.warning("GEMINI_API_KEY not set, analysis will fail")

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                base_url=self.settings.gemini_base_url,
                timeout=httpx.Timeout(300.0, connect=30.0),
                headers={"x-goog-api-key": self.settings.gemini_api_key or ""},
                transport=self._transport,
            )
        return self._http_client

    async def analyze(
        self,
        source_url: str,
        title: str,
        on_progress: Optional[ProgressCallback] = None,
        work_id: Optional[str] = None,
    ) -> AnalysisResult:
        """
        Analyze a sermon video and return its highlights.

        Progress: download 0-15, upload 15-25, polling 25-70,
        generation 75-100.

        Raises:
            AnalysisError: Remote processing failed or no API key
            AnalysisTimeoutError: Remote file never became ACTIVE
            AnalysisTransportError: API errors left after retries
            AnalysisParseError: Model output could not be parsed
        """
        if not self.settings.gemini_api_key:
            raise AnalysisError("GEMINI_API_KEY not configured")

        progress = _ProgressTracker(on_progress)
        await progress.report(0)

        os.makedirs(self.settings.temp_directory, exist_ok=True)
        tag = work_id or uuid.uuid4().hex[:12]
        local_path = os.path.join(
            self.settings.temp_directory,
            f"analysis-{tag}-{int(time.time() * 1000)}.mp4",
        )

        remote: Optional[RemoteFile] = None
        try:
            logger.info(f"[{tag}] Downloading source for analysis: {source_url}")
            await self.storage.download(source_url, local_path)
            await progress.report(15)

            remote = await self._with_retry(
                "upload",
                lambda: self._upload_file(local_path, display_name=title),
            )
            logger.info(f"[{tag}] Uploaded to Files API as {remote.name}")
            await progress.report(25)

            remote = await self._wait_until_active(remote, progress)
            await progress.report(75)

            prompt = self._build_prompt(title)
            raw_text = await self._with_retry(
                "generate",
                lambda: self._generate(remote, prompt),
            )
            await progress.report(90)

            highlights, summary = parse_analysis_response(raw_text)
            logger.info(f"[{tag}] Analysis returned {len(highlights)} highlights")
            await progress.report(100)

            return AnalysisResult(highlights=highlights, summary=summary, raw_response=raw_text)

        finally:
            if os.path.isfile(local_path):
                try:
                    os.remove(local_path)
                except OSError as e:
                    logger.warning(f"Failed to remove {local_path}: {e}")
            if remote is not None:
                await self._delete_remote_file(remote)

    async def check_health(self) -> HealthCheckResult:
        """Validate the API key with a minimal generation against the configured model."""
        model = self.settings.gemini_model
        if not self.settings.gemini_api_key:
            return HealthCheckResult(valid=False, message="GEMINI_API_KEY is missing from environment variables")

        client = await self._get_client()
        try:
            response = await client.post(
                f"/v1beta/models/{model}:generateContent",
                json={
                    "contents": [{"parts": [{"text": "Hi"}]}],
                    "generationConfig": {"maxOutputTokens": 8},
                },
            )
        except httpx.HTTPError as e:
            logger.warning(f"Gemini health check failed: {e}")
            return HealthCheckResult(valid=False, message=str(e), model=model)

        if response.status_code != 200:
            message = f"Gemini API error ({response.status_code}): {response.text[:300]}"
            logger.warning(message)
            return HealthCheckResult(valid=False, message=message, model=model)

        key = self.settings.gemini_api_key
        return HealthCheckResult(
            valid=True,
            message=f"API key is valid (verified with {model})",
            model=model,
            details={"api_key_preview": f"{key[:6]}...{key[-4:]}" if len(key) > 10 else "***"},
        )

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    async def _with_retry(self, operation: str, call: Callable[[], Awaitable[Any]]) -> Any:
        return await call_with_backoff(
            f"Gemini {operation}", call, (AnalysisTransportError,), self.settings, self._sleep
        )

    # ------------------------------------------------------------------
    # REST calls
    # ------------------------------------------------------------------

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise AnalysisTransportError(f"Gemini request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise AnalysisTransportError(f"Gemini request failed: {e}") from e

        if response.status_code >= 400:
            raise AnalysisTransportError(
                f"Gemini API error ({response.status_code}): {response.text[:500]}",
                status_code=response.status_code,
                retry_after=response.headers.get("retry-after"),
            )
        return response

    async def _upload_file(self, local_path: str, display_name: str) -> RemoteFile:
        """Resumable upload: start a session, then send the bytes and finalize."""
        size = os.path.getsize(local_path)
        mime_type = mimetypes.guess_type(local_path)[0] or "video/mp4"

        start = await self._request(
            "POST",
            "/upload/v1beta/files",
            headers={
                "X-Goog-Upload-Protocol": "resumable",
                "X-Goog-Upload-Command": "start",
                "X-Goog-Upload-Header-Content-Length": str(size),
                "X-Goog-Upload-Header-Content-Type": mime_type,
            },
            json={"file": {"display_name": display_name[:128]}},
        )
        upload_url = start.headers.get("x-goog-upload-url")
        if not upload_url:
            raise AnalysisError("Files API did not return an upload URL")

        response = await self._request(
            "POST",
            upload_url,
            headers={
                "Content-Length": str(size),
                "X-Goog-Upload-Offset": "0",
                "X-Goog-Upload-Command": "upload, finalize",
            },
            content=_iter_file(local_path),
        )
        return self._remote_file_from(response.json().get("file", {}), mime_type)

    async def _get_file(self, name: str) -> RemoteFile:
        response = await self._request("GET", f"/v1beta/{name}")
        return self._remote_file_from(response.json())

    async def _wait_until_active(self, remote: RemoteFile, progress: _ProgressTracker) -> RemoteFile:
        """Poll the remote file, mapping attempts onto 25-70% progress."""
        max_attempts = self.settings.analysis_poll_max_attempts

        for attempt in range(1, max_attempts + 1):
            current = await self._with_retry("poll", lambda: self._get_file(remote.name))
            # The poll response can omit the upload-time fields
            remote = RemoteFile(
                name=current.name or remote.name,
                uri=current.uri or remote.uri,
                mime_type=current.mime_type or remote.mime_type,
                state=current.state,
            )

            if remote.state == "ACTIVE":
                return remote
            if remote.state == "FAILED":
                raise AnalysisError(f"Remote processing failed for {remote.name}")

            await progress.report(25 + 45 * attempt / max_attempts)
            logger.debug(f"Waiting for {remote.name} ({remote.state}), attempt {attempt}/{max_attempts}")
            await self._sleep(self.settings.analysis_poll_interval_seconds)

        raise AnalysisTimeoutError(
            f"File {remote.name} not ready after {max_attempts} polls"
        )

    async def _generate(self, remote: RemoteFile, prompt: str) -> str:
        model = self.settings.gemini_model
        response = await self._request(
            "POST",
            f"/v1beta/models/{model}:generateContent",
            json={
                "contents": [
                    {
                        "parts": [
                            {"file_data": {"mime_type": remote.mime_type, "file_uri": remote.uri}},
                            {"text": prompt},
                        ]
                    }
                ],
                "generationConfig": {
                    "temperature": self.settings.analysis_temperature,
                    "responseMimeType": "application/json",
                },
            },
        )

        body = response.json()
        try:
            parts = body["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError) as e:
            raise AnalysisParseError(f"No content in model response: {str(body)[:200]}") from e

        text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
        if not text.strip():
            raise AnalysisParseError("Model returned an empty response")
        return text

    async def _delete_remote_file(self, remote: RemoteFile) -> None:
        """Best effort; the Files API expires uploads on its own."""
        try:
            await self._request("DELETE", f"/v1beta/{remote.name}")
            logger.debug(f"Deleted remote file {remote.name}")
        except AnalysisError as e:
            logger.warning(f"Failed to delete remote file {remote.name}: {e}")

    @staticmethod
    def _remote_file_from(data: dict[str, Any], mime_type: str = "") -> RemoteFile:
        return RemoteFile(
            name=data.get("name", ""),
            uri=data.get("uri", ""),
            mime_type=data.get("mimeType") or mime_type,
            state=data.get("state", "PROCESSING"),
        )

    def _build_prompt(self, title: str) -> str:
        return f"""You are an expert editor of Christian sermon content. Watch the sermon video titled "{title}" and pick the 3 to 5 moments that would move an audience most or carry a clear message they can apply to daily life.

Rules:
- Each highlight must be 30 to 90 seconds long.
- startTime and endTime are seconds from the beginning of the video.
- Write title, caption and summary in the same language the preacher speaks.
- platform is one of "youtube_shorts", "instagram_reels", "tiktok" or "facebook".

Respond with JSON only, no other text, in exactly this shape:
{{
  "highlights": [
    {{
      "title": "short headline for the moment",
      "startTime": 120,
      "endTime": 180,
      "caption": "social caption, with a related scripture verse if one fits",
      "emotion": "e.g. moving, comforting, challenging",
      "platform": "youtube_shorts"
    }}
  ],
  "summary": "three-sentence summary of the whole sermon"
}}"""

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()


class AnalysisError(Exception):
    """Exception raised when video analysis fails."""
    pass


class AnalysisTransportError(AnalysisError):
    """The API call failed at the HTTP level."""

    def __init__(self, message: str, status_code: Optional[int] = None, retry_after: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class AnalysisParseError(AnalysisError):
    """The model output could not be turned into highlights. Never retried."""
    pass


class AnalysisTimeoutError(AnalysisError):
    """The uploaded file did not become ACTIVE within the poll budget."""
    pass
