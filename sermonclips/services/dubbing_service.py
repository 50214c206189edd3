"""
Dubbing Service - ElevenLabs text-to-speech and audio track replacement.
"""

import asyncio
import logging
import os
from typing import Awaitable, Callable, Optional

import httpx

from sermonclips.config import Settings, get_settings
from sermonclips.services.media_transform import MediaTransformEngine, MediaTransformError
from sermonclips.services.retry import call_with_backoff

logger = logging.getLogger(__name__)


# ElevenLabs voices per delivery tone
VOICE_MAP = {
    "professional": "pNInz6obpg8nEByWQX2t",
    "calm": "EXAVITQu4vr4xnSDxMaL",
    "energetic": "21m00Tcm4TlvDq8ikWAM",
}
DEFAULT_TONE = "professional"


def voice_settings_for(tone: str) -> dict:
    return {
        "stability": 0.6 if tone == "energetic" else 0.75,
        "similarity_boost": 0.85,
        "style": 0.5,
        "use_speaker_boost": True,
    }


class DubbingService:
    """
    Generates a dubbed voice track and muxes it onto a rendered clip.

    TTS calls retry on overload and quota errors with the same
    classification as the analysis client.
    """

    def __init__(
        self,
        media: MediaTransformEngine,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.settings = settings or get_settings()
        self.media = media
        self._transport = transport
        self._sleep = sleep or asyncio.sleep
        self._http_client: Optional[httpx.AsyncClient] = None

        if not self.settings.elevenlabs_api_key:
            logger.warning("ELEVENLABS_API_KEY not set, dubbing will fail")

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                base_url=self.settings.elevenlabs_base_url,
                timeout=httpx.Timeout(120.0, connect=30.0),
                headers={
                    "xi-api-key": self.settings.elevenlabs_api_key or "",
                    "Accept": "audio/mpeg",
                },
                transport=self._transport,
            )
        return self._http_client

    @staticmethod
    def voice_for(tone: Optional[str], voice_id: Optional[str] = None) -> str:
        if voice_id:
            return voice_id
        return VOICE_MAP.get(tone or DEFAULT_TONE, VOICE_MAP[DEFAULT_TONE])

    async def synthesize(
        self,
        text: str,
        output_path: str,
        tone: str = DEFAULT_TONE,
        voice_id: Optional[str] = None,
    ) -> str:
        """
        Render ``text`` to an MP3 at ``output_path``.

        Raises:
            DubbingError: Missing key, empty text, or the API kept failing
        """
        if not self.settings.elevenlabs_api_key:
            raise DubbingError("ELEVENLABS_API_KEY not configured")
        if not text.strip():
            raise DubbingError("Nothing to synthesize")

        voice = self.voice_for(tone, voice_id)
        payload = {
            "text": text,
            "model_id": self.settings.elevenlabs_model,
            "voice_settings": voice_settings_for(tone),
        }

        logger.info(f"Generating dub audio ({len(text)} chars, tone={tone}, voice={voice})")
        audio = await call_with_backoff(
            "ElevenLabs TTS",
            lambda: self._request_speech(voice, payload),
            (DubbingTransportError,),
            self.settings,
            self._sleep,
        )

        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
        with open(output_path, "wb") as f:
            f.write(audio)
        logger.info(f"Dub audio written: {output_path} ({len(audio) / 1024:.1f} KB)")
        return output_path

    async def _request_speech(self, voice: str, payload: dict) -> bytes:
        client = await self._get_client()
        try:
            response = await client.post(f"/v1/text-to-speech/{voice}", json=payload)
        except httpx.HTTPError as e:
            raise DubbingError(f"ElevenLabs request failed: {e}") from e

        if response.status_code != 200:
            raise DubbingTransportError(
                f"ElevenLabs API error ({response.status_code}): {response.text[:300]}",
                retry_after=response.headers.get("retry-after"),
            )
        return response.content

    async def remux(self, video_path: str, audio_path: str, output_path: str) -> str:
        """Replace the clip's audio with the dubbed track."""
        try:
            return await self.media.replace_audio(video_path, audio_path, output_path)
        except MediaTransformError as e:
            raise DubbingError(f"Failed to mux dubbed audio: {e}") from e

    async def close(self):
        if self._http_client:
            await self._http_client.aclose()


class DubbingError(Exception):
    """Exception raised when dubbing fails."""
    pass


class DubbingTransportError(DubbingError):
    """The TTS API answered with an error status."""

    def __init__(self, message: str, retry_after: Optional[str] = None):
        super().__init__(message)
        self.retry_after = retry_after
