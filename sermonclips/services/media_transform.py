"""
Media Transform Engine - FFmpeg clip extraction and thumbnails.
"""

import asyncio
import json
import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Optional

from sermonclips.config import Settings, get_platform_profile, get_settings

logger = logging.getLogger(__name__)


@dataclass
class MediaInfo:
    duration: float  # seconds
    width: int
    height: int

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"


class MediaTransformEngine:
    """
    Service for cutting platform-formatted clips with FFmpeg.

    Features:
    - Input-side seek for fast cuts on long sources
    - Cover-crop to the platform resolution (fills the frame, no letterbox)
    - H.264/AAC output with faststart for progressive playback
    - Output size validation to catch silent encode failures
    """

    def __init__(self, settings: Optional[Settings] = None, ffmpeg_path: str = "ffmpeg", ffprobe_path: str = "ffprobe"):
        self.settings = settings or get_settings()
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path

    @staticmethod
    def cover_crop_filter(width: int, height: int) -> str:
        """Scale up until both sides cover the frame, then center-crop."""
        return (
            f"scale={width}:{height}:force_original_aspect_ratio=increase,"
            f"crop={width}:{height},setsar=1"
        )

    def build_extract_command(
        self,
        source_path: str,
        output_path: str,
        start_seconds: float,
        end_seconds: float,
        profile: Optional[str] = None,
    ) -> list[str]:
        target = get_platform_profile(profile)
        duration = end_seconds - start_seconds

        return [
            self.ffmpeg_path,
            "-y",
            "-ss", str(start_seconds),
            "-i", source_path,
            "-t", str(duration),
            "-vf", self.cover_crop_filter(target.width, target.height),
            "-c:v", "libx264",
            "-preset", self.settings.ffmpeg_preset,
            "-crf", str(self.settings.ffmpeg_crf),
            "-pix_fmt", "yuv420p",
            "-c:a", "aac",
            "-b:a", self.settings.audio_bitrate,
            "-movflags", "+faststart",
            output_path,
        ]

    async def extract(
        self,
        source_path: str,
        output_path: str,
        start_seconds: float,
        end_seconds: float,
        profile: Optional[str] = None,
    ) -> str:
        """
        Cut [start, end) from the source and re-encode it for a platform.

        Args:
            source_path: Local source video
            output_path: Where the clip is written
            start_seconds: Clip start (the caller guarantees end > start)
            end_seconds: Clip end
            profile: Platform name; unknown names use the 9:16 default

        Returns:
            output_path

        Raises:
            MediaTransformError: FFmpeg exited non-zero or produced a tiny file
        """
        target = get_platform_profile(profile)
        logger.info(
            f"Extracting clip for {target.label}: {start_seconds}s-{end_seconds}s "
            f"({end_seconds - start_seconds}s) at {target.resolution}"
        )

        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
        cmd = self.build_extract_command(source_path, output_path, start_seconds, end_seconds, profile)
        await self._run_cmd(cmd)

        size = os.path.getsize(output_path) if os.path.isfile(output_path) else 0
        if size < self.settings.min_output_bytes:
            raise MediaTransformError(
                f"Clip output too small ({size} bytes): {output_path}"
            )

        logger.info(f"Clip extracted: {output_path} ({size / 1024 / 1024:.1f} MB)")
        return output_path

    async def thumbnail(self, source_path: str, output_path: str, at_seconds: float) -> str:
        """
        Grab a single JPEG frame at ``at_seconds``.

        Fails fast without spawning FFmpeg when the input is missing or too
        small to be a usable video.
        """
        size = os.path.getsize(source_path) if os.path.isfile(source_path) else 0
        if size < self.settings.min_output_bytes:
            raise MediaTransformError(
                f"Thumbnail input missing or too small ({size} bytes): {source_path}"
            )

        logger.info(f"Generating thumbnail at {at_seconds}s from {os.path.basename(source_path)}")

        cmd = [
            self.ffmpeg_path,
            "-y",
            "-ss", str(at_seconds),
            "-i", source_path,
            "-frames:v", "1",
            "-q:v", "2",
            output_path,
        ]
        await self._run_cmd(cmd)

        if not os.path.isfile(output_path) or os.path.getsize(output_path) == 0:
            raise MediaTransformError(f"Thumbnail was not written: {output_path}")

        return output_path

    async def replace_audio(self, video_path: str, audio_path: str, output_path: str) -> str:
        """Swap the audio track, keeping the video stream as-is."""
        cmd = [
            self.ffmpeg_path,
            "-y",
            "-i", video_path,
            "-i", audio_path,
            "-map", "0:v:0",
            "-map", "1:a:0",
            "-shortest",
            "-c:v", "copy",
            "-c:a", "aac",
            "-b:a", "192k",
            output_path,
        ]
        await self._run_cmd(cmd)

        if not os.path.isfile(output_path):
            raise MediaTransformError(f"Remux output not written: {output_path}")
        return output_path

    async def probe(self, path: str) -> MediaInfo:
        """Duration and first video stream size, via ffprobe."""
        cmd = [
            self.ffprobe_path,
            "-v", "error",
            "-show_entries", "format=duration:stream=codec_type,width,height",
            "-of", "json",
            path,
        ]

        loop = asyncio.get_event_loop()
        try:
            result = await loop.run_in_executor(
                None,
                lambda: subprocess.run(cmd, capture_output=True)
            )
        except FileNotFoundError as e:
            raise MediaTransformError(f"Executable not found: {cmd[0]}") from e

        if result.returncode != 0:
            error_msg = result.stderr.decode(errors="replace")[-500:] if result.stderr else "Unknown error"
            raise MediaTransformError(f"ffprobe failed: {error_msg}")

        try:
            info = json.loads(result.stdout.decode())
            video_stream = next(
                (s for s in info.get("streams", []) if s.get("codec_type") == "video"), {}
            )
            return MediaInfo(
                duration=float(info["format"]["duration"]),
                width=int(video_stream.get("width", 0)),
                height=int(video_stream.get("height", 0)),
            )
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            raise MediaTransformError(f"Unreadable ffprobe output for {path}: {e}") from e

    async def _run_cmd(self, cmd: list[str]) -> None:
        """Run a command in the executor, raising with the stderr tail on failure."""
        logger.debug(f"Running: {' '.join(cmd[:10])}...")

        loop = asyncio.get_event_loop()
        try:
            result = await loop.run_in_executor(
                None,
                lambda: subprocess.run(cmd, capture_output=True)
            )
        except FileNotFoundError as e:
            raise MediaTransformError(f"Executable not found: {cmd[0]}") from e

        if result.returncode != 0:
            error_msg = result.stderr.decode(errors="replace")[-1000:] if result.stderr else "Unknown error"
            raise MediaTransformError(f"FFmpeg failed: {error_msg}")


class MediaTransformError(Exception):
    """Exception raised when an FFmpeg transform fails."""
    pass
