"""
Job Orchestrator - processors for the analysis, clip render and dubbing jobs.

The analysis job drives one Source Asset end to end:
1. Mark the asset ANALYZING and run the AI analysis (job progress 20-80)
2. Persist the result on the asset (job progress 90)
3. Download the source once and render every highlight sequentially
4. Return a summary with completed and failed clip counts

Clip failures are per highlight and never fail the job. Analysis or source
download failures mark the asset FAILED and re-raise so the queue retries.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from sermonclips.config import (
    DEFAULT_PLATFORM,
    Platform,
    PlatformProfile,
    Settings,
    get_platform_profile,
    get_settings,
    is_known_platform,
)
from sermonclips.db.models import Clip, ClipStatus, Highlight, SourceAsset
from sermonclips.schemas.analysis import AnalyzingState, CompletedState, FailedState
from sermonclips.services.analysis_client import AnalysisClient, AnalysisError
from sermonclips.services.dubbing_service import DubbingService
from sermonclips.services.job_queue import Job
from sermonclips.services.lipsync_service import LipsyncService
from sermonclips.services.media_transform import MediaTransformEngine, MediaTransformError
from sermonclips.services.record_store import RecordStore
from sermonclips.services.storage_gateway import StorageError, StorageGateway

logger = logging.getLogger(__name__)

# Allowed gap between the encoded and requested clip length
DURATION_TOLERANCE_SECONDS = 1.0


ProgressReporter = Callable[[int], Awaitable[Any]]
Processor = Callable[[Job, ProgressReporter], Awaitable[dict[str, Any]]]


class JobName:
    ANALYZE_VIDEO = "analyze-video"
    RENDER_CLIP = "render-clip"
    DUB_CLIP = "dub-clip"


def select_platform(tag: Optional[str]) -> str:
    """
    Map the analysis platform tag to a render profile.

    "shorts" and "reels" substrings win, then an exact profile name,
    else the default.
    """
    if tag:
        lowered = tag.lower()
        if "shorts" in lowered:
            return Platform.YOUTUBE_SHORTS
        if "reels" in lowered:
            return Platform.INSTAGRAM_REELS
        if is_known_platform(lowered):
            return lowered
        logger.info(f"Unrecognized platform tag '{tag}', using {DEFAULT_PLATFORM}")
    return DEFAULT_PLATFORM


@dataclass
class RenderedClip:
    """Uploaded artifacts for one highlight."""

    video_url: str
    thumbnail_url: str
    duration: float
    file_size: int
    resolution: str


class ClipOrchestrator:
    """
    Binds the analysis client, media engine, storage and record store into
    queue job processors.
    """

    # Loggers mirrored into the per-job log file
    JOB_LOGGERS = [
        "sermonclips.services.orchestrator",
        "sermonclips.services.analysis_client",
        "sermonclips.services.media_transform",
        "sermonclips.services.storage_gateway",
        "sermonclips.services.dubbing_service",
        "sermonclips.services.lipsync_service",
        "sermonclips.services.retry",
    ]

    def __init__(
        self,
        store: RecordStore,
        storage: StorageGateway,
        media: MediaTransformEngine,
        analysis: AnalysisClient,
        dubbing: Optional[DubbingService] = None,
        lipsync: Optional[LipsyncService] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.storage = storage
        self.media = media
        self.analysis = analysis
        self.dubbing = dubbing
        self.lipsync = lipsync

    def processors(self) -> dict[str, Processor]:
        """Job name to processor table for the worker."""
        processors: dict[str, Processor] = {
            JobName.ANALYZE_VIDEO: self.process_analysis,
            JobName.RENDER_CLIP: self.process_render_clip,
        }
        if self.dubbing is not None:
            processors[JobName.DUB_CLIP] = self.process_dub_clip
        return processors

    # ------------------------------------------------------------------
    # Job logging
    # ------------------------------------------------------------------

    def _setup_job_logging(self, job_id: str) -> Optional[logging.FileHandler]:
        """
        Attach a file handler that captures this job's service logs.

        Only active when JOB_LOG_DIR is configured.
        """
        if not self.settings.job_log_dir:
            return None

        try:
            logs_dir = Path(self.settings.job_log_dir)
            logs_dir.mkdir(parents=True, exist_ok=True)

            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_filename = logs_dir / f"job_{job_id}_{timestamp}.log"

            file_handler = logging.FileHandler(log_filename, encoding="utf-8")
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ))

            for logger_name in self.JOB_LOGGERS:
                logging.getLogger(logger_name).addHandler(file_handler)

            logger.info(f"Job logging initialized: {log_filename}")
            return file_handler

        except OSError as e:
            logger.warning(f"Failed to setup job logging: {e}")
            return None

    def _cleanup_job_logging(self, file_handler: Optional[logging.FileHandler]) -> None:
        if file_handler is None:
            return
        for logger_name in self.JOB_LOGGERS:
            logging.getLogger(logger_name).removeHandler(file_handler)
        file_handler.close()

    # ------------------------------------------------------------------
    # analyze-video
    # ------------------------------------------------------------------

    async def process_analysis(self, job: Job, report_progress: ProgressReporter) -> dict[str, Any]:
        """
        Analyze a Source Asset and render a clip per highlight.

        Job data: ``asset_id``, ``video_url``, ``owner_id``, ``title``.
        """
        asset_id = job.data["asset_id"]
        video_url = job.data["video_url"]
        title = job.data.get("title") or "Untitled"

        job_log_handler = self._setup_job_logging(job.id)
        source_path: Optional[str] = None
        start_time = time.time()

        try:
            logger.info(f"Processing job {job.id} for asset {asset_id} (attempt {job.attempts_made + 1}/{job.max_attempts})")

            try:
                # Fail fast on a bad key before pulling the source
                health = await self.analysis.check_health()
                if not health.valid:
                    raise AnalysisError(f"Gemini API key check failed: {health.message}")

                await self.store.set_analysis_state(asset_id, AnalyzingState(progress=10))
                await report_progress(10)
                await report_progress(20)

                async def on_analysis_progress(percent: int) -> None:
                    await report_progress(20 + int(percent * 0.6))

                result = await self.analysis.analyze(
                    video_url,
                    title,
                    on_progress=on_analysis_progress,
                    work_id=f"{asset_id}-{job.id}",
                )

                await self.store.set_analysis_state(
                    asset_id,
                    CompletedState(
                        summary=result.summary,
                        highlights=[h.to_dict() for h in result.highlights],
                        raw_response=result.raw_response,
                    ),
                )
                await report_progress(90)
                logger.info(f"Analysis saved for asset {asset_id}: {len(result.highlights)} highlights")

                if result.highlights:
                    source_path = self._temp_path(f"input-{asset_id}-{job.id}-{_ms()}.mp4")
                    logger.info(f"Downloading source for clipping: {video_url}")
                    await self.storage.download(video_url, source_path)

            except (Exception, asyncio.CancelledError) as e:
                reason = str(e) or type(e).__name__
                if isinstance(e, asyncio.CancelledError):
                    reason = "Job cancelled or timed out"
                logger.exception(f"Job {job.id} failed for asset {asset_id}: {reason}")
                await self._mark_asset_failed(asset_id, reason)
                raise

            completed = failed = 0
            if result.highlights:
                # Retries start over; drop anything a previous attempt left behind
                removed = await self.store.clear_highlights(asset_id)
                if removed:
                    logger.info(f"Removed {removed} highlights from an earlier attempt of asset {asset_id}")

                total = len(result.highlights)
                for index, candidate in enumerate(result.highlights):
                    ok = await self._process_highlight(asset_id, source_path, candidate)
                    if ok:
                        completed += 1
                    else:
                        failed += 1
                    await report_progress(90 + int(9 * (index + 1) / total))

            await report_progress(100)
            logger.info(
                f"Job {job.id} finished in {time.time() - start_time:.1f}s: "
                f"{completed} clips completed, {failed} failed"
            )

            return {
                "success": True,
                "asset_id": asset_id,
                "highlights_count": len(result.highlights),
                "clips_completed": completed,
                "clips_failed": failed,
            }

        finally:
            if source_path:
                self._remove(source_path)
            self._cleanup_job_logging(job_log_handler)

    async def _process_highlight(self, asset_id: str, source_path: str, candidate) -> bool:
        """Create the Highlight and its Clip; returns True when the clip completed."""
        try:
            highlight = await self.store.create_highlight(
                asset_id=asset_id,
                title=candidate.title,
                start_time=candidate.start_time,
                end_time=candidate.end_time,
                caption=candidate.caption,
                emotion=candidate.emotion,
                platform=candidate.platform,
            )
        except Exception as e:
            logger.exception(f"Failed to create highlight '{candidate.title}' for asset {asset_id}: {e}")
            return False

        platform = select_platform(highlight.platform)
        profile = get_platform_profile(platform)
        logger.info(f"Processing highlight {highlight.id}: {highlight.title} ({platform})")

        rendered: Optional[RenderedClip] = None
        try:
            rendered = await self._render_highlight(source_path, asset_id, highlight, platform)
            await self.store.create_clip(
                highlight_id=highlight.id,
                platform=platform,
                status=ClipStatus.COMPLETED,
                video_url=rendered.video_url,
                thumbnail_url=rendered.thumbnail_url,
                duration=rendered.duration,
                file_size=rendered.file_size,
                resolution=rendered.resolution,
            )
        except Exception as e:
            logger.error(f"Failed processing highlight {highlight.id} ({highlight.title}): {e}")
            if rendered is not None:
                await self._discard_objects(rendered.video_url, rendered.thumbnail_url)
            try:
                await self.store.create_clip(
                    highlight_id=highlight.id,
                    platform=platform,
                    status=ClipStatus.FAILED,
                    duration=0,
                    resolution=profile.resolution,
                )
            except Exception as db_error:
                logger.exception(f"Could not record FAILED clip for highlight {highlight.id}: {db_error}")
            return False

        logger.info(f"Completed highlight {highlight.id}: {rendered.video_url}")
        return True

    async def _discard_objects(self, *urls: str) -> None:
        """Best-effort delete of uploaded objects whose clip row was never written."""
        for url in urls:
            key = self.storage.key_from_url(url)
            if key is None:
                continue
            try:
                await self.storage.delete(key)
            except StorageError as e:
                logger.warning(f"Could not delete orphaned object {url}: {e}")

    async def _render_highlight(
        self,
        source_path: str,
        asset_id: str,
        highlight: Highlight,
        platform: str,
    ) -> RenderedClip:
        """
        Extract, thumbnail and upload one highlight.

        Temp files for the highlight are removed whatever happens.
        """
        stamp = _ms()
        clip_path = self._temp_path(f"clip-{highlight.id}-{stamp}.mp4")
        thumb_path = self._temp_path(f"thumb-{highlight.id}-{stamp}.jpg")
        profile = get_platform_profile(platform)

        try:
            await self.media.extract(
                source_path,
                clip_path,
                highlight.start_time,
                highlight.end_time,
                profile=platform,
            )

            duration = highlight.end_time - highlight.start_time
            await self._check_rendered(clip_path, duration, profile)

            try:
                await self.media.thumbnail(clip_path, thumb_path, duration / 2)
            except MediaTransformError as e:
                logger.warning(f"Thumbnail from clip failed ({e}), trying from source")
                fallback_at = highlight.start_time + self.settings.thumbnail_fallback_offset_seconds
                await self.media.thumbnail(source_path, thumb_path, fallback_at)

            file_size = os.path.getsize(clip_path)
            video_url = await self.storage.put_file(
                clip_path, f"{asset_id}/{highlight.id}-{_ms()}.mp4", "video/mp4"
            )
            thumbnail_url = await self.storage.put_file(
                thumb_path, f"{asset_id}/{highlight.id}-thumb-{_ms()}.jpg", "image/jpeg"
            )

            return RenderedClip(
                video_url=video_url,
                thumbnail_url=thumbnail_url,
                duration=float(duration),
                file_size=file_size,
                resolution=profile.resolution,
            )
        finally:
            self._remove(clip_path)
            self._remove(thumb_path)

    async def _check_rendered(self, clip_path: str, expected_duration: float, profile: PlatformProfile) -> None:
        """Log the encoded clip's real duration and frame size; mismatches only warn."""
        try:
            info = await self.media.probe(clip_path)
        except MediaTransformError as e:
            logger.warning(f"Could not probe {clip_path}: {e}")
            return

        drift = abs(info.duration - expected_duration)
        if drift > DURATION_TOLERANCE_SECONDS or info.resolution != profile.resolution:
            logger.warning(
                f"Rendered clip differs from target: {info.duration:.2f}s at {info.resolution}, "
                f"expected {expected_duration}s at {profile.resolution}"
            )
        else:
            logger.debug(f"Rendered clip {info.duration:.2f}s at {info.resolution}")

    async def _mark_asset_failed(self, asset_id: str, reason: str) -> None:
        try:
            await self.store.set_analysis_state(asset_id, FailedState(reason=reason))
        except Exception as db_error:
            logger.exception(f"Failed to update asset {asset_id} status: {db_error}")

    # ------------------------------------------------------------------
    # render-clip
    # ------------------------------------------------------------------

    async def process_render_clip(self, job: Job, report_progress: ProgressReporter) -> dict[str, Any]:
        """
        Render an existing PROCESSING clip row.

        Failures re-raise for the queue to retry; the clip is marked FAILED
        only on the last attempt.
        """
        clip_id = job.data["clip_id"]
        clip, highlight, asset = await self._load_clip_context(clip_id)

        if clip.status == ClipStatus.COMPLETED:
            logger.info(f"Clip {clip_id} already completed, nothing to render")
            return {"success": True, "clip_id": clip_id, "video_url": clip.video_url}

        source_path = self._temp_path(f"input-{asset.id}-{job.id}-{_ms()}.mp4")
        try:
            await report_progress(10)
            await self.storage.download(asset.video_url, source_path)
            await report_progress(40)

            rendered = await self._render_highlight(source_path, asset.id, highlight, clip.platform)
            await self.store.update_clip(
                clip_id,
                status=ClipStatus.COMPLETED,
                video_url=rendered.video_url,
                thumbnail_url=rendered.thumbnail_url,
                duration=rendered.duration,
                file_size=rendered.file_size,
                resolution=rendered.resolution,
            )
            await report_progress(100)
            logger.info(f"Rendered clip {clip_id} for highlight {highlight.id} ({clip.platform})")
            return {"success": True, "clip_id": clip_id, "video_url": rendered.video_url}

        except Exception as e:
            logger.error(f"Render of clip {clip_id} failed: {e}")
            if job.is_last_attempt:
                await self.store.update_clip(clip_id, status=ClipStatus.FAILED)
            raise

        finally:
            self._remove(source_path)

    # ------------------------------------------------------------------
    # dub-clip
    # ------------------------------------------------------------------

    async def process_dub_clip(self, job: Job, report_progress: ProgressReporter) -> dict[str, Any]:
        """
        Dub a completed clip into another language.

        Job data: ``clip_id`` (the new dubbed clip row), ``source_clip_id``,
        ``text``, ``language``, ``tone``, ``lipsync``.
        """
        if self.dubbing is None:
            raise RuntimeError("Dubbing is not configured on this worker")

        clip_id = job.data["clip_id"]
        source_clip = await self.store.get_clip(job.data["source_clip_id"])
        clip, highlight, asset = await self._load_clip_context(clip_id)

        if clip.status == ClipStatus.COMPLETED:
            return {"success": True, "clip_id": clip_id, "video_url": clip.video_url}
        if source_clip is None or not source_clip.video_url:
            await self.store.update_clip(clip_id, status=ClipStatus.FAILED)
            raise DubbingJobError(f"Source clip {job.data['source_clip_id']} has no rendered video")

        stamp = _ms()
        video_path = self._temp_path(f"dub-src-{clip_id}-{stamp}.mp4")
        audio_path = self._temp_path(f"dub-audio-{clip_id}-{stamp}.mp3")
        output_path = self._temp_path(f"dub-{clip_id}-{stamp}.mp4")
        lipsync_path = self._temp_path(f"dub-lipsync-{clip_id}-{stamp}.mp4")

        try:
            await self.storage.download(source_clip.video_url, video_path)
            await report_progress(20)

            await self.dubbing.synthesize(
                job.data["text"],
                audio_path,
                tone=job.data.get("tone") or "professional",
                voice_id=job.data.get("voice_id"),
            )
            await report_progress(50)

            await self.dubbing.remux(video_path, audio_path, output_path)
            final_path = output_path
            await report_progress(70)

            if job.data.get("lipsync") and self.lipsync is not None:
                profile = get_platform_profile(clip.platform)
                lipsync_url = await self.lipsync.generate(
                    output_path, audio_path, width=profile.width, height=profile.height
                )
                if lipsync_url:
                    await self.storage.download(lipsync_url, lipsync_path)
                    final_path = lipsync_path
            await report_progress(85)

            language = clip.language or job.data.get("language") or "und"
            video_url = await self.storage.put_file(
                final_path,
                f"{asset.id}/{highlight.id}-{language}-{_ms()}.mp4",
                "video/mp4",
            )
            clip = await self.store.update_clip(
                clip_id,
                status=ClipStatus.COMPLETED,
                video_url=video_url,
                thumbnail_url=source_clip.thumbnail_url,
                duration=source_clip.duration,
                file_size=os.path.getsize(final_path),
                resolution=source_clip.resolution,
            )
            await report_progress(100)
            logger.info(f"Dubbed clip {clip_id} ({language}) from clip {source_clip.id}")
            return {"success": True, "clip_id": clip_id, "video_url": video_url}

        except Exception as e:
            logger.error(f"Dubbing clip {clip_id} failed: {e}")
            if job.is_last_attempt:
                await self.store.update_clip(clip_id, status=ClipStatus.FAILED)
            raise

        finally:
            for path in (video_path, audio_path, output_path, lipsync_path):
                self._remove(path)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load_clip_context(self, clip_id: str) -> tuple[Clip, Highlight, SourceAsset]:
        clip = await self.store.get_clip(clip_id)
        if clip is None:
            raise LookupError(f"Clip not found: {clip_id}")
        highlight = await self.store.get_highlight(clip.highlight_id)
        if highlight is None:
            raise LookupError(f"Highlight not found: {clip.highlight_id}")
        asset = await self.store.get_asset(highlight.asset_id)
        if asset is None:
            raise LookupError(f"Source asset not found: {highlight.asset_id}")
        return clip, highlight, asset

    def _temp_path(self, filename: str) -> str:
        os.makedirs(self.settings.temp_directory, exist_ok=True)
        return os.path.join(self.settings.temp_directory, filename)

    @staticmethod
    def _remove(path: str) -> None:
        if os.path.isfile(path):
            try:
                os.remove(path)
            except OSError as e:
                logger.warning(f"Failed to remove temp file {path}: {e}")


def _ms() -> int:
    return int(time.time() * 1000)


class DubbingJobError(Exception):
    """Exception raised when a dub job cannot start from its source clip."""
    pass
