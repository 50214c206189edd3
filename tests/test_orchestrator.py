"""
Tests for the job orchestrator processors.
"""

import os

import pytest

from sermonclips.db.models import ClipStatus
from sermonclips.schemas.analysis import CompletedState, FailedState
from sermonclips.services.analysis_client import (
    AnalysisError,
    AnalysisParseError,
    AnalysisResult,
    HealthCheckResult,
    HighlightCandidate,
)
from sermonclips.services.job_queue import Job
from sermonclips.services.media_transform import MediaInfo, MediaTransformError
from sermonclips.services.orchestrator import ClipOrchestrator, DubbingJobError, JobName, select_platform

from conftest import write_video_file


def _candidates(count: int) -> list[HighlightCandidate]:
    tags = ["youtube_shorts", "Instagram Reels", "facebook", None]
    return [
        HighlightCandidate(
            title=f"Highlight {i + 1}",
            start_time=60 * i,
            end_time=60 * i + 45,
            caption=f"caption {i + 1}",
            emotion="moving",
            platform=tags[i % len(tags)],
        )
        for i in range(count)
    ]


class ProgressLog:
    def __init__(self):
        self.values: list[int] = []

    async def __call__(self, percent: int) -> None:
        self.values.append(percent)


@pytest.fixture
def media(mocker):
    """Media engine double that writes plausible outputs."""
    engine = mocker.MagicMock()

    async def extract(source_path, output_path, start, end, profile=None):
        return write_video_file(output_path)

    async def thumbnail(source_path, output_path, at_seconds):
        with open(output_path, "wb") as f:
            f.write(b"jpeg")
        return output_path

    engine.extract = mocker.AsyncMock(side_effect=extract)
    engine.thumbnail = mocker.AsyncMock(side_effect=thumbnail)
    engine.probe = mocker.AsyncMock(return_value=MediaInfo(duration=45.0, width=1080, height=1920))
    return engine


@pytest.fixture
def analysis(mocker):
    client = mocker.MagicMock()

    async def analyze(source_url, title, on_progress=None, work_id=None):
        for percent in (0, 50, 100):
            await on_progress(percent)
        return AnalysisResult(highlights=_candidates(4), summary="A sermon.", raw_response="{}")

    client.analyze = mocker.AsyncMock(side_effect=analyze)
    client.check_health = mocker.AsyncMock(return_value=HealthCheckResult(valid=True, message="API key is valid"))
    return client


@pytest.fixture
def orchestrator(store, mock_storage, media, analysis, settings):
    return ClipOrchestrator(store, mock_storage, media, analysis, settings=settings)


@pytest.fixture
async def asset(store, active_user):
    return await store.create_asset(
        owner_id=active_user.id,
        title="Sunday Service",
        video_url="https://cdn.example.com/u/sermon.mp4",
        storage_path="u/sermon.mp4",
    )


def _analysis_job(asset, attempts_made=0) -> Job:
    return Job(
        id="42",
        name=JobName.ANALYZE_VIDEO,
        data={
            "asset_id": asset.id,
            "video_url": asset.video_url,
            "owner_id": asset.owner_id,
            "title": asset.title,
        },
        attempts_made=attempts_made,
    )


class TestSelectPlatform:
    """Tests for mapping analysis tags to render profiles."""

    def test_substrings(self):
        assert select_platform("YouTube Shorts") == "youtube_shorts"
        assert select_platform("instagram reels") == "instagram_reels"

    def test_exact_profile_name(self):
        assert select_platform("TikTok") == "tiktok"
        assert select_platform("facebook") == "facebook"

    def test_default(self):
        assert select_platform(None) == "youtube_shorts"
        assert select_platform("linkedin") == "youtube_shorts"


@pytest.mark.anyio
class TestProcessAnalysis:
    """Tests for the analyze-video processor."""

    async def test_all_highlights_rendered(self, orchestrator, store, asset, mock_storage):
        progress = ProgressLog()

        result = await orchestrator.process_analysis(_analysis_job(asset), progress)

        assert result == {
            "success": True,
            "asset_id": asset.id,
            "highlights_count": 4,
            "clips_completed": 4,
            "clips_failed": 0,
        }
        state = await store.get_analysis_state(asset.id)
        assert isinstance(state, CompletedState)
        assert state.summary == "A sermon."
        assert len(state.highlights) == 4

        highlights = await store.list_highlights(asset.id)
        platforms = []
        for highlight in highlights:
            clips = await store.list_clips_for_highlight(highlight.id)
            assert len(clips) == 1
            assert clips[0].status == ClipStatus.COMPLETED
            assert clips[0].duration == 45
            platforms.append(clips[0].platform)
        assert sorted(platforms) == ["facebook", "instagram_reels", "youtube_shorts", "youtube_shorts"]

    async def test_progress_is_monotonic_and_reaches_100(self, orchestrator, asset):
        progress = ProgressLog()

        await orchestrator.process_analysis(_analysis_job(asset), progress)

        assert progress.values == sorted(progress.values)
        assert progress.values[0] == 10
        assert progress.values[-1] == 100
        assert 80 in progress.values

    async def test_one_failed_highlight_does_not_stop_the_rest(
        self, orchestrator, store, asset, media, mock_storage, settings
    ):
        """Four highlights with the second failing: three clips complete, one FAILED, source fetched and removed once."""
        original = media.extract.side_effect

        async def extract(source_path, output_path, start, end, profile=None):
            if start == 60:
                raise MediaTransformError("FFmpeg failed: corrupt frame")
            return await original(source_path, output_path, start, end, profile)

        media.extract.side_effect = extract

        result = await orchestrator.process_analysis(_analysis_job(asset), ProgressLog())

        assert result["clips_completed"] == 3
        assert result["clips_failed"] == 1

        statuses = {}
        for highlight in await store.list_highlights(asset.id):
            clips = await store.list_clips_for_highlight(highlight.id)
            statuses[highlight.start_time] = clips[0].status
        assert statuses[60] == ClipStatus.FAILED
        assert list(statuses.values()).count(ClipStatus.COMPLETED) == 3

        mock_storage.download.assert_called_once()
        source_path = mock_storage.download.call_args[0][1]
        assert not os.path.exists(source_path)
        assert os.listdir(settings.temp_directory) == []

    async def test_clip_record_error_does_not_stop_the_rest(
        self, orchestrator, store, asset, mock_storage, mocker
    ):
        """A database error writing one COMPLETED clip fails that highlight only and removes its uploads."""
        original_create_clip = store.create_clip
        calls = {"completed": 0}

        async def create_clip(*args, **kwargs):
            if kwargs.get("status") == ClipStatus.COMPLETED:
                calls["completed"] += 1
                if calls["completed"] == 1:
                    raise RuntimeError("database is locked")
            return await original_create_clip(*args, **kwargs)

        mocker.patch.object(store, "create_clip", side_effect=create_clip)

        result = await orchestrator.process_analysis(_analysis_job(asset), ProgressLog())

        assert result["highlights_count"] == 4
        assert result["clips_completed"] == 3
        assert result["clips_failed"] == 1
        highlights = await store.list_highlights(asset.id)
        assert len(highlights) == 4
        statuses = [
            (await store.list_clips_for_highlight(h.id))[0].status for h in highlights
        ]
        assert statuses.count(ClipStatus.FAILED) == 1
        assert isinstance(await store.get_analysis_state(asset.id), CompletedState)

        deleted = [c[0][0] for c in mock_storage.delete.call_args_list]
        assert len(deleted) == 2
        assert any(key.endswith(".mp4") for key in deleted)
        assert any(key.endswith(".jpg") for key in deleted)

    async def test_rendered_clips_are_probed(self, orchestrator, asset, media, caplog):
        """Probe returns 1080x1920 for every clip, so only the square Facebook clip is flagged."""
        with caplog.at_level("WARNING", logger="sermonclips.services.orchestrator"):
            result = await orchestrator.process_analysis(_analysis_job(asset), ProgressLog())

        assert result["clips_completed"] == 4
        assert media.probe.await_count == 4
        mismatches = [r for r in caplog.records if "differs from target" in r.getMessage()]
        assert len(mismatches) == 1
        assert "1080x1080" in mismatches[0].getMessage()

    async def test_probe_failure_does_not_fail_clip(self, orchestrator, asset, media):
        media.probe.side_effect = MediaTransformError("ffprobe failed: moov atom not found")

        result = await orchestrator.process_analysis(_analysis_job(asset), ProgressLog())

        assert result["clips_completed"] == 4

    async def test_failed_clip_records_profile_resolution(self, orchestrator, store, asset, media):
        media.extract.side_effect = MediaTransformError("FFmpeg failed")

        await orchestrator.process_analysis(_analysis_job(asset), ProgressLog())

        highlight = next(h for h in await store.list_highlights(asset.id) if h.platform == "facebook")
        clip = (await store.list_clips_for_highlight(highlight.id))[0]
        assert clip.status == ClipStatus.FAILED
        assert clip.duration == 0
        assert clip.resolution == "1080x1080"

    async def test_thumbnail_falls_back_to_source(self, orchestrator, asset, media):
        original = media.thumbnail.side_effect

        async def thumbnail(source_path, output_path, at_seconds):
            if os.path.basename(source_path).startswith("clip-"):
                raise MediaTransformError("Thumbnail input missing or too small")
            return await original(source_path, output_path, at_seconds)

        media.thumbnail.side_effect = thumbnail

        result = await orchestrator.process_analysis(_analysis_job(asset), ProgressLog())

        assert result["clips_completed"] == 4
        fallback_calls = [c for c in media.thumbnail.call_args_list if os.path.basename(c[0][0]).startswith("input-")]
        assert [c[0][2] for c in fallback_calls] == [1, 61, 121, 181]

    async def test_analysis_failure_marks_asset_failed(self, orchestrator, store, asset, analysis, mock_storage):
        analysis.analyze.side_effect = AnalysisParseError("Failed to parse JSON from response")

        with pytest.raises(AnalysisParseError):
            await orchestrator.process_analysis(_analysis_job(asset), ProgressLog())

        state = await store.get_analysis_state(asset.id)
        assert isinstance(state, FailedState)
        assert "parse JSON" in state.reason
        mock_storage.download.assert_not_called()

    async def test_invalid_key_fails_before_download(self, orchestrator, store, asset, analysis, mock_storage):
        analysis.check_health.return_value = HealthCheckResult(valid=False, message="API key not valid")

        with pytest.raises(AnalysisError, match="API key not valid"):
            await orchestrator.process_analysis(_analysis_job(asset), ProgressLog())

        state = await store.get_analysis_state(asset.id)
        assert isinstance(state, FailedState)
        assert "key check failed" in state.reason
        analysis.analyze.assert_not_called()
        mock_storage.download.assert_not_called()

    async def test_source_download_failure_marks_asset_failed(self, orchestrator, store, asset, mock_storage):
        mock_storage.download.side_effect = RuntimeError("connection reset")

        with pytest.raises(RuntimeError):
            await orchestrator.process_analysis(_analysis_job(asset), ProgressLog())

        state = await store.get_analysis_state(asset.id)
        assert isinstance(state, FailedState)
        assert state.reason == "connection reset"
        assert await store.list_highlights(asset.id) == []

    async def test_retry_replaces_previous_highlights(self, orchestrator, store, asset):
        await orchestrator.process_analysis(_analysis_job(asset), ProgressLog())
        await orchestrator.process_analysis(_analysis_job(asset, attempts_made=1), ProgressLog())

        assert len(await store.list_highlights(asset.id)) == 4

    async def test_no_highlights_skips_download(self, orchestrator, asset, analysis, mock_storage):
        async def analyze(source_url, title, on_progress=None, work_id=None):
            return AnalysisResult(highlights=[], summary="Nothing clip-worthy.", raw_response="{}")

        analysis.analyze.side_effect = analyze

        result = await orchestrator.process_analysis(_analysis_job(asset), ProgressLog())

        assert result["highlights_count"] == 0
        mock_storage.download.assert_not_called()

    async def test_job_log_file_written(self, store, mock_storage, media, analysis, settings, asset, tmp_path):
        settings.job_log_dir = str(tmp_path / "logs")
        orchestrator = ClipOrchestrator(store, mock_storage, media, analysis, settings=settings)

        await orchestrator.process_analysis(_analysis_job(asset), ProgressLog())

        logs = os.listdir(tmp_path / "logs")
        assert len(logs) == 1
        assert logs[0].startswith("job_42_")


@pytest.mark.anyio
class TestProcessRenderClip:
    """Tests for the render-clip processor."""

    @pytest.fixture
    async def pending_clip(self, store, asset):
        highlight = await store.create_highlight(asset.id, "Grace", 30, 90, caption="c")
        return await store.create_clip(highlight.id, "tiktok")

    async def test_renders_pending_clip(self, orchestrator, store, pending_clip):
        job = Job(id="7", name=JobName.RENDER_CLIP, data={"clip_id": pending_clip.id})
        progress = ProgressLog()

        result = await orchestrator.process_render_clip(job, progress)

        clip = await store.get_clip(pending_clip.id)
        assert clip.status == ClipStatus.COMPLETED
        assert clip.resolution == "1080x1920"
        assert result["video_url"] == clip.video_url
        assert progress.values[-1] == 100

    async def test_failure_before_last_attempt_keeps_processing(self, orchestrator, store, pending_clip, media):
        media.extract.side_effect = MediaTransformError("FFmpeg failed")
        job = Job(id="7", name=JobName.RENDER_CLIP, data={"clip_id": pending_clip.id}, max_attempts=3)

        with pytest.raises(MediaTransformError):
            await orchestrator.process_render_clip(job, ProgressLog())

        assert (await store.get_clip(pending_clip.id)).status == ClipStatus.PROCESSING

    async def test_failure_on_last_attempt_marks_failed(self, orchestrator, store, pending_clip, media):
        media.extract.side_effect = MediaTransformError("FFmpeg failed")
        job = Job(
            id="7", name=JobName.RENDER_CLIP, data={"clip_id": pending_clip.id}, attempts_made=2, max_attempts=3
        )

        with pytest.raises(MediaTransformError):
            await orchestrator.process_render_clip(job, ProgressLog())

        assert (await store.get_clip(pending_clip.id)).status == ClipStatus.FAILED

    async def test_completed_clip_not_rendered_again(self, orchestrator, store, pending_clip, media):
        await store.update_clip(pending_clip.id, status=ClipStatus.COMPLETED, video_url="https://cdn.example.com/x.mp4")
        job = Job(id="7", name=JobName.RENDER_CLIP, data={"clip_id": pending_clip.id})

        result = await orchestrator.process_render_clip(job, ProgressLog())

        assert result["video_url"] == "https://cdn.example.com/x.mp4"
        media.extract.assert_not_called()


@pytest.mark.anyio
class TestProcessDubClip:
    """Tests for the dub-clip processor."""

    @pytest.fixture
    def dubbing(self, mocker):
        service = mocker.MagicMock()

        async def synthesize(text, output_path, tone="professional", voice_id=None):
            with open(output_path, "wb") as f:
                f.write(b"mp3")
            return output_path

        async def remux(video_path, audio_path, output_path):
            return write_video_file(output_path)

        service.synthesize = mocker.AsyncMock(side_effect=synthesize)
        service.remux = mocker.AsyncMock(side_effect=remux)
        return service

    @pytest.fixture
    async def clips(self, store, asset):
        highlight = await store.create_highlight(asset.id, "Grace", 30, 90)
        source = await store.create_clip(
            highlight.id,
            "youtube_shorts",
            status=ClipStatus.COMPLETED,
            video_url="https://cdn.example.com/a/clip.mp4",
            thumbnail_url="https://cdn.example.com/a/thumb.jpg",
            duration=60.0,
            resolution="1080x1920",
        )
        dubbed = await store.create_clip(highlight.id, "youtube_shorts", language="es")
        return source, dubbed

    async def test_dub_creates_completed_variant(self, store, mock_storage, media, analysis, settings, dubbing, clips):
        source, dubbed = clips
        orchestrator = ClipOrchestrator(store, mock_storage, media, analysis, dubbing=dubbing, settings=settings)
        job = Job(
            id="9",
            name=JobName.DUB_CLIP,
            data={"clip_id": dubbed.id, "source_clip_id": source.id, "text": "Hola", "language": "es", "tone": "calm"},
        )

        result = await orchestrator.process_dub_clip(job, ProgressLog())

        clip = await store.get_clip(dubbed.id)
        assert clip.status == ClipStatus.COMPLETED
        assert clip.language == "es"
        assert clip.thumbnail_url == source.thumbnail_url
        assert "-es-" in result["video_url"]
        assert (await store.get_clip(source.id)).video_url == source.video_url
        dubbing.synthesize.assert_awaited_once()
        assert dubbing.synthesize.call_args.kwargs["tone"] == "calm"

    async def test_lipsync_result_used_when_available(
        self, store, mock_storage, media, analysis, settings, dubbing, clips, mocker
    ):
        source, dubbed = clips
        lipsync = mocker.MagicMock()
        lipsync.generate = mocker.AsyncMock(return_value="https://heygen.example.com/v.mp4")
        orchestrator = ClipOrchestrator(
            store, mock_storage, media, analysis, dubbing=dubbing, lipsync=lipsync, settings=settings
        )
        job = Job(
            id="9",
            name=JobName.DUB_CLIP,
            data={"clip_id": dubbed.id, "source_clip_id": source.id, "text": "Hola", "language": "es", "lipsync": True},
        )

        await orchestrator.process_dub_clip(job, ProgressLog())

        downloaded = [c[0][0] for c in mock_storage.download.call_args_list]
        assert "https://heygen.example.com/v.mp4" in downloaded
        assert lipsync.generate.call_args.kwargs == {"width": 1080, "height": 1920}

    async def test_source_without_video_fails(self, store, mock_storage, media, analysis, settings, dubbing, clips):
        source, dubbed = clips
        await store.update_clip(source.id, video_url=None)
        orchestrator = ClipOrchestrator(store, mock_storage, media, analysis, dubbing=dubbing, settings=settings)
        job = Job(
            id="9",
            name=JobName.DUB_CLIP,
            data={"clip_id": dubbed.id, "source_clip_id": source.id, "text": "Hola", "language": "es"},
        )

        with pytest.raises(DubbingJobError):
            await orchestrator.process_dub_clip(job, ProgressLog())

        assert (await store.get_clip(dubbed.id)).status == ClipStatus.FAILED

    def test_dub_processor_only_registered_with_dubbing(self, orchestrator, store, mock_storage, media, analysis, dubbing):
        assert JobName.DUB_CLIP not in orchestrator.processors()
        with_dubbing = ClipOrchestrator(store, mock_storage, media, analysis, dubbing=dubbing)
        assert set(with_dubbing.processors()) == {JobName.ANALYZE_VIDEO, JobName.RENDER_CLIP, JobName.DUB_CLIP}
