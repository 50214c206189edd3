"""
Tests for the FFmpeg media transform engine.
"""

import json
import os
import shutil
import subprocess

import pytest

from sermonclips.services.media_transform import MediaTransformEngine, MediaTransformError

from conftest import write_video_file


def _completed(cmd, returncode=0, stderr=b""):
    return subprocess.CompletedProcess(cmd, returncode, stdout=b"", stderr=stderr)


@pytest.fixture
def engine(settings):
    return MediaTransformEngine(settings)


class TestExtractCommand:
    """Tests for the clip extraction command line."""

    def test_input_side_seek_and_duration(self, engine):
        """Seek comes before -i and the duration is end - start."""
        cmd = engine.build_extract_command("in.mp4", "out.mp4", 120, 180, "youtube_shorts")

        assert cmd.index("-ss") < cmd.index("-i")
        assert cmd[cmd.index("-ss") + 1] == "120"
        assert cmd[cmd.index("-t") + 1] == "60"

    def test_cover_crop_to_platform_resolution(self, engine):
        cmd = engine.build_extract_command("in.mp4", "out.mp4", 0, 30, "youtube_shorts")
        vf = cmd[cmd.index("-vf") + 1]

        assert "scale=1080:1920:force_original_aspect_ratio=increase" in vf
        assert "crop=1080:1920" in vf

    def test_square_profile(self, engine):
        cmd = engine.build_extract_command("in.mp4", "out.mp4", 0, 30, "facebook")
        assert "crop=1080:1080" in cmd[cmd.index("-vf") + 1]

    def test_unknown_profile_uses_default(self, engine):
        cmd = engine.build_extract_command("in.mp4", "out.mp4", 0, 30, "myspace")
        assert "crop=1080:1920" in cmd[cmd.index("-vf") + 1]

    def test_codecs_and_faststart(self, engine):
        cmd = engine.build_extract_command("in.mp4", "out.mp4", 0, 30)

        assert cmd[cmd.index("-c:v") + 1] == "libx264"
        assert cmd[cmd.index("-preset") + 1] == "fast"
        assert cmd[cmd.index("-crf") + 1] == "23"
        assert cmd[cmd.index("-pix_fmt") + 1] == "yuv420p"
        assert cmd[cmd.index("-c:a") + 1] == "aac"
        assert cmd[cmd.index("-b:a") + 1] == "128k"
        assert cmd[cmd.index("-movflags") + 1] == "+faststart"
        assert cmd[-1] == "out.mp4"


@pytest.mark.anyio
class TestExtract:
    """Tests for running extraction."""

    async def test_extract_success(self, engine, tmp_path, mocker):
        output = tmp_path / "clip.mp4"

        def fake_run(cmd, capture_output):
            write_video_file(cmd[-1])
            return _completed(cmd)

        run = mocker.patch("sermonclips.services.media_transform.subprocess.run", side_effect=fake_run)

        result = await engine.extract("in.mp4", str(output), 10, 40, "tiktok")

        assert result == str(output)
        run.assert_called_once()

    async def test_tiny_output_rejected(self, engine, tmp_path, mocker):
        """A zero exit status with a near-empty file is still a failure."""
        output = tmp_path / "clip.mp4"

        def fake_run(cmd, capture_output):
            write_video_file(cmd[-1], size=512)
            return _completed(cmd)

        mocker.patch("sermonclips.services.media_transform.subprocess.run", side_effect=fake_run)

        with pytest.raises(MediaTransformError, match="too small"):
            await engine.extract("in.mp4", str(output), 10, 40)

    async def test_nonzero_exit_carries_stderr(self, engine, tmp_path, mocker):
        mocker.patch(
            "sermonclips.services.media_transform.subprocess.run",
            side_effect=lambda cmd, capture_output: _completed(cmd, 1, b"Invalid data found"),
        )

        with pytest.raises(MediaTransformError, match="Invalid data found"):
            await engine.extract("in.mp4", str(tmp_path / "clip.mp4"), 0, 30)

    async def test_missing_ffmpeg(self, settings, tmp_path, mocker):
        mocker.patch(
            "sermonclips.services.media_transform.subprocess.run",
            side_effect=FileNotFoundError("ffmpeg"),
        )
        engine = MediaTransformEngine(settings, ffmpeg_path="/nonexistent/ffmpeg")

        with pytest.raises(MediaTransformError, match="Executable not found"):
            await engine.extract("in.mp4", str(tmp_path / "clip.mp4"), 0, 30)


@pytest.mark.anyio
class TestThumbnail:
    """Tests for thumbnail generation."""

    async def test_missing_input_fails_without_ffmpeg(self, engine, tmp_path, mocker):
        run = mocker.patch("sermonclips.services.media_transform.subprocess.run")

        with pytest.raises(MediaTransformError):
            await engine.thumbnail(str(tmp_path / "missing.mp4"), str(tmp_path / "t.jpg"), 5)

        run.assert_not_called()

    async def test_small_input_fails_without_ffmpeg(self, engine, tmp_path, mocker):
        source = write_video_file(tmp_path / "tiny.mp4", size=100)
        run = mocker.patch("sermonclips.services.media_transform.subprocess.run")

        with pytest.raises(MediaTransformError):
            await engine.thumbnail(source, str(tmp_path / "t.jpg"), 5)

        run.assert_not_called()

    async def test_single_frame_at_offset(self, engine, tmp_path, mocker):
        source = write_video_file(tmp_path / "clip.mp4")
        output = tmp_path / "thumb.jpg"

        def fake_run(cmd, capture_output):
            output.write_bytes(b"jpeg")
            return _completed(cmd)

        run = mocker.patch("sermonclips.services.media_transform.subprocess.run", side_effect=fake_run)

        await engine.thumbnail(source, str(output), 15)

        cmd = run.call_args[0][0]
        assert cmd[cmd.index("-ss") + 1] == "15"
        assert cmd[cmd.index("-frames:v") + 1] == "1"
        assert os.path.isfile(output)


@pytest.mark.anyio
class TestReplaceAudio:
    async def test_remux_maps_new_audio(self, engine, tmp_path, mocker):
        output = tmp_path / "dub.mp4"

        def fake_run(cmd, capture_output):
            output.write_bytes(b"mp4")
            return _completed(cmd)

        run = mocker.patch("sermonclips.services.media_transform.subprocess.run", side_effect=fake_run)

        await engine.replace_audio("clip.mp4", "voice.mp3", str(output))

        cmd = run.call_args[0][0]
        assert cmd[cmd.index("-c:v") + 1] == "copy"
        assert "0:v:0" in cmd and "1:a:0" in cmd
        assert "-shortest" in cmd


@pytest.mark.anyio
class TestProbe:
    async def test_reads_duration_and_video_size(self, engine, mocker):
        output = json.dumps({
            "streams": [{"codec_type": "audio"}, {"codec_type": "video", "width": 1080, "height": 1920}],
            "format": {"duration": "44.98"},
        }).encode()
        mocker.patch(
            "sermonclips.services.media_transform.subprocess.run",
            side_effect=lambda cmd, capture_output: subprocess.CompletedProcess(cmd, 0, stdout=output, stderr=b""),
        )

        info = await engine.probe("clip.mp4")

        assert info.duration == 44.98
        assert info.resolution == "1080x1920"

    async def test_unreadable_output(self, engine, mocker):
        mocker.patch(
            "sermonclips.services.media_transform.subprocess.run",
            side_effect=lambda cmd, capture_output: subprocess.CompletedProcess(cmd, 0, stdout=b"N/A", stderr=b""),
        )

        with pytest.raises(MediaTransformError, match="Unreadable"):
            await engine.probe("clip.mp4")

    async def test_nonzero_exit(self, engine, mocker):
        mocker.patch(
            "sermonclips.services.media_transform.subprocess.run",
            side_effect=lambda cmd, capture_output: _completed(cmd, 1, b"No such file or directory"),
        )

        with pytest.raises(MediaTransformError, match="ffprobe failed"):
            await engine.probe("missing.mp4")


@pytest.fixture(scope="module")
def widescreen_source(tmp_path_factory):
    """Ten seconds of 1280x720 test pattern with a tone."""
    path = tmp_path_factory.mktemp("media") / "source.mp4"
    subprocess.run(
        [
            "ffmpeg", "-y",
            "-f", "lavfi", "-i", "testsrc=size=1280x720:rate=25:duration=10",
            "-f", "lavfi", "-i", "sine=frequency=440:duration=10",
            "-c:v", "libx264", "-pix_fmt", "yuv420p",
            "-c:a", "aac",
            "-shortest",
            str(path),
        ],
        capture_output=True,
        check=True,
    )
    return str(path)


@pytest.mark.anyio
@pytest.mark.skipif(
    shutil.which("ffmpeg") is None or shutil.which("ffprobe") is None,
    reason="FFmpeg is not installed",
)
class TestExtractWithFFmpeg:
    """Runs the real encoder on a 16:9 source."""

    async def test_vertical_clip_fills_frame_and_keeps_length(self, engine, widescreen_source, tmp_path):
        output = str(tmp_path / "short.mp4")

        await engine.extract(widescreen_source, output, 2, 6, "youtube_shorts")
        info = await engine.probe(output)

        assert (info.width, info.height) == (1080, 1920)
        assert abs(info.duration - 4) < 0.5

    async def test_square_clip(self, engine, widescreen_source, tmp_path):
        output = str(tmp_path / "square.mp4")

        await engine.extract(widescreen_source, output, 0, 3, "facebook")
        info = await engine.probe(output)

        assert info.resolution == "1080x1080"
        assert abs(info.duration - 3) < 0.5

    async def test_thumbnail_from_rendered_clip(self, engine, widescreen_source, tmp_path):
        clip = str(tmp_path / "short.mp4")
        thumb = tmp_path / "thumb.jpg"

        await engine.extract(widescreen_source, clip, 1, 4, "tiktok")
        await engine.thumbnail(clip, str(thumb), 1.5)

        assert thumb.stat().st_size > 0
