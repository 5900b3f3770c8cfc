"""Unit tests for FFmpeg runner with process isolation and timeout enforcement."""

import os
import subprocess
import tempfile
from unittest.mock import MagicMock, patch

import pytest

from media_pipeline.errors import CorruptSource, TranscodeFailure, UnsupportedFormat
from media_pipeline.ffmpeg_runner import (
    FfmpegErrorType,
    FfmpegProgress,
    FfmpegResult,
    FfmpegRunner,
    check_ffmpeg,
    get_ffprobe_exe,
    parse_progress_line,
)


class TestProgressParsing:
    """Test FFmpeg progress parsing from stderr."""

    def test_parse_out_time(self):
        runner = FfmpegRunner()
        runner._progress = FfmpegProgress()

        mock_stderr = ["frame=  123\n", "fps=25.00\n", "out_time=00:00:05.50\n", "speed=2.5x\n"]
        runner._monitor_progress(iter(mock_stderr))

        assert runner._progress.current_time_s == pytest.approx(5.5, rel=0.01)
        assert runner._progress.frame == 123
        assert runner._progress.fps == pytest.approx(25.0, rel=0.01)
        assert runner._progress.speed == pytest.approx(2.5, rel=0.01)
        assert runner._stderr_lines == mock_stderr

    def test_parse_large_time(self):
        """Test parsing large time values (hours)."""
        runner = FfmpegRunner()
        runner._progress = FfmpegProgress()

        runner._monitor_progress(iter(["out_time=01:23:45.67\n"]))

        expected_time = 1 * 3600 + 23 * 60 + 45.67
        assert runner._progress.current_time_s == pytest.approx(expected_time, rel=0.01)

    def test_only_time_and_frame_count_as_liveness(self):
        progress = FfmpegProgress()
        assert parse_progress_line("out_time=00:00:02.00\n", progress)
        assert parse_progress_line("frame=  7\n", progress)
        assert not parse_progress_line("fps=30.0\n", progress)
        assert not parse_progress_line("progress=continue\n", progress)
        assert progress.fps == pytest.approx(30.0)

    def test_parse_bitrate(self):
        runner = FfmpegRunner()
        runner._progress = FfmpegProgress()
        runner._monitor_progress(iter(["bitrate=1234.5kbits/s\n"]))
        assert runner._progress.bitrate_kbps == pytest.approx(1234.5)

    def test_progress_callback_invoked(self):
        seen = []
        runner = FfmpegRunner(progress_callback=lambda p: seen.append(p.current_time_s))
        runner._progress = FfmpegProgress()

        runner._monitor_progress(iter(["out_time=00:00:01.00\n"]))

        assert seen == [pytest.approx(1.0)]

    def test_failing_callback_does_not_stop_parsing(self):
        runner = FfmpegRunner(progress_callback=MagicMock(side_effect=ValueError("ui gone")))
        runner._progress = FfmpegProgress()
        runner._monitor_progress(iter(["out_time=00:00:03.00\n"]))
        assert runner._progress.current_time_s == pytest.approx(3.0)


class TestErrorClassification:
    """Test FFmpeg error classification for retry logic."""

    def test_classify_permanent_errors(self):
        permanent_cases = [
            "input.mp4: No such file or directory",
            "Invalid data found when processing input",
            "moov atom not found",
            "Output file #0 does not contain any stream",
        ]
        for stderr in permanent_cases:
            assert FfmpegRunner._classify_error(stderr) == FfmpegErrorType.PERMANENT, stderr

    def test_classify_unsupported_errors(self):
        unsupported_cases = [
            "Decoder not found for stream 0",
            "Unsupported codec with id 0 for input stream 1",
            "Could not find codec parameters for stream 0 (Video: none)",
        ]
        for stderr in unsupported_cases:
            assert FfmpegRunner._classify_error(stderr) == FfmpegErrorType.UNSUPPORTED, stderr

    def test_classify_transient_errors(self):
        transient_cases = [
            "I/O error reading input",
            "Resource temporarily unavailable",
            "Cannot allocate memory",
            "No space left on device",
        ]
        for stderr in transient_cases:
            assert FfmpegRunner._classify_error(stderr) == FfmpegErrorType.TRANSIENT, stderr

    def test_classify_unknown_as_transient(self):
        assert FfmpegRunner._classify_error("Some unknown error message") == FfmpegErrorType.TRANSIENT


class TestRaiseForError:
    def _result(self, error_type, stderr="boom\n"):
        return FfmpegResult(
            success=False, returncode=1, stderr=stderr, duration_s=2.0, error_type=error_type
        )

    def test_success_does_not_raise(self):
        FfmpegResult(success=True, returncode=0, stderr="", duration_s=1.0).raise_for_error("preview")

    @pytest.mark.parametrize(
        "error_type,exc",
        [
            (FfmpegErrorType.PERMANENT, CorruptSource),
            (FfmpegErrorType.UNSUPPORTED, UnsupportedFormat),
            (FfmpegErrorType.TRANSIENT, TranscodeFailure),
            (FfmpegErrorType.TIMEOUT, TranscodeFailure),
        ],
    )
    def test_maps_to_taxonomy(self, error_type, exc):
        with pytest.raises(exc):
            self._result(error_type).raise_for_error("preview variant")

    def test_message_includes_stderr_tail(self):
        with pytest.raises(CorruptSource) as exc_info:
            self._result(FfmpegErrorType.PERMANENT, "a\nb\nmoov atom not found\n").raise_for_error("high")
        assert "moov atom not found" in str(exc_info.value)
        assert str(exc_info.value).startswith("high")


def _capture(runner):
    captured = []

    def mock_run_ffmpeg(cmd, expected_duration=None):
        captured.append(cmd)
        return FfmpegResult(success=True, returncode=0, stderr="", duration_s=1.0)

    runner._run_ffmpeg = mock_run_ffmpeg
    runner._get_ffmpeg_exe = lambda: "ffmpeg"
    return captured


class TestCommandGeneration:
    """Test FFmpeg command generation."""

    def test_transcode_command(self):
        runner = FfmpegRunner()
        captured = _capture(runner)

        runner.transcode(
            "input.mov",
            "preview.mp4",
            video_bitrate_kbps=1000,
            audio_bitrate_kbps=128,
            scale_filter="scale=1280:720",
            preset="fast",
        )

        cmd = captured[0]
        assert cmd[0] == "ffmpeg"
        assert cmd[cmd.index("-i") + 1] == "input.mov"
        assert cmd[cmd.index("-c:v") + 1] == "libx264"
        assert cmd[cmd.index("-b:v") + 1] == "1000k"
        assert cmd[cmd.index("-maxrate") + 1] == "1000k"
        assert cmd[cmd.index("-bufsize") + 1] == "2000k"
        assert cmd[cmd.index("-vf") + 1] == "scale=1280:720"
        assert cmd[cmd.index("-pix_fmt") + 1] == "yuv420p"
        assert cmd[cmd.index("-c:a") + 1] == "aac"
        assert cmd[cmd.index("-b:a") + 1] == "128k"
        assert cmd[cmd.index("-preset") + 1] == "fast"
        assert "+faststart" in cmd
        assert "copy" not in cmd
        assert cmd[-1] == "preview.mp4"

    def test_transcode_without_audio(self):
        runner = FfmpegRunner()
        captured = _capture(runner)

        runner.transcode("in.mp4", "out.mp4", video_bitrate_kbps=4000, audio_bitrate_kbps=192, has_audio=False)

        cmd = captured[0]
        assert "-an" in cmd
        assert "-c:a" not in cmd
        assert "0:a:0" not in cmd

    def test_extract_frame_command(self):
        runner = FfmpegRunner()
        captured = _capture(runner)

        runner.extract_frame("in.mp4", "thumb.jpeg", at_s=1.0, width=300, height=168)

        cmd = captured[0]
        # Input seek: -ss precedes -i
        assert cmd.index("-ss") < cmd.index("-i")
        assert cmd[cmd.index("-ss") + 1] == "1.000"
        assert cmd[cmd.index("-frames:v") + 1] == "1"
        assert cmd[cmd.index("-vf") + 1] == "scale=300:168"
        assert cmd[-1] == "thumb.jpeg"


class TestRunFfmpeg:
    def _popen(self, returncode=0, stderr_lines=()):
        process = MagicMock()
        process.wait.return_value = returncode
        process.stderr = iter(stderr_lines)
        process.poll.return_value = returncode
        return process

    @patch("media_pipeline.ffmpeg_runner.subprocess.Popen")
    def test_success(self, mock_popen):
        mock_popen.return_value = self._popen(0, ["out_time=00:00:02.00\n"])
        runner = FfmpegRunner(save_artifacts_on_failure=False)

        result = runner._run_ffmpeg(["ffmpeg", "-i", "a", "b"], expected_duration=2.0)

        assert result.success
        assert result.error_type is None
        assert result.final_progress.current_time_s == pytest.approx(2.0)
        assert runner._process is None

    @patch("media_pipeline.ffmpeg_runner.subprocess.Popen")
    def test_failure_is_classified_and_saved(self, mock_popen, tmp_path):
        mock_popen.return_value = self._popen(1, ["in.mp4: Invalid data found when processing input\n"])
        runner = FfmpegRunner(temp_dir=str(tmp_path))

        result = runner._run_ffmpeg(["ffmpeg", "-i", "in.mp4", "out.mp4"])

        assert not result.success
        assert result.error_type == FfmpegErrorType.PERMANENT
        assert len(result.artifacts_saved) == 2

    @patch("media_pipeline.ffmpeg_runner.subprocess.Popen")
    def test_global_timeout_kills_process(self, mock_popen):
        process = self._popen()
        process.wait.side_effect = subprocess.TimeoutExpired("ffmpeg", 1)
        mock_popen.return_value = process
        runner = FfmpegRunner(global_timeout_s=0, save_artifacts_on_failure=False)

        with patch.object(runner, "_kill_process_tree") as mock_kill:
            result = runner._run_ffmpeg(["ffmpeg"])

        mock_kill.assert_called_once()
        assert result.error_type == FfmpegErrorType.TIMEOUT
        with pytest.raises(TranscodeFailure):
            result.raise_for_error("preview")


class TestArtifactGeneration:
    """Test failure artifact generation."""

    def test_save_failure_artifacts(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            runner = FfmpegRunner(temp_dir=tmpdir, save_artifacts_on_failure=True)

            cmd = ["ffmpeg", "-i", "input file.mp4", "output.mp4"]
            artifacts = runner._save_failure_artifacts(cmd, "Error: moov atom not found")

            assert len(artifacts) == 2

            log_file = [a for a in artifacts if a.name.startswith("ffmpeg_error_")][0]
            log_content = log_file.read_text()
            assert "COMMAND:" in log_content
            assert "STDERR:" in log_content
            assert "moov atom not found" in log_content

            script_file = [a for a in artifacts if a.name.startswith("ffmpeg_cmd_")][0]
            assert os.access(script_file, os.X_OK)
            script_content = script_file.read_text()
            assert "#!/bin/bash" in script_content
            assert "'input file.mp4'" in script_content


class TestTempDirectory:
    def test_temp_dir_from_config(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            runner = FfmpegRunner(temp_dir=tmpdir)
            assert str(runner._get_temp_dir()) == tmpdir

    def test_temp_dir_default(self):
        runner = FfmpegRunner(temp_dir=None)
        assert str(runner._get_temp_dir()) == tempfile.gettempdir()


class TestProcessTreeCleanup:
    def test_kill_process_tree(self):
        runner = FfmpegRunner(kill_grace_period_s=1)

        mock_process = MagicMock()
        mock_process.pid = 12345
        mock_process.poll.return_value = None
        runner._process = mock_process

        mock_parent = MagicMock()
        mock_child1 = MagicMock()
        mock_child2 = MagicMock()
        mock_parent.children.return_value = [mock_child1, mock_child2]

        with patch("psutil.Process", return_value=mock_parent), patch(
            "psutil.wait_procs", return_value=([mock_parent], [mock_child2])
        ):
            runner._kill_process_tree()

        mock_parent.terminate.assert_called_once()
        mock_child1.terminate.assert_called_once()
        mock_child2.terminate.assert_called_once()
        mock_child2.kill.assert_called_once()
        mock_parent.kill.assert_not_called()

    def test_kill_skips_finished_process(self):
        runner = FfmpegRunner()
        runner._process = MagicMock()
        runner._process.poll.return_value = 0

        with patch("psutil.Process") as mock_process_class:
            runner._kill_process_tree()
        mock_process_class.assert_not_called()


class TestBinaries:
    @patch("media_pipeline.ffmpeg_runner.os.path.exists", return_value=True)
    @patch("media_pipeline.ffmpeg_runner.imageio_ffmpeg.get_ffmpeg_exe", return_value="/opt/bin/ffmpeg")
    def test_ffprobe_next_to_ffmpeg(self, _exe, _exists):
        assert get_ffprobe_exe() == "/opt/bin/ffprobe"

    @patch("media_pipeline.ffmpeg_runner.os.path.exists", return_value=False)
    @patch("media_pipeline.ffmpeg_runner.imageio_ffmpeg.get_ffmpeg_exe", return_value="/opt/bin/ffmpeg")
    def test_ffprobe_falls_back_to_path(self, _exe, _exists):
        assert get_ffprobe_exe() == "ffprobe"

    @patch("media_pipeline.ffmpeg_runner.imageio_ffmpeg.get_ffmpeg_exe", side_effect=RuntimeError("missing"))
    def test_check_ffmpeg_missing(self, _exe):
        assert check_ffmpeg() is False
