"""FFmpeg runner with process isolation, timeout enforcement, and progress monitoring.

This module drives the ffmpeg binary for the video variant generator. It
prevents zombie processes, enforces timeouts, monitors progress, and
preserves failure artifacts for debugging.

Key Features:
- Process isolation with subprocess.Popen
- Dual timeout enforcement (global + no-progress)
- Real-time progress parsing from FFmpeg stderr
- Process tree cleanup via psutil
- Error classification into the pipeline failure taxonomy
- Artifact preservation on failure

A runner holds the state of one ffmpeg process at a time; create one runner
per worker (or per call) rather than sharing it between threads.
"""

import logging
import os
import re
import shlex
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

import imageio_ffmpeg
import psutil

from .errors import CorruptSource, TranscodeFailure, UnsupportedFormat

logger = logging.getLogger(__name__)


class FfmpegErrorType(Enum):
    """FFmpeg error classification for retry logic."""
    PERMANENT = "permanent"       # Malformed input, missing stream
    UNSUPPORTED = "unsupported"   # No decoder / unknown container
    TRANSIENT = "transient"       # I/O stall, resource exhaustion
    TIMEOUT = "timeout"           # Process timeout (global or no-progress)


@dataclass
class FfmpegProgress:
    """Real-time FFmpeg progress metrics."""
    current_time_s: float = 0.0      # Current position in seconds
    total_duration_s: float = 0.0    # Total duration (if known)
    fps: float = 0.0                 # Current FPS
    bitrate_kbps: float = 0.0        # Current bitrate
    speed: float = 0.0               # Processing speed multiplier (e.g., 2.5x)
    frame: int = 0                   # Current frame number
    last_update: float = 0.0         # Timestamp of last update


@dataclass
class FfmpegResult:
    """Result of FFmpeg execution."""
    success: bool
    returncode: int
    stderr: str
    duration_s: float
    error_type: Optional[FfmpegErrorType] = None
    final_progress: Optional[FfmpegProgress] = None
    artifacts_saved: List[Path] = field(default_factory=list)

    def raise_for_error(self, context: str) -> None:
        """Raise the taxonomy exception matching a failed run."""
        if self.success:
            return
        tail = self.stderr.strip().splitlines()[-3:] if self.stderr else []
        message = f"{context}: ffmpeg exited {self.returncode}"
        if tail:
            message += f" ({' | '.join(tail)})"

        if self.error_type == FfmpegErrorType.PERMANENT:
            raise CorruptSource(message)
        if self.error_type == FfmpegErrorType.UNSUPPORTED:
            raise UnsupportedFormat(message)
        if self.error_type == FfmpegErrorType.TIMEOUT:
            raise TranscodeFailure(f"{context}: ffmpeg timed out after {self.duration_s:.0f}s")
        raise TranscodeFailure(message)


# (error type, stderr fragments); the first group with a match wins.
ERROR_PATTERNS = [
    (FfmpegErrorType.UNSUPPORTED, (
        "unsupported codec",
        "invalid codec",
        "decoder not found",
        "unknown decoder",
        "could not find codec parameters",
        "unknown format",
    )),
    (FfmpegErrorType.PERMANENT, (
        "no such file or directory",
        "invalid data found",
        "moov atom not found",
        "does not contain any stream",
        "end of file",
        "corrupt",
    )),
    (FfmpegErrorType.TRANSIENT, (
        "i/o error",
        "resource temporarily unavailable",
        "cannot allocate memory",
        "no space left on device",
    )),
]

_OUT_TIME_RE = re.compile(r"out_time=(\d+):(\d+):(\d+(?:\.\d+)?)")

# progress attribute -> (pattern, converter); a match on a "liveness" field
# counts as forward progress for the no-progress timeout.
_PROGRESS_FIELDS = {
    "frame": (re.compile(r"frame=\s*(\d+)"), int),
    "fps": (re.compile(r"fps=\s*([\d.]+)"), float),
    "bitrate_kbps": (re.compile(r"bitrate=\s*([\d.]+)kbits/s"), float),
    "speed": (re.compile(r"speed=\s*([\d.]+)x"), float),
}
_LIVENESS_FIELDS = {"frame"}


def parse_progress_line(line: str, progress: FfmpegProgress) -> bool:
    """Update ``progress`` from one ``-progress`` line.

    Returns True when the line shows the encoder moving forward.
    """
    advanced = False
    match = _OUT_TIME_RE.search(line)
    if match:
        h, m, s = match.groups()
        progress.current_time_s = int(h) * 3600 + int(m) * 60 + float(s)
        advanced = True

    for attr, (pattern, convert) in _PROGRESS_FIELDS.items():
        match = pattern.search(line)
        if match:
            setattr(progress, attr, convert(match.group(1)))
            advanced = advanced or attr in _LIVENESS_FIELDS
    return advanced


class FfmpegRunner:
    """FFmpeg orchestration with timeout and zombie prevention.

    Example:
        >>> runner = FfmpegRunner(global_timeout_s=600, no_progress_timeout_s=120)
        >>> result = runner.transcode(
        ...     "input.mov", "preview.mp4",
        ...     video_bitrate_kbps=1000, audio_bitrate_kbps=128,
        ...     scale_filter="scale=-2:720",
        ... )
        >>> result.raise_for_error("preview")
    """

    def __init__(
        self,
        global_timeout_s: int = 1800,
        no_progress_timeout_s: int = 120,
        kill_grace_period_s: int = 5,
        save_artifacts_on_failure: bool = True,
        ffmpeg_loglevel: str = "info",
        temp_dir: Optional[str] = None,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None
    ):
        """Initialize FFmpeg runner.

        Args:
            global_timeout_s: Maximum duration for any FFmpeg operation
            no_progress_timeout_s: Kill the process if no progress update arrives in N seconds
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            save_artifacts_on_failure: Save logs and commands on failure
            ffmpeg_loglevel: FFmpeg log level (error, warning, info, verbose)
            temp_dir: Directory for failure artifacts (None = system temp)
            progress_callback: Optional callback for progress updates
        """
        self.global_timeout_s = global_timeout_s
        self.no_progress_timeout_s = no_progress_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.save_artifacts_on_failure = save_artifacts_on_failure
        self.ffmpeg_loglevel = ffmpeg_loglevel
        self.temp_dir = temp_dir
        self.progress_callback = progress_callback

        self._process: Optional[subprocess.Popen] = None
        self._progress = FfmpegProgress()
        self._stderr_lines: List[str] = []

    def transcode(
        self,
        source_path: str,
        output_path: str,
        video_bitrate_kbps: int,
        audio_bitrate_kbps: int,
        scale_filter: Optional[str] = None,
        has_audio: bool = True,
        codec: str = "libx264",
        audio_codec: str = "aac",
        preset: str = "medium",
        pixel_format: Optional[str] = "yuv420p",
        faststart: bool = True,
        expected_duration: Optional[float] = None
    ) -> FfmpegResult:
        """Re-encode a full video at a fixed bitrate.

        The output is always re-encoded, never stream-copied, so every
        variant has the same codec and container regardless of the source.

        Args:
            source_path: Input video file
            output_path: Output file path (.mp4)
            video_bitrate_kbps: Target video bitrate
            audio_bitrate_kbps: Target audio bitrate (ignored without audio)
            scale_filter: Optional ``-vf`` scale expression
            has_audio: Whether the source carries an audio stream
            codec: Video codec (default: libx264)
            audio_codec: Audio codec (default: aac)
            preset: Encoding preset (default: medium)
            pixel_format: Pixel format (e.g., "yuv420p")
            faststart: Move the moov atom to the front for progressive playback
            expected_duration: Source duration for progress calculation

        Returns:
            FfmpegResult with success status and metadata
        """
        cmd = [
            self._get_ffmpeg_exe(),
            "-y",
            "-i", source_path,
            "-map", "0:v:0",
            "-c:v", codec,
            "-preset", preset,
            "-b:v", f"{video_bitrate_kbps}k",
            "-maxrate", f"{video_bitrate_kbps}k",
            "-bufsize", f"{video_bitrate_kbps * 2}k",
        ]

        if scale_filter:
            cmd.extend(["-vf", scale_filter])
        if pixel_format:
            cmd.extend(["-pix_fmt", pixel_format])

        if has_audio:
            cmd.extend(["-map", "0:a:0", "-c:a", audio_codec, "-b:a", f"{audio_bitrate_kbps}k"])
        else:
            cmd.append("-an")

        if faststart:
            cmd.extend(["-movflags", "+faststart"])

        cmd.extend([
            "-progress", "pipe:2",  # Progress to stderr
            "-loglevel", self.ffmpeg_loglevel,
            output_path
        ])

        return self._run_ffmpeg(cmd, expected_duration=expected_duration)

    def extract_frame(
        self,
        source_path: str,
        output_path: str,
        at_s: float,
        width: int,
        height: int = -2,
        quality: int = 3
    ) -> FfmpegResult:
        """Extract a single frame at ``at_s`` scaled to ``width`` x ``height``.

        Seeks before the input (-ss before -i); ffmpeg decodes forward from the
        preceding keyframe, so the frame is accurate to ``at_s``. A height of
        -2 keeps the aspect ratio.
        """
        cmd = [
            self._get_ffmpeg_exe(),
            "-y",
            "-ss", f"{at_s:.3f}",
            "-i", source_path,
            "-frames:v", "1",
            "-vf", f"scale={width}:{height}",
            "-q:v", str(quality),
            "-loglevel", self.ffmpeg_loglevel,
            output_path
        ]
        return self._run_ffmpeg(cmd)

    def _run_ffmpeg(
        self,
        cmd: List[str],
        expected_duration: Optional[float] = None
    ) -> FfmpegResult:
        """Execute FFmpeg with timeout enforcement and progress monitoring.

        Args:
            cmd: FFmpeg command as list
            expected_duration: Expected output duration for progress calculation

        Returns:
            FfmpegResult with execution details
        """
        start_time = time.time()
        self._progress = FfmpegProgress(total_duration_s=expected_duration or 0.0, last_update=start_time)
        self._stderr_lines = []

        logger.debug("Running: %s", " ".join(cmd))

        try:
            self._process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                bufsize=1  # Line buffered for real-time progress
            )

            monitor = threading.Thread(
                target=self._monitor_progress,
                args=(self._process.stderr,),
                daemon=True
            )
            monitor.start()

            timeout_type = None
            while True:
                try:
                    returncode = self._process.wait(timeout=1.0)
                    break
                except subprocess.TimeoutExpired:
                    pass

                now = time.time()
                if now - start_time > self.global_timeout_s:
                    timeout_type = "global"
                elif now - self._progress.last_update > self.no_progress_timeout_s:
                    timeout_type = "no_progress"

                if timeout_type:
                    logger.warning(
                        "ffmpeg %s timeout after %.0fs; killing process tree", timeout_type, now - start_time
                    )
                    self._kill_process_tree()
                    returncode = -1
                    break

            monitor.join(timeout=2)
            stderr = "".join(self._stderr_lines)
            duration = time.time() - start_time

            error_type = None
            if timeout_type:
                error_type = FfmpegErrorType.TIMEOUT
            elif returncode != 0:
                error_type = self._classify_error(stderr)

            artifacts = []
            if returncode != 0 and self.save_artifacts_on_failure:
                artifacts = self._save_failure_artifacts(cmd, stderr)

            return FfmpegResult(
                success=(returncode == 0),
                returncode=returncode,
                stderr=stderr,
                duration_s=duration,
                error_type=error_type,
                final_progress=self._progress,
                artifacts_saved=artifacts
            )

        except BaseException:
            # Never leave an orphaned encoder behind
            self._kill_process_tree()
            raise

        finally:
            self._process = None

    def _monitor_progress(self, stderr_stream) -> None:
        """Collect stderr lines and fold ``-progress`` key=value pairs into ``self._progress``.

        The progress callback is throttled to one call every two seconds.
        """
        last_callback = 0.0
        for line in stderr_stream:
            self._stderr_lines.append(line)
            if parse_progress_line(line, self._progress):
                self._progress.last_update = time.time()

            if self.progress_callback is None:
                continue
            now = time.time()
            if now - last_callback < 2.0:
                continue
            last_callback = now
            try:
                self.progress_callback(self._progress)
            except Exception:
                logger.exception("Progress callback failed")

    def _kill_process_tree(self) -> None:
        """Kill FFmpeg process and all children.

        Kill sequence:
        1. Send SIGTERM to the process and its children
        2. Wait grace period (default 5s)
        3. Send SIGKILL to survivors
        """
        if not self._process or self._process.poll() is not None:
            return

        try:
            parent = psutil.Process(self._process.pid)
            children = parent.children(recursive=True)
        except psutil.NoSuchProcess:
            return

        for proc in children + [parent]:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs([parent] + children, timeout=self.kill_grace_period_s)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

        try:
            self._process.wait(timeout=self.kill_grace_period_s)
        except subprocess.TimeoutExpired:
            logger.error("ffmpeg pid %s survived SIGKILL", self._process.pid)

    @staticmethod
    def _classify_error(stderr: str) -> FfmpegErrorType:
        """Map ffmpeg stderr to an error type; unrecognised output is transient."""
        stderr_lower = stderr.lower()
        for error_type, fragments in ERROR_PATTERNS:
            if any(fragment in stderr_lower for fragment in fragments):
                return error_type
        return FfmpegErrorType.TRANSIENT

    def _save_failure_artifacts(self, cmd: List[str], stderr: str) -> List[Path]:
        """Write ``ffmpeg_error_*.log`` (command + stderr) and a replayable ``ffmpeg_cmd_*.sh``."""
        temp_dir = self._get_temp_dir()
        stamp = f"{int(time.time())}_{os.getpid()}_{threading.get_ident()}"
        command_line = " ".join(shlex.quote(arg) for arg in cmd)

        log_text = (
            f"ffmpeg failure at {time.ctime()} (pid {os.getpid()})\n\n"
            f"COMMAND:\n{command_line}\n\n"
            f"STDERR:\n{stderr or '(empty)'}\n"
        )
        script_text = f"#!/bin/bash\n# replay of a failed variant encode\n{command_line}\n"

        artifacts = []
        for name, text, mode in (
            (f"ffmpeg_error_{stamp}.log", log_text, 0o644),
            (f"ffmpeg_cmd_{stamp}.sh", script_text, 0o755),
        ):
            path = temp_dir / name
            try:
                path.write_text(text, encoding="utf-8")
                path.chmod(mode)
            except OSError:
                logger.exception("Failed to write ffmpeg artifact %s", path)
                continue
            artifacts.append(path)

        if artifacts:
            logger.info("Saved ffmpeg failure artifacts: %s", ", ".join(str(a) for a in artifacts))
        return artifacts

    def _get_temp_dir(self) -> Path:
        temp_dir = Path(self.temp_dir) if self.temp_dir else Path(tempfile.gettempdir())
        temp_dir.mkdir(parents=True, exist_ok=True)
        return temp_dir

    @staticmethod
    def _get_ffmpeg_exe() -> str:
        return imageio_ffmpeg.get_ffmpeg_exe()


def get_ffprobe_exe() -> str:
    """Locate ffprobe next to the ffmpeg binary shipped by imageio-ffmpeg."""
    ffmpeg_path = imageio_ffmpeg.get_ffmpeg_exe()
    ffprobe_path = ffmpeg_path.replace("ffmpeg", "ffprobe")
    if not os.path.exists(ffprobe_path):
        ffprobe_path = "ffprobe"
    return ffprobe_path


def check_ffmpeg() -> bool:
    """Return True if ffmpeg is available and runs."""
    try:
        exe = imageio_ffmpeg.get_ffmpeg_exe()
        result = subprocess.run([exe, "-version"], capture_output=True, text=True, timeout=10)
    except (RuntimeError, OSError, subprocess.TimeoutExpired) as e:
        logger.error("ffmpeg not available: %s", e)
        return False
    return result.returncode == 0

