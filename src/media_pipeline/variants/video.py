"""Video variant generation: ffprobe for facts, FfmpegRunner for transforms."""

import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from ..errors import CorruptSource, TranscodeFailure, UnsupportedFormat
from ..ffmpeg_runner import FfmpegErrorType, FfmpegRunner, get_ffprobe_exe
from ..models import RenderingConfig, VideoProfileConfig
from ..queue.models import VariantType
from .specs import GeneratedVariant, VariantSpec, plan_video_variants

logger = logging.getLogger(__name__)


@dataclass
class VideoProbe:
    """Stream facts needed to plan video variants."""
    width: int                      # display width (rotation applied)
    height: int                     # display height (rotation applied)
    duration_s: float
    video_codec: str
    audio_codec: Optional[str]      # None when there is no audio stream
    bitrate_kbps: Optional[int]
    rotation: int = 0

    @property
    def has_audio(self) -> bool:
        return self.audio_codec is not None


def probe_video(video_path: str, timeout_s: int = 30) -> VideoProbe:
    """Probe a video with ffprobe.

    Raises:
        CorruptSource: ffprobe cannot parse the file, or it has no usable video stream
        UnsupportedFormat: the container or codec has no decoder
        TranscodeFailure: ffprobe timed out

    Example:
        >>> probe = probe_video("clip.mov")
        >>> print(probe.width, probe.height, probe.duration_s, probe.video_codec)
    """
    cmd = [
        get_ffprobe_exe(),
        "-v", "error",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        video_path
    ]

    try:
        result = subprocess.run(cmd, capture_output=True, check=True, text=True, timeout=timeout_s)
        data = json.loads(result.stdout)
    except subprocess.CalledProcessError as e:
        stderr = (e.stderr or "").strip()
        if FfmpegRunner._classify_error(stderr) == FfmpegErrorType.UNSUPPORTED:
            raise UnsupportedFormat(f"ffprobe: {stderr[:300]}") from e
        raise CorruptSource(f"ffprobe failed: {stderr[:300] or e.returncode}") from e
    except json.JSONDecodeError as e:
        raise CorruptSource(f"ffprobe output parsing failed: {e}") from e
    except subprocess.TimeoutExpired as e:
        raise TranscodeFailure(f"ffprobe timed out after {timeout_s}s") from e

    video_stream = None
    audio_stream = None
    for stream in data.get("streams", []):
        if stream.get("codec_type") == "video" and video_stream is None:
            # Cover art in audio files shows up as a one-frame video stream
            if stream.get("disposition", {}).get("attached_pic"):
                continue
            video_stream = stream
        elif stream.get("codec_type") == "audio" and audio_stream is None:
            audio_stream = stream

    if not video_stream:
        raise CorruptSource(f"No video stream found in {Path(video_path).name}")

    width = int(video_stream.get("width") or 0)
    height = int(video_stream.get("height") or 0)
    if width <= 0 or height <= 0:
        raise CorruptSource(f"Video stream has no dimensions: {width}x{height}")

    rotation = _stream_rotation(video_stream)
    if rotation % 180 == 90:
        width, height = height, width

    format_info = data.get("format", {})
    duration = (
        _probe_number(format_info.get("duration"))
        or _probe_number(video_stream.get("duration"))
        or 0.0
    )
    bitrate = _probe_number(format_info.get("bit_rate"))
    if bitrate is not None:
        bitrate = int(bitrate) // 1000

    return VideoProbe(
        width=width,
        height=height,
        duration_s=duration,
        video_codec=video_stream.get("codec_name", "unknown"),
        audio_codec=audio_stream.get("codec_name") if audio_stream else None,
        bitrate_kbps=bitrate,
        rotation=rotation,
    )


def _probe_number(value) -> Optional[float]:
    """ffprobe reports unknown values as "N/A"; those read as None."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _stream_rotation(stream: dict) -> int:
    """Rotation in degrees from the rotate tag or display-matrix side data."""
    rotate = stream.get("tags", {}).get("rotate")
    if rotate is None:
        for side_data in stream.get("side_data_list", []):
            if "rotation" in side_data:
                rotate = side_data["rotation"]
                break
    try:
        return int(float(rotate or 0)) % 360
    except ValueError:
        return 0


class VideoVariantGenerator:
    """Produces a poster frame plus preview and high re-encodes of one video.

    Preview and high are always re-encoded (never stream-copied) so every
    stored video has the same codec and container.
    """

    def __init__(
        self,
        profile: Optional[VideoProfileConfig] = None,
        rendering: Optional[RenderingConfig] = None,
        runner_factory: Optional[Callable[[], FfmpegRunner]] = None,
        prober: Callable[[str], VideoProbe] = probe_video,
    ):
        self.profile = profile or VideoProfileConfig()
        self.rendering = rendering or RenderingConfig()
        self.runner_factory = runner_factory or self._default_runner
        self.prober = prober

    def _default_runner(self) -> FfmpegRunner:
        return FfmpegRunner(
            global_timeout_s=self.rendering.global_timeout_s,
            no_progress_timeout_s=self.rendering.no_progress_timeout_s,
            kill_grace_period_s=self.rendering.kill_grace_period_s,
            save_artifacts_on_failure=self.rendering.save_artifacts_on_failure,
            ffmpeg_loglevel=self.rendering.ffmpeg_loglevel,
            temp_dir=self.rendering.temp_dir,
        )

    def generate(
        self,
        source_path: Path,
        scratch_dir: Path,
        checkpoint: Optional[Callable[[], None]] = None,
    ) -> List[GeneratedVariant]:
        source_path = Path(source_path)
        if not source_path.exists():
            raise CorruptSource(f"Source file not found: {source_path}")
        if source_path.stat().st_size == 0:
            raise CorruptSource(f"Source file is empty: {source_path}")

        probe = self.prober(str(source_path))
        logger.info(
            "Video %s: %s %dx%d %.1fs audio=%s bitrate=%skbps",
            source_path.name,
            probe.video_codec,
            probe.width,
            probe.height,
            probe.duration_s,
            probe.audio_codec or "none",
            probe.bitrate_kbps,
        )

        specs = plan_video_variants(probe.width, probe.height, probe.duration_s, self.profile)
        metadata = {
            "duration_s": probe.duration_s,
            "source_codec": probe.video_codec,
            "source_bitrate_kbps": probe.bitrate_kbps,
            "source_width": probe.width,
            "source_height": probe.height,
        }

        variants = []
        for spec in specs:
            if checkpoint:
                checkpoint()
            out_path = Path(scratch_dir) / spec.filename
            self._render(source_path, probe, spec, out_path)

            if not out_path.exists() or out_path.stat().st_size == 0:
                raise TranscodeFailure(f"ffmpeg produced no output for {spec.type.value}")

            variants.append(
                GeneratedVariant(
                    type=spec.type,
                    local_path=out_path,
                    format=spec.format,
                    width=spec.width,
                    height=spec.height,
                    metadata=dict(metadata),
                )
            )
        return variants

    def _render(self, source_path: Path, probe: VideoProbe, spec: VariantSpec, out_path: Path) -> None:
        runner = self.runner_factory()

        if spec.type == VariantType.THUMBNAIL:
            result = runner.extract_frame(
                str(source_path),
                str(out_path),
                at_s=spec.frame_offset_s or 0.0,
                width=spec.width,
                height=spec.height,
            )
        else:
            result = runner.transcode(
                str(source_path),
                str(out_path),
                video_bitrate_kbps=spec.video_bitrate_kbps,
                audio_bitrate_kbps=spec.audio_bitrate_kbps,
                scale_filter=f"scale={spec.width}:{spec.height}",
                has_audio=probe.has_audio,
                codec=self.profile.codec,
                audio_codec=self.profile.audio_codec,
                preset=self.profile.preset,
                pixel_format=self.profile.pixel_format,
                faststart=True,
                expected_duration=probe.duration_s,
            )

        result.raise_for_error(f"{spec.type.value} variant")
        logger.debug("Rendered %s in %.1fs", spec.filename, result.duration_s)
