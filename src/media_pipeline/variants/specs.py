"""Pure variant planning: source facts in, target specs out.

Nothing here touches the filesystem, so the same source dimensions and
profile always yield the same logical variant set.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..models import ImageProfileConfig, VideoProfileConfig
from ..queue.models import VariantType

# Pillow format name -> file extension / stored format
IMAGE_EXTENSIONS = {
    "JPEG": "jpeg",
    "PNG": "png",
    "WEBP": "webp",
}


@dataclass(frozen=True)
class VariantSpec:
    """Target description of one variant."""
    type: VariantType
    format: str                               # stored format / extension: jpeg, png, webp, mp4
    width: int
    height: int
    quality: Optional[int] = None             # image encoders
    video_bitrate_kbps: Optional[int] = None  # video re-encodes
    audio_bitrate_kbps: Optional[int] = None
    frame_offset_s: Optional[float] = None    # video poster frame

    @property
    def filename(self) -> str:
        return f"{self.type.value}.{self.format}"


@dataclass
class GeneratedVariant:
    """A variant written to the job's scratch directory, ready for upload."""
    type: VariantType
    local_path: Path
    format: str
    width: Optional[int] = None
    height: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def size_bytes(self) -> int:
        return self.local_path.stat().st_size


def fit_within(width: int, height: int, max_dimension: Optional[int]) -> Tuple[int, int]:
    """Scale (width, height) so the longest side is at most ``max_dimension``.

    Aspect ratio is preserved and the result never exceeds the source
    dimensions. ``None`` means no cap.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"invalid dimensions {width}x{height}")
    if max_dimension is None or max(width, height) <= max_dimension:
        return width, height

    scale = max_dimension / max(width, height)
    new_w = min(max_dimension, max(1, round(width * scale)))
    new_h = min(max_dimension, max(1, round(height * scale)))
    return new_w, new_h


def fit_box(
    width: int,
    height: int,
    max_width: Optional[int],
    max_height: Optional[int],
    even: bool = True,
) -> Tuple[int, int]:
    """Scale into a bounding box oriented like the source, never upscaling.

    The box is given landscape (e.g. 1280x720); a portrait source is fitted
    into the transposed box so "720p" caps the short side either way. With
    ``even`` both sides are rounded down to even numbers (yuv420p).
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"invalid dimensions {width}x{height}")

    scale = 1.0
    if max_width and max_height:
        box_w, box_h = (max_width, max_height) if width >= height else (max_height, max_width)
        scale = min(1.0, box_w / width, box_h / height)
    elif max_width:
        scale = min(1.0, max_width / width)
    elif max_height:
        scale = min(1.0, max_height / height)

    new_w = max(1, int(width * scale))
    new_h = max(1, int(height * scale))
    if even:
        new_w = max(2, new_w - new_w % 2)
        new_h = max(2, new_h - new_h % 2)
    return new_w, new_h


def plan_image_variants(
    width: int,
    height: int,
    source_format: Optional[str],
    has_transparency: bool,
    profile: ImageProfileConfig,
) -> List[VariantSpec]:
    """Plan thumbnail, preview and high for an image source.

    Thumbnail and preview are JPEG, or PNG when the source has transparency.
    High keeps the source dimensions and the source format when it is one
    of ``profile.preserve_formats``, otherwise JPEG.
    """
    small_format = "png" if has_transparency else "jpeg"

    source_format = (source_format or "").upper()
    if source_format in profile.preserve_formats and source_format in IMAGE_EXTENSIONS:
        high_format = IMAGE_EXTENSIONS[source_format]
    else:
        high_format = "jpeg"

    specs = []
    for variant_type, variant_config, fmt in (
        (VariantType.THUMBNAIL, profile.thumbnail, small_format),
        (VariantType.PREVIEW, profile.preview, small_format),
        (VariantType.HIGH, profile.high, high_format),
    ):
        w, h = fit_within(width, height, variant_config.max_dimension)
        specs.append(
            VariantSpec(type=variant_type, format=fmt, width=w, height=h, quality=variant_config.quality)
        )
    return specs


def plan_video_variants(
    width: int,
    height: int,
    duration_s: float,
    profile: VideoProfileConfig,
) -> List[VariantSpec]:
    """Plan poster frame, preview and high for a video source.

    The poster frame is taken at ``profile.thumbnail_offset_s`` or at the
    first frame when the clip is not longer than that.
    """
    offset = profile.thumbnail_offset_s if duration_s > profile.thumbnail_offset_s else 0.0
    thumb_w, thumb_h = fit_box(width, height, profile.thumbnail_width, None)
    preview_w, preview_h = fit_box(width, height, profile.preview.max_width, profile.preview.max_height)
    high_w, high_h = fit_box(width, height, profile.high.max_width, profile.high.max_height)

    return [
        VariantSpec(
            type=VariantType.THUMBNAIL,
            format="jpeg",
            width=thumb_w,
            height=thumb_h,
            frame_offset_s=offset,
        ),
        VariantSpec(
            type=VariantType.PREVIEW,
            format=profile.container,
            width=preview_w,
            height=preview_h,
            video_bitrate_kbps=profile.preview.video_bitrate_kbps,
            audio_bitrate_kbps=profile.preview.audio_bitrate_kbps,
        ),
        VariantSpec(
            type=VariantType.HIGH,
            format=profile.container,
            width=high_w,
            height=high_h,
            video_bitrate_kbps=profile.high.video_bitrate_kbps,
            audio_bitrate_kbps=profile.high.audio_bitrate_kbps,
        ),
    ]
