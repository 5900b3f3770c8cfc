"""Variant generator: one strategy per media kind, selected by lookup."""

from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..models import MediaPipelineConfig
from ..queue.models import VARIANT_ORDER, MediaKind
from .image import ImageVariantGenerator
from .specs import GeneratedVariant, VariantSpec, fit_box, fit_within, plan_image_variants, plan_video_variants
from .video import VideoProbe, VideoVariantGenerator, probe_video


class VariantGenerator:
    """Dispatches a source to the image or video strategy.

    Strategies only need a ``generate(source_path, scratch_dir, checkpoint)``
    method returning the three variants in thumbnail, preview, high order.
    """

    def __init__(self, strategies: Dict[MediaKind, object]):
        self._strategies = dict(strategies)

    @classmethod
    def from_config(cls, config: MediaPipelineConfig) -> "VariantGenerator":
        return cls({
            MediaKind.IMAGE: ImageVariantGenerator(config.image),
            MediaKind.VIDEO: VideoVariantGenerator(config.video, config.rendering),
        })

    def generate(
        self,
        source_path: Path,
        kind: MediaKind,
        scratch_dir: Path,
        checkpoint: Optional[Callable[[], None]] = None,
    ) -> List[GeneratedVariant]:
        strategy = self._strategies[MediaKind(kind)]
        scratch_dir = Path(scratch_dir)
        scratch_dir.mkdir(parents=True, exist_ok=True)

        variants = strategy.generate(Path(source_path), scratch_dir, checkpoint)

        if [v.type for v in variants] != VARIANT_ORDER:
            raise RuntimeError(
                f"{kind} generator returned {[v.type.value for v in variants]}, expected thumbnail, preview, high"
            )
        return variants


def generate(
    source_path: Path,
    kind: MediaKind,
    scratch_dir: Path,
    config: Optional[MediaPipelineConfig] = None,
    checkpoint: Optional[Callable[[], None]] = None,
) -> List[GeneratedVariant]:
    """One-shot convenience wrapper around ``VariantGenerator``."""
    generator = VariantGenerator.from_config(config or MediaPipelineConfig())
    return generator.generate(source_path, kind, scratch_dir, checkpoint)


__all__ = [
    "VariantGenerator",
    "ImageVariantGenerator",
    "VideoVariantGenerator",
    "VideoProbe",
    "VariantSpec",
    "GeneratedVariant",
    "generate",
    "probe_video",
    "fit_within",
    "fit_box",
    "plan_image_variants",
    "plan_video_variants",
]
