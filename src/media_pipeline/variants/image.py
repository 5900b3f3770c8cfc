"""Image variant generation with Pillow."""

import logging
from pathlib import Path
from typing import Callable, List, Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from ..errors import CorruptSource, TranscodeFailure, UnsupportedFormat
from ..models import ImageProfileConfig
from .specs import GeneratedVariant, VariantSpec, plan_image_variants

logger = logging.getLogger(__name__)

# Pillow format names accepted as sources. MPO is how Pillow reports many
# camera JPEGs; HEIF only decodes when a HEIF plugin is registered.
SUPPORTED_SOURCE_FORMATS = {"JPEG", "MPO", "PNG", "GIF", "WEBP", "HEIF"}


def has_transparency(image: Image.Image) -> bool:
    """True if any pixel is not fully opaque."""
    if "transparency" in image.info:
        image = image.convert("RGBA")
    if "A" not in image.getbands():
        return False
    low, _ = image.getchannel("A").getextrema()
    return low < 255


def flatten_onto_white(image: Image.Image) -> Image.Image:
    background = Image.new("RGB", image.size, (255, 255, 255))
    background.paste(image, mask=image.getchannel("A"))
    return background


class ImageVariantGenerator:
    """Produces thumbnail, preview and high renditions of one image.

    EXIF orientation is applied before planning, so the stored variants are
    upright and their reported dimensions match what a viewer shows.
    """

    def __init__(self, profile: Optional[ImageProfileConfig] = None):
        self.profile = profile or ImageProfileConfig()

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

        image, source_format = self._decode(source_path)
        transparent = has_transparency(image)
        working = image.convert("RGBA" if transparent else "RGB")

        specs = plan_image_variants(
            working.width, working.height, source_format, transparent, self.profile
        )
        logger.debug(
            "Image %s: %s %dx%d transparent=%s",
            source_path.name, source_format, working.width, working.height, transparent,
        )

        variants = []
        for spec in specs:
            if checkpoint:
                checkpoint()
            out_path = Path(scratch_dir) / spec.filename
            self._render(working, spec, out_path)
            variants.append(
                GeneratedVariant(
                    type=spec.type,
                    local_path=out_path,
                    format=spec.format,
                    width=spec.width,
                    height=spec.height,
                    metadata={
                        "source_format": source_format,
                        "source_width": working.width,
                        "source_height": working.height,
                    },
                )
            )
        return variants

    @staticmethod
    def _decode(source_path: Path):
        """Open, fully decode and orient the source.

        Raises:
            UnsupportedFormat: Pillow has no decoder for the file
            CorruptSource: the file is truncated or malformed
            TranscodeFailure: out of memory while decoding
        """
        try:
            with Image.open(source_path) as opened:
                source_format = opened.format
                if source_format not in SUPPORTED_SOURCE_FORMATS:
                    raise UnsupportedFormat(f"Unsupported image format: {source_format}")
                opened.load()
                image = ImageOps.exif_transpose(opened)
        except UnidentifiedImageError as e:
            raise UnsupportedFormat(f"Cannot identify image file: {source_path.name}") from e
        except Image.DecompressionBombError as e:
            raise UnsupportedFormat(str(e)) from e
        except MemoryError as e:
            raise TranscodeFailure(f"Out of memory decoding {source_path.name}") from e
        except (OSError, SyntaxError, ValueError) as e:
            raise CorruptSource(f"Cannot decode {source_path.name}: {e}") from e
        return image, source_format

    @staticmethod
    def _render(image: Image.Image, spec: VariantSpec, out_path: Path) -> None:
        if image.size != (spec.width, spec.height):
            image = image.resize((spec.width, spec.height), Image.Resampling.LANCZOS)

        try:
            if spec.format == "jpeg":
                if image.mode == "RGBA":
                    image = flatten_onto_white(image)
                image.save(out_path, "JPEG", quality=spec.quality, optimize=True, progressive=True)
            elif spec.format == "png":
                image.save(out_path, "PNG", optimize=True)
            elif spec.format == "webp":
                image.save(out_path, "WEBP", quality=spec.quality, method=4)
            else:
                raise UnsupportedFormat(f"No encoder for {spec.format}")
        except MemoryError as e:
            raise TranscodeFailure(f"Out of memory encoding {spec.type.value}") from e
        except OSError as e:
            # Encoder or disk failure on a source that already decoded
            raise TranscodeFailure(f"Failed to write {spec.type.value}: {e}") from e
