"""Resize and re-encode images with Pillow."""

from __future__ import annotations

import asyncio
from io import BytesIO
from typing import Optional

import structlog
from opentelemetry import trace
from PIL import Image, ImageOps, UnidentifiedImageError

from ..common.errors import TransformError
from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.schemas import ImageOptions


LOGGER = structlog.get_logger("imagecache.transform")
TRACER = trace.get_tracer("imagecache.transform")

RESAMPLE = Image.Resampling.BICUBIC
TRANSPARENT = (0, 0, 0, 0)
# Gravity is fixed; cache labels do not include the requested position.
CENTER = (0.5, 0.5)

PIL_FORMATS = {"jpeg": "JPEG", "png": "PNG", "webp": "WEBP"}
# multi-picture JPEGs from cameras decode as MPO but should re-encode as JPEG
SOURCE_FORMAT_ALIASES = {"MPO": "JPEG"}

TRANSFORM_COUNTER = GLOBAL_REGISTRY.register(
    Counter("imagecache_transforms_total", "Images resized or re-encoded")
)


def _scaled(size: tuple[int, int], ratio: float) -> tuple[int, int]:
    return max(1, round(size[0] * ratio)), max(1, round(size[1] * ratio))


def target_size(source: tuple[int, int], width: Optional[int], height: Optional[int]) -> tuple[int, int]:
    """Fill in a missing dimension from the source aspect ratio."""
    source_width, source_height = source
    if width and height:
        return width, height
    if width:
        return width, max(1, round(source_height * width / source_width))
    if height:
        return max(1, round(source_width * height / source_height)), height
    return source


def resize(image: Image.Image, width: Optional[int], height: Optional[int], fit: str) -> Image.Image:
    size = target_size(image.size, width, height)
    if not (width and height):
        # one constrained side scales proportionally whatever the fit
        return image.resize(size, RESAMPLE)
    if fit == "cover":
        return ImageOps.fit(image, size, method=RESAMPLE, centering=CENTER)
    if fit == "contain":
        if image.mode != "RGBA":
            image = image.convert("RGBA")
        return ImageOps.pad(image, size, method=RESAMPLE, color=TRANSPARENT, centering=CENTER)
    if fit == "fill":
        return image.resize(size, RESAMPLE)
    if fit == "inside":
        return ImageOps.contain(image, size, method=RESAMPLE)
    if fit == "outside":
        ratio = max(size[0] / image.width, size[1] / image.height)
        return image.resize(_scaled(image.size, ratio), RESAMPLE)
    raise TransformError(f"Unsupported fit {fit!r}")


def _prepare_for(image: Image.Image, pil_format: str) -> Image.Image:
    if pil_format == "PNG" and image.mode == "CMYK":
        return image.convert("RGB")
    if pil_format == "JPEG" and image.mode not in ("RGB", "L", "CMYK"):
        return image.convert("RGB")
    if pil_format == "WEBP" and image.mode not in ("RGB", "RGBA"):
        return image.convert("RGBA" if "A" in image.getbands() or image.mode == "P" else "RGB")
    return image


class ImageTransformer:
    """Applies :class:`ImageOptions` to encoded image bytes."""

    async def transform(self, data: bytes, options: ImageOptions) -> bytes:
        with TRACER.start_as_current_span(
            "transform.image",
            attributes={"imagecache.format": options.format, "imagecache.fit": options.fit},
        ):
            result = await asyncio.to_thread(self.transform_sync, data, options)
        TRANSFORM_COUNTER.inc()
        return result

    def transform_sync(self, data: bytes, options: ImageOptions) -> bytes:
        resizing = bool(options.width or options.height)
        if not resizing and options.format == "raw":
            return data

        try:
            with Image.open(BytesIO(data)) as source:
                source.load()
                source_format = SOURCE_FORMAT_ALIASES.get(source.format, source.format or "PNG")
                image = resize(source, options.width, options.height, options.fit) if resizing else source
                pil_format = PIL_FORMATS.get(options.format, source_format)
                image = _prepare_for(image, pil_format)
                buffer = BytesIO()
                image.save(buffer, pil_format)
        except TransformError:
            raise
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
            LOGGER.warning("image_transform_failed", error=str(exc), format=options.format)
            raise TransformError(f"Image transform failed: {exc}") from exc
        return buffer.getvalue()
