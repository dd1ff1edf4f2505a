"""Image preprocessing for the thermal print head.

Turns an arbitrary downloaded raster (photo, sticker) into a 1-bit bitmap:

    decode -> resize to max_width (Lanczos) -> flatten alpha onto white
    -> contrast, then brightness -> Floyd-Steinberg dither -> PNG

The print head only knows "burn" and "don't burn", so every pixel of the
result is exactly black or white. Transparent regions must be flattened onto
white first, otherwise they come out as solid black.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from errors import ImageDecodeError, ImageEncodeError

logger = logging.getLogger(__name__)

MAX = 255


@dataclass(frozen=True)
class ImageOptions:
    """Tuning for :func:`process`.

    Attributes:
        contrast: additive contrast adjustment, 0 leaves the image unchanged
        brightness: added to every pixel, 0 leaves the image unchanged
        max_width: output width in pixels; thermal rows are byte-packed,
            so this should be a multiple of 8
        base_path: directory for transient downloaded originals
    """

    contrast: float = 0.0
    brightness: int = 0
    max_width: int = 384
    base_path: Path = Path("tmp")

    def __post_init__(self) -> None:
        if self.max_width <= 0:
            raise ValueError(f"max_width must be positive, got {self.max_width}")
        if self.max_width % 8:
            logger.warning(
                "max_width=%d is not a multiple of 8; rows will be padded by the printer",
                self.max_width,
            )


@dataclass(frozen=True)
class Bitmap:
    """PNG-encoded 1-bit raster ready for the ESC/POS encoder."""

    data: bytes
    width: int
    height: int

    def to_image(self) -> Image.Image:
        img = Image.open(io.BytesIO(self.data))
        img.load()
        return img


def _clamp(value: float) -> int:
    return int(round(min(max(value, 0.0), float(MAX))))


def decode(source: bytes) -> Image.Image:
    """Decode bytes of any format Pillow can guess."""
    if not source:
        raise ImageDecodeError("Image is empty")
    try:
        img = Image.open(io.BytesIO(source))
        img.load()
    except UnidentifiedImageError as e:
        raise ImageDecodeError("Unsupported or unrecognized image format") from e
    except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as e:
        raise ImageDecodeError(f"Corrupt image: {e}") from e
    return img


def resize_to_width(img: Image.Image, width: int) -> Image.Image:
    """Scale proportionally to exactly ``width``; smaller images are upscaled."""
    # RGBA first: palette and 1-bit modes would silently fall back to NEAREST
    rgba = img.convert("RGBA")
    height = max(1, round(rgba.height * width / rgba.width))
    return rgba.resize((width, height), Image.Resampling.LANCZOS)


def flatten_alpha(img: Image.Image) -> Image.Image:
    """Collapse luma+alpha into opaque luma: ``MAX - (MAX - l) * a / MAX``.

    Opaque pixels keep their luminance, fully transparent pixels become white.
    """
    luma, alpha = img.convert("LA").split()
    flat = Image.new("L", img.size, MAX)
    # paste with a mask computes l * a/MAX + MAX * (1 - a/MAX)
    flat.paste(luma, mask=alpha)
    return flat


def adjust_contrast(img: Image.Image, contrast: float) -> Image.Image:
    if contrast == 0:
        return img
    factor = ((100.0 + contrast) / 100.0) ** 2
    table = [_clamp(((v / MAX - 0.5) * factor + 0.5) * MAX) for v in range(MAX + 1)]
    return img.point(table)


def adjust_brightness(img: Image.Image, brightness: int) -> Image.Image:
    if brightness == 0:
        return img
    return img.point([_clamp(v + brightness) for v in range(MAX + 1)])


def dither(img: Image.Image) -> Image.Image:
    """Floyd-Steinberg error diffusion to a strict black/white palette."""
    return img.convert("L").convert("1", dither=Image.Dither.FLOYDSTEINBERG)


def encode(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    try:
        img.save(buf, format="PNG")
    except (OSError, ValueError) as e:
        raise ImageEncodeError(f"Could not encode bitmap: {e}") from e
    return buf.getvalue()


def process(source: bytes, options: ImageOptions, tag: str = "-") -> Bitmap:
    """Run the whole pipeline on raw image bytes.

    Raises:
        ImageDecodeError: source is empty, unreadable or corrupt
        ImageEncodeError: the result could not be serialized
    """
    logger.info("[%s] Reading image (%d bytes)", tag, len(source))
    img = decode(source)

    logger.info("[%s] Resizing %dx%d to width %d", tag, img.width, img.height, options.max_width)
    img = resize_to_width(img, options.max_width)

    img = flatten_alpha(img)
    img = adjust_contrast(img, options.contrast)
    img = adjust_brightness(img, options.brightness)

    logger.info("[%s] Applying dither", tag)
    img = dither(img)

    data = encode(img)
    logger.debug("[%s] Bitmap %dx%d, %d bytes", tag, img.width, img.height, len(data))
    return Bitmap(data=data, width=img.width, height=img.height)
