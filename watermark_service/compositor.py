"""
Filename label compositor.

`composite` is the single image entry point shared by the HTTP API, the
execution channel and the CLI:
bytes in -> decode + orientation -> geometry -> label -> JPEG bytes out.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from io import BytesIO
import logging
import math
import posixpath
import struct
from pathlib import Path
from typing import Optional, Tuple
import uuid

from PIL import Image, ImageDraw, ImageFont, ImageOps, UnidentifiedImageError

from . import config
from .errors import DecodeError, InvalidDimensionsError

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = ("JPEG", "PNG", "GIF")

# Label geometry. Box height and font size are given for a 4000px wide box.
BOX_WIDTH_PERCENT = 95
BOX_MIN_WIDTH = 2000
BOX_MAX_WIDTH = 4000
REFERENCE_BOX_HEIGHT = 750
REFERENCE_FONT_SIZE = 360
ANCHOR_RATIO = 0.7
BOTTOM_MARGIN_RATIO = 0.1
CORNER_RADIUS_RATIO = 0.1

LABEL_FILL = (255, 255, 255, round(0.85 * 255))
TEXT_FILL = (0, 0, 0, 255)
JPEG_QUALITY = 85

_FONT_CANDIDATES = (
    "DejaVuSans-Bold.ttf",
    "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
    "/usr/share/fonts/opentype/noto/NotoSansCJK-Bold.ttc",
    "/usr/share/fonts/noto-cjk/NotoSansCJK-Bold.ttc",
    "/System/Library/Fonts/PingFang.ttc",
    "/Library/Fonts/Arial Bold.ttf",
    "arialbd.ttf",
    "msyhbd.ttc",
)


@dataclass(frozen=True)
class WatermarkGeometry:
    """Label placement for an image of a given size. Integer pixels throughout."""

    left: int
    top: int
    width: int
    height: int
    font_size: int
    radius: int

    @property
    def box(self) -> Tuple[int, int, int, int]:
        return (self.left, self.top, self.left + self.width, self.top + self.height)


def compute_geometry(width: int, height: int) -> WatermarkGeometry:
    """
    Size and place the label for a `width` x `height` image.

    The nominal box is 95% of the image width clamped to [2000, 4000] px. Small
    images cannot hold that, so the box (and its font) is scaled down
    uniformly until it fits horizontally and leaves the bottom margin.
    """
    if width <= 0 or height <= 0:
        raise InvalidDimensionsError(f"Invalid image dimensions: {width}x{height}")

    nominal_width = min(max(width * BOX_WIDTH_PERCENT / 100, BOX_MIN_WIDTH), BOX_MAX_WIDTH)
    nominal_height = nominal_width * REFERENCE_BOX_HEIGHT / BOX_MAX_WIDTH
    scale = min(
        1.0,
        width / nominal_width,
        height * (1 - BOTTOM_MARGIN_RATIO) / nominal_height,
    )

    box_width = max(1, math.floor(nominal_width * scale))
    box_height = max(1, min(height, math.floor(nominal_height * scale)))
    font_size = max(1, math.floor(nominal_width * scale * REFERENCE_FONT_SIZE / BOX_MAX_WIDTH))

    margin_bottom = math.floor(height * BOTTOM_MARGIN_RATIO)
    top = max(0, min(math.floor(height * ANCHOR_RATIO), height - box_height - margin_bottom))
    left = max(0, (width - box_width) // 2)

    return WatermarkGeometry(
        left=left,
        top=top,
        width=box_width,
        height=box_height,
        font_size=font_size,
        radius=math.floor(box_height * CORNER_RADIUS_RATIO),
    )


def label_text(filename: str) -> str:
    """Base name of `filename` without its final extension."""
    base = posixpath.basename(filename.replace("\\", "/"))
    stem, _ = posixpath.splitext(base)
    return stem or base


@lru_cache(maxsize=32)
def _load_font(size: int, font_path: Optional[Path]) -> ImageFont.ImageFont:
    """Return the first bold font that loads, falling back to Pillow's default."""
    candidates = ((str(font_path),) if font_path else ()) + _FONT_CANDIDATES
    for candidate in candidates:
        try:
            return ImageFont.truetype(candidate, size)
        except OSError:
            continue
    logger.warning("compositor: no bold TrueType font found, using Pillow default")
    return ImageFont.load_default(size=size)


def _decode(image_bytes: bytes) -> Image.Image:
    """Decode, fix orientation and guard against bounds drifting during decode."""
    try:
        image = Image.open(BytesIO(image_bytes), formats=SUPPORTED_FORMATS)
        declared = image.size
        orientation = image.getexif().get(0x0112)
        if orientation in (5, 6, 7, 8):
            declared = (declared[1], declared[0])
        image = ImageOps.exif_transpose(image)
        image.load()
    except (
        UnidentifiedImageError,
        OSError,
        SyntaxError,
        ValueError,
        EOFError,
        struct.error,
        Image.DecompressionBombError,
    ) as exc:
        # Corrupt chunks surface from Pillow as SyntaxError or ValueError.
        raise DecodeError("Invalid image data") from exc

    if image.width <= 0 or image.height <= 0:
        raise InvalidDimensionsError("Invalid image dimensions")

    if image.size != declared:
        logger.debug("compositor: decoded size %s differs from header %s", image.size, declared)
        image.thumbnail(declared)
    return image.convert("RGBA")


def render_label(text: str, geometry: WatermarkGeometry) -> Image.Image:
    """Draw the rounded label with centered text on a transparent layer."""
    settings = config.get_settings()
    layer = Image.new("RGBA", (geometry.width, geometry.height), (0, 0, 0, 0))
    draw = ImageDraw.Draw(layer)
    draw.rounded_rectangle(
        [0, 0, geometry.width - 1, geometry.height - 1],
        radius=geometry.radius,
        fill=LABEL_FILL,
    )

    font = _load_font(geometry.font_size, settings.watermark_font_path)
    bbox = draw.textbbox((0, 0), text, font=font)
    x = (geometry.width - (bbox[2] - bbox[0])) / 2 - bbox[0]
    y = (geometry.height - (bbox[3] - bbox[1])) / 2 - bbox[1]
    draw.text((x, y), text, font=font, fill=TEXT_FILL)
    return layer


def _maybe_dump_debug(label: Image.Image, debug_dir: Path) -> None:
    """Optionally write the rendered label when DEBUG is enabled."""
    try:
        debug_dir.mkdir(parents=True, exist_ok=True)
        path = debug_dir / f"label_{uuid.uuid4().hex}.png"
        label.save(path, format="PNG")
        logger.debug("compositor: wrote label to %s", path)
    except OSError as exc:
        logger.warning("compositor: failed to write debug label: %s", exc)


def composite(image_bytes: bytes, filename: str) -> bytes:
    """
    Stamp the file's base name onto the image and return JPEG bytes.

    The output keeps the decoded (orientation-corrected) width and height.

    Raises:
        DecodeError: the bytes are not a JPEG, PNG or GIF image.
        InvalidDimensionsError: the image has no extent.
    """
    settings = config.get_settings()
    base = _decode(image_bytes)
    geometry = compute_geometry(base.width, base.height)

    label = render_label(label_text(filename), geometry)
    if settings.debug:
        _maybe_dump_debug(label, Path(settings.debug_output_dir))
    base.alpha_composite(label, dest=(geometry.left, geometry.top))

    flattened = Image.new("RGB", base.size, (255, 255, 255))
    flattened.paste(base, mask=base.getchannel("A"))

    buf = BytesIO()
    flattened.save(buf, format="JPEG", quality=JPEG_QUALITY, progressive=True)
    logger.debug(
        "compositor: %s %dx%d label=%s font=%d",
        filename,
        base.width,
        base.height,
        geometry.box,
        geometry.font_size,
    )
    return buf.getvalue()
