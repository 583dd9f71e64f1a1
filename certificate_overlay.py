"""
Raster overlay of row values onto a certificate template.

Fields are drawn in list order on a copy of the template. ``field.y`` is the
top of the em box, so faces with tall or short line metrics line up alike.
Text wider than ``max_width`` shrinks one pixel at a time down to a floor
instead of wrapping.
"""

from __future__ import annotations

import io
from typing import Mapping, Optional, Sequence

from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError

from cert_errors import TemplateDecodeError
from field_mapping import FieldMapping, Row, parse_color
from font_resolver import FontCache
from log_setup import get_logger

logger = get_logger(__name__)

MIN_FONT_SIZE = 8
SHRINK_FLOOR_RATIO = 0.4

# Baseline anchors; the baseline sits one em-box ascent below field.y.
_ANCHORS = {"left": "ls", "center": "ms", "right": "rs"}


def decode_template(data: bytes) -> Image.Image:
    """Decode template bytes into an RGBA image, fully loaded."""
    if not data:
        raise TemplateDecodeError("Template is empty")
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            template = img.convert("RGBA")
    except (UnidentifiedImageError, Image.DecompressionBombError) as exc:
        raise TemplateDecodeError("Template is not a supported image format", cause=exc) from exc
    except (OSError, SyntaxError, ValueError) as exc:
        raise TemplateDecodeError("Template image is corrupt or truncated", cause=exc) from exc
    logger.debug(f"Decoded template: {template.width}x{template.height}")
    return template


def shrink_floor(font_size: int) -> int:
    return max(MIN_FONT_SIZE, round(font_size * SHRINK_FLOOR_RATIO))


def fit_font_size(fonts: FontCache, family: str, text: str, font_size: int, max_width: float) -> int:
    """Largest size not above ``font_size`` at which ``text`` fits ``max_width``.

    Never goes below ``shrink_floor(font_size)``; at the floor the text may
    still overflow. ``max_width`` of 0 means unbounded.
    """
    size = font_size
    if max_width <= 0:
        return size
    floor = shrink_floor(font_size)
    while size > floor and fonts.load_font(family, size).getlength(text) > max_width:
        size -= 1
    return size


def em_box_ascent(font: ImageFont.FreeTypeFont, size: int) -> float:
    """Distance from the em-box top to the baseline, in pixels.

    The font's ascent and descent are scaled to span exactly one em, so
    ``field.y`` is the em-box top whatever the face's line metrics are.
    """
    ascent, descent = font.getmetrics()
    if ascent + descent <= 0:
        return float(size)
    return size * ascent / (ascent + descent)


def anchor_x(field: FieldMapping) -> float:
    if field.max_width <= 0 or field.align == "left":
        return field.x
    if field.align == "center":
        return field.x + field.max_width / 2
    return field.x + field.max_width


def render_field(
    canvas: Image.Image,
    text: str,
    field: FieldMapping,
    resolved_family: str,
    fonts: FontCache,
) -> Optional[int]:
    """Draw one field onto ``canvas``. Returns the size used, or None if blank."""
    text = (text or "").strip()
    if not text:
        return None

    size = fit_font_size(fonts, resolved_family, text, field.font_size, field.max_width)
    font = fonts.load_font(resolved_family, size)
    fill = parse_color(field.color)
    position = (anchor_x(field), field.y + em_box_ascent(font, size))
    anchor = _ANCHORS[field.align]

    if fill[3] == 255:
        ImageDraw.Draw(canvas).text(position, text, font=font, fill=fill, anchor=anchor)
    else:
        # Translucent ink has to be blended, not written over the template.
        layer = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
        ImageDraw.Draw(layer).text(position, text, font=font, fill=fill, anchor=anchor)
        canvas.alpha_composite(layer)
    return size


def composite(
    template: Image.Image,
    fields: Sequence[FieldMapping],
    row: Row,
    resolved_families: Mapping[str, str],
    fonts: FontCache,
) -> bytes:
    """Render one certificate and return it as PNG bytes.

    ``template`` is only read; each call works on its own canvas.
    """
    canvas = Image.new("RGBA", template.size, (0, 0, 0, 0))
    canvas.alpha_composite(template if template.mode == "RGBA" else template.convert("RGBA"))

    for field in fields:
        family = resolved_families.get(field.font_family, field.font_family)
        render_field(canvas, row.get(field.column, ""), field, family, fonts)

    buffer = io.BytesIO()
    canvas.save(buffer, format="PNG")
    return buffer.getvalue()
