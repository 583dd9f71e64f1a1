"""
Field mappings and row data consumed by the renderer.

A field mapping places one data column on the template; a row maps column
names to already-trimmed string values.
"""

from __future__ import annotations

import csv
import io
import json
import re
from pathlib import Path
from typing import Literal

from PIL import ImageColor
from pydantic import BaseModel, ConfigDict, Field

from log_setup import get_logger

logger = get_logger(__name__)

Row = dict[str, str]

_FALLBACK_COLOR = (0, 0, 0, 255)

# CSS functional notation with a trailing alpha: a 0-1 number or a percentage.
_ALPHA_COLOR = re.compile(r"^(rgb|hsl)a\((.+),\s*(\d*\.?\d+)(%?)\s*\)$", re.IGNORECASE)


class FieldMapping(BaseModel):
    """One placed text element, in template-pixel space."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    column: str
    x: float = Field(ge=0)
    y: float = Field(ge=0)
    font_family: str = Field(default="Arial", alias="fontFamily")
    font_size: int = Field(default=28, ge=8, alias="fontSize")
    color: str = "#000000"
    align: Literal["left", "center", "right"] = "left"
    max_width: float = Field(default=0, ge=0, alias="maxWidth")


def _parse_alpha_color(value: str) -> tuple[int, int, int, int]:
    match = _ALPHA_COLOR.match(value)
    if match is None:
        return ImageColor.getcolor(value, "RGBA")
    function, channels, alpha, percent = match.groups()
    red, green, blue = ImageColor.getrgb(f"{function.lower()}({channels})")[:3]
    fraction = float(alpha) / 100 if percent else float(alpha)
    return red, green, blue, round(min(max(fraction, 0.0), 1.0) * 255)


def parse_color(value: str) -> tuple[int, int, int, int]:
    """Parse a CSS color into RGBA, falling back to opaque black.

    ``rgba()``/``hsla()`` take the CSS alpha (``0.5`` or ``50%``), not 0-255.
    """
    if not isinstance(value, str) or not value.strip():
        return _FALLBACK_COLOR
    try:
        return _parse_alpha_color(value.strip())
    except ValueError:
        logger.warning(f"Unrecognized color {value!r}, using black")
        return _FALLBACK_COLOR


def parse_fields(payload: object) -> list[FieldMapping]:
    """Accept either a bare list of fields or ``{"fields": [...]}``."""
    if isinstance(payload, dict):
        payload = payload.get("fields", [])
    if not isinstance(payload, list):
        raise ValueError("Field mappings must be a list or an object with a 'fields' list.")
    return [FieldMapping.model_validate(item) for item in payload]


def load_fields(path: Path) -> list[FieldMapping]:
    with path.open("r", encoding="utf-8") as f:
        return parse_fields(json.load(f))


def parse_csv_rows(text: str) -> tuple[list[str], list[Row]]:
    """Parse CSV text into ordered headers and trimmed string rows."""
    reader = csv.reader(io.StringIO(text))
    records = [record for record in reader if any(cell.strip() for cell in record)]
    if len(records) < 2:
        raise ValueError("CSV file must have at least a header row and one data row.")

    headers = [h.strip() for h in records[0]]
    rows: list[Row] = []
    for record in records[1:]:
        rows.append({
            header: (record[i].strip() if i < len(record) else "")
            for i, header in enumerate(headers)
        })
    return headers, rows


def load_csv_rows(path: Path) -> tuple[list[str], list[Row]]:
    return parse_csv_rows(path.read_text(encoding="utf-8-sig"))
