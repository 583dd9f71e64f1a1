"""Tests for field rendering and certificate composition."""

from __future__ import annotations

import io
from pathlib import Path

import pytest
from PIL import Image

from cert_errors import TemplateDecodeError
from certificate_overlay import (
    anchor_x,
    composite,
    decode_template,
    em_box_ascent,
    fit_font_size,
    render_field,
    shrink_floor,
)
from conftest import BOX_FAMILY, build_box_font
from field_mapping import FieldMapping
from font_resolver import FontCache, FontSource, RegisteredFont


def _field(**overrides) -> FieldMapping:
    values = {"id": "f1", "column": "Name", "x": 20, "y": 20, "fontFamily": BOX_FAMILY, "fontSize": 28}
    values.update(overrides)
    return FieldMapping.model_validate(values)


def _white(size=(400, 200)) -> Image.Image:
    return Image.new("RGBA", size, (255, 255, 255, 255))


def _is_dark(pixel) -> bool:
    return pixel[0] < 100 and pixel[1] < 100 and pixel[2] < 100


def test_decode_template_returns_rgba(template_path: Path) -> None:
    image = decode_template(template_path.read_bytes())

    assert image.mode == "RGBA"
    assert image.size == (400, 200)


@pytest.mark.parametrize("data", [b"", b"not an image", b"\x89PNG\r\n\x1a\n" + b"\x00" * 20])
def test_decode_template_rejects_bad_bytes(data: bytes) -> None:
    with pytest.raises(TemplateDecodeError):
        decode_template(data)


def test_shrink_floor() -> None:
    assert shrink_floor(28) == 11
    assert shrink_floor(10) == 8
    assert shrink_floor(100) == 40


def test_fit_font_size_unbounded_keeps_size(font_cache: FontCache) -> None:
    assert fit_font_size(font_cache, BOX_FAMILY, "A very long line of text", 28, 0) == 28


def test_fit_font_size_keeps_size_when_text_fits(font_cache: FontCache) -> None:
    assert fit_font_size(font_cache, BOX_FAMILY, "Al", 28, 300) == 28


def test_fit_font_size_is_monotonic_in_text_length(font_cache: FontCache) -> None:
    sizes = [fit_font_size(font_cache, BOX_FAMILY, "W" * n, 40, 150) for n in range(1, 12)]

    assert sizes == sorted(sizes, reverse=True)
    assert sizes[0] == 40
    assert sizes[-1] < 40


def test_fit_font_size_stops_at_floor(font_cache: FontCache) -> None:
    size = fit_font_size(font_cache, BOX_FAMILY, "X" * 200, 28, 100)

    assert size == shrink_floor(28)


def test_fitted_text_fits_the_box(font_cache: FontCache) -> None:
    text = "Bartholomew"
    size = fit_font_size(font_cache, BOX_FAMILY, text, 28, 100)

    assert 12 <= size < 28
    assert font_cache.load_font(BOX_FAMILY, size).getlength(text) <= 100


def test_anchor_x_follows_alignment() -> None:
    assert anchor_x(_field(align="left", maxWidth=200)) == 20
    assert anchor_x(_field(align="center", maxWidth=200)) == 120
    assert anchor_x(_field(align="right", maxWidth=200)) == 220
    assert anchor_x(_field(align="center", maxWidth=0)) == 20
    assert anchor_x(_field(align="right", maxWidth=0)) == 20


def test_render_field_blank_text_is_noop(font_cache: FontCache) -> None:
    canvas = _white()
    before = canvas.tobytes()

    assert render_field(canvas, "   ", _field(), BOX_FAMILY, font_cache) is None
    assert canvas.tobytes() == before


def test_render_field_draws_below_field_y(font_cache: FontCache) -> None:
    canvas = _white()

    size = render_field(canvas, "A", _field(), BOX_FAMILY, font_cache)

    assert size == 28
    # Box glyph spans 0.05-0.55 em horizontally and 0.1-0.8 em below the em-box top.
    assert _is_dark(canvas.getpixel((28, 32)))
    assert not _is_dark(canvas.getpixel((28, 15)))
    assert not _is_dark(canvas.getpixel((60, 32)))


def test_field_y_is_em_box_top_whatever_the_line_metrics(tmp_path: Path, font_cache: FontCache) -> None:
    tall = build_box_font(tmp_path / "TallBox.ttf", family="Tall Box", ascent=1200, descent=300)
    font_cache.register(RegisteredFont(family="Tall Box", source=FontSource.CUSTOM, path=str(tall)))
    field = _field(y=60, fontSize=30)

    assert em_box_ascent(font_cache.load_font("Tall Box", 30), 30) == pytest.approx(24, abs=0.5)

    tall_canvas, box_canvas = _white(), _white()
    render_field(tall_canvas, "A", field, "Tall Box", font_cache)
    render_field(box_canvas, "A", field, BOX_FAMILY, font_cache)

    # Box glyph is 0.7 em tall on the baseline, 24 px under y=60.
    assert _is_dark(tall_canvas.getpixel((28, 68)))
    assert not _is_dark(tall_canvas.getpixel((28, 90)))
    dark_rows = [[y for y in range(200) if _is_dark(c.getpixel((28, y)))] for c in (tall_canvas, box_canvas)]
    assert dark_rows[0] == dark_rows[1]


def test_render_field_center_and_right_alignment(font_cache: FontCache) -> None:
    centered = _white()
    render_field(centered, "A", _field(x=0, fontSize=20, align="center", maxWidth=200), BOX_FAMILY, font_cache)
    assert _is_dark(centered.getpixel((100, 30)))
    assert not _is_dark(centered.getpixel((5, 30)))

    right = _white()
    render_field(right, "A", _field(x=0, fontSize=20, align="right", maxWidth=200), BOX_FAMILY, font_cache)
    assert _is_dark(right.getpixel((194, 30)))
    assert not _is_dark(right.getpixel((100, 30)))


def test_render_field_uses_field_color(font_cache: FontCache) -> None:
    canvas = _white()

    render_field(canvas, "A", _field(color="#ff0000"), BOX_FAMILY, font_cache)

    assert canvas.getpixel((28, 32))[:3] == (255, 0, 0)


def test_render_field_blends_translucent_color(font_cache: FontCache) -> None:
    canvas = _white()

    render_field(canvas, "A", _field(color="#00000080"), BOX_FAMILY, font_cache)

    r, g, b, a = canvas.getpixel((28, 32))
    assert 100 < r < 160 and a == 255


def test_composite_keeps_template_size_and_layers_fields(template_path: Path, font_cache: FontCache) -> None:
    template = decode_template(template_path.read_bytes())
    fields = [
        _field(id="name", column="Name", color="#000000"),
        _field(id="over", column="Code", color="#0000ff"),
    ]

    png = composite(template, fields, {"Name": "A", "Code": "B"}, {BOX_FAMILY: BOX_FAMILY}, font_cache)
    image = Image.open(io.BytesIO(png))

    assert image.format == "PNG"
    assert image.size == template.size
    # The later field draws over the earlier one at the same anchor.
    assert image.convert("RGB").getpixel((28, 32)) == (0, 0, 255)


def test_composite_with_missing_values_equals_template(template_path: Path, font_cache: FontCache) -> None:
    template = decode_template(template_path.read_bytes())

    png = composite(template, [_field()], {"Name": ""}, {}, font_cache)

    assert Image.open(io.BytesIO(png)).convert("RGBA").tobytes() == template.tobytes()
