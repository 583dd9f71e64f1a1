from __future__ import annotations

import sys
from pathlib import Path

import httpx
import pytest
from fontTools.fontBuilder import FontBuilder
from fontTools.pens.ttGlyphPen import TTGlyphPen
from PIL import Image

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from font_resolver import FontCache, FontSource, RegisteredFont

BOX_FAMILY = "Test Box"
# Every glyph advances 600 units on a 1000-unit em, so width is 0.6 * size per char.
BOX_ADVANCE = 600
BOX_UNITS_PER_EM = 1000


def _box_glyph():
    pen = TTGlyphPen(None)
    pen.moveTo((50, 0))
    pen.lineTo((50, 700))
    pen.lineTo((550, 700))
    pen.lineTo((550, 0))
    pen.closePath()
    return pen.glyph()


def _empty_glyph():
    return TTGlyphPen(None).glyph()


def build_box_font(path: Path, family: str = BOX_FAMILY, ascent: int = 800, descent: int = 200) -> Path:
    """Write a TrueType font whose printable ASCII glyphs are solid boxes.

    ``ascent``/``descent`` set the line metrics only; glyph outlines stay the same.
    """
    codes = range(0x21, 0x7F)
    glyph_order = [".notdef", "space"] + [f"box{code:02x}" for code in codes]
    cmap = {0x20: "space"}
    cmap.update({code: f"box{code:02x}" for code in codes})

    glyphs = {name: _box_glyph() for name in glyph_order}
    glyphs["space"] = _empty_glyph()
    metrics = {name: (BOX_ADVANCE, 50) for name in glyph_order}
    metrics["space"] = (BOX_ADVANCE, 0)

    builder = FontBuilder(BOX_UNITS_PER_EM, isTTF=True)
    builder.setupGlyphOrder(glyph_order)
    builder.setupCharacterMap(cmap)
    builder.setupGlyf(glyphs)
    builder.setupHorizontalMetrics(metrics)
    builder.setupHorizontalHeader(ascent=ascent, descent=-descent)
    builder.setupNameTable({"familyName": family, "styleName": "Regular"})
    builder.setupOS2(sTypoAscender=ascent, sTypoDescender=-descent, usWinAscent=ascent, usWinDescent=descent)
    builder.setupPost()
    path.parent.mkdir(parents=True, exist_ok=True)
    builder.save(str(path))
    return path


@pytest.fixture(scope="session")
def box_font_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return build_box_font(tmp_path_factory.mktemp("fonts") / "TestBox.ttf")


@pytest.fixture(scope="session")
def box_font_bytes(box_font_path: Path) -> bytes:
    return box_font_path.read_bytes()


@pytest.fixture
def font_cache(box_font_path: Path) -> FontCache:
    cache = FontCache()
    cache.register(RegisteredFont(family=BOX_FAMILY, source=FontSource.CUSTOM, path=str(box_font_path)))
    return cache


@pytest.fixture
def template_path(tmp_path: Path) -> Path:
    path = tmp_path / "template.png"
    Image.new("RGB", (400, 200), "white").save(path)
    return path


def offline_transport() -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("network disabled in tests", request=request)

    return httpx.MockTransport(handler)


@pytest.fixture
def offline() -> httpx.MockTransport:
    return offline_transport()
