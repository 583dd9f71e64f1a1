"""
Font resolution for certificate rendering.

Maps a requested family name to one Pillow can actually render. Resolution
walks a fixed fallback chain and never fails:

1. custom font uploaded to the fonts directory (exact stem match)
2. curated web-font catalog, downloaded once into the font cache
3. fonts Pillow can load natively (system files, built-in Aileron)
4. substitution of common desktop/generic aliases with a catalog font
5. the universal catalog fallback (Open Sans)
6. Pillow's built-in face, which is always present

Results live in an explicit ``FontCache`` so a process can share one cache
across batches while tests start from a clean one.
"""

from __future__ import annotations

import asyncio
import io
import os
import re
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import httpx
from PIL import ImageFont

import cert_config
from cert_errors import FontDownloadError
from log_setup import get_logger

logger = get_logger(__name__)

# TTF links from fonts.google.com
GOOGLE_FONT_URLS: Dict[str, str] = {
    "Roboto": "https://fonts.gstatic.com/s/roboto/v47/KFOMCnqEu92Fr1ME7kSn66aGLdTylUAMQXC89YmC2DPNWubEbGmT.ttf",
    "Open Sans": "https://fonts.gstatic.com/s/opensans/v40/memSYaGs126MiZpBA-UvWbX2vVnXBbObj2OVZyOOSr4dVJWUgsjZ0B4gaVc.ttf",
    "Lato": "https://fonts.gstatic.com/s/lato/v24/S6uyw4BMUTPHvxk.ttf",
    "Montserrat": "https://fonts.gstatic.com/s/montserrat/v29/JTUHjIg1_i6t8kCHKm4532VJOt5-QNFgpCtr6Hw5aXo.ttf",
    "Poppins": "https://fonts.gstatic.com/s/poppins/v21/pxiEyp8kv8JHgFVrFJA.ttf",
    "Playfair Display": "https://fonts.gstatic.com/s/playfairdisplay/v37/nuFvD-vYSZviVYUb_rj3ij__anPXJzDwcbmjWBN2PKdFvXDXbtM.ttf",
    "Dancing Script": "https://fonts.gstatic.com/s/dancingscript/v25/If2cXTr6YS-zF4S-kcSWSVi_sxjsohD9F50Ruu7BMSo3Sup6hNX6plRP.ttf",
    "Great Vibes": "https://fonts.gstatic.com/s/greatvibes/v19/RWmMoKWR9v4ksMfaWd_JN-XCg6UKDXlq.ttf",
    "Pacifico": "https://fonts.gstatic.com/s/pacifico/v22/FwZY7-Qmy14u9lezJ-6H6MmBp0u-.ttf",
    "Oswald": "https://fonts.gstatic.com/s/oswald/v53/TK3_WkUHHAIjg75cFRf3bXL8LICs1_FvsUZiYA.ttf",
    "Raleway": "https://fonts.gstatic.com/s/raleway/v34/1Ptxg8zYS_SKggPN4iEgvnHyvveLxVvaorCIPrE.ttf",
    "Merriweather": "https://fonts.gstatic.com/s/merriweather/v30/u-440qyriQus4w_Ih0T3LyhZwEiGA_6A.ttf",
    "Nunito": "https://fonts.gstatic.com/s/nunito/v26/XRXI3I6Li01BKofiOc5wtlZ2di8HDLshdTQ3j77e.ttf",
    "Ubuntu": "https://fonts.gstatic.com/s/ubuntu/v20/4iCs6KVjbNBYlgo6eA.ttf",
}

# Desktop fonts that servers rarely have, mapped to a downloadable equivalent.
SYSTEM_FONT_FALLBACKS: Dict[str, str] = {
    "Arial": "Open Sans",
    "Arial Black": "Oswald",
    "Helvetica": "Open Sans",
    "sans-serif": "Open Sans",
    "Times New Roman": "Merriweather",
    "Times": "Merriweather",
    "Georgia": "Merriweather",
    "serif": "Merriweather",
    "Courier New": "Ubuntu",
    "Courier": "Ubuntu",
    "monospace": "Ubuntu",
    "Verdana": "Open Sans",
    "Tahoma": "Open Sans",
    "Impact": "Oswald",
    "Trebuchet MS": "Raleway",
    "Palatino": "Merriweather",
}

# Family -> file name Pillow can locate in the platform font directories.
NATIVE_FONT_FILES: Dict[str, str] = {
    "DejaVu Sans": "DejaVuSans.ttf",
    "DejaVu Serif": "DejaVuSerif.ttf",
    "DejaVu Sans Mono": "DejaVuSansMono.ttf",
    "Liberation Sans": "LiberationSans-Regular.ttf",
    "Liberation Serif": "LiberationSerif-Regular.ttf",
    "Liberation Mono": "LiberationMono-Regular.ttf",
    "FreeSans": "FreeSans.ttf",
    "FreeSerif": "FreeSerif.ttf",
    "FreeMono": "FreeMono.ttf",
}

# Pillow's embedded default face; loadable without any file on disk.
BUILTIN_FAMILY = "Aileron"
UNIVERSAL_FALLBACK = "Open Sans"


class FontSource(Enum):
    """Where a renderable font comes from."""
    CUSTOM = "custom"  # Uploaded by the user
    CATALOG = "google"  # Downloaded from the web-font catalog
    NATIVE = "system"  # Located by Pillow in the platform font directories
    BUILTIN = "builtin"  # Embedded in Pillow


@dataclass(frozen=True)
class RegisteredFont:
    """A family the renderer can load, with the file backing it."""
    family: str
    source: FontSource
    path: Optional[str] = None  # None only for the built-in face


def catalog_font_filename(family: str) -> str:
    safe_name = re.sub(r"[^a-zA-Z0-9]", "_", family)
    return f"google_{safe_name}.ttf"


class FontCache:
    """Process-lifetime record of resolved and registered fonts.

    ``resolved`` maps each requested family to the family actually used, so
    "Arial" is only resolved once even if many fields ask for it. Entries are
    never evicted except through ``forget`` when a custom font is replaced.
    """

    def __init__(self):
        self.resolved: Dict[str, str] = {}
        self._registered: Dict[str, RegisteredFont] = {}
        self._native: Optional[Dict[str, RegisteredFont]] = None
        self._native_lock = threading.Lock()

    def register(self, font: RegisteredFont) -> None:
        self._registered[font.family] = font
        logger.debug(f"Registered font: {font.family} ({font.source.value})")

    def is_registered(self, family: str) -> bool:
        return family in self._registered

    def forget(self, family: str) -> None:
        """Drop a family and every resolution that pointed at it or from it."""
        self._registered.pop(family, None)
        for requested, resolved in list(self.resolved.items()):
            if requested == family or resolved == family:
                del self.resolved[requested]

    def native_fonts(self) -> Dict[str, RegisteredFont]:
        """Fonts Pillow can load without registration, keyed by lowercase family."""
        with self._native_lock:
            if self._native is None:
                self._native = _scan_native_fonts()
            return self._native

    def is_native(self, family: str) -> bool:
        return family.lower() in self.native_fonts()

    def lookup(self, family: str) -> Optional[RegisteredFont]:
        font = self._registered.get(family)
        if font is not None:
            return font
        return self.native_fonts().get(family.lower())

    def load_font(self, family: str, size: int) -> ImageFont.FreeTypeFont:
        """Load ``family`` at ``size`` pixels.

        A fresh font object is returned on every call so concurrent renders
        never share FreeType state. Unknown families load the built-in face.
        """
        font = self.lookup(family)
        if font is None:
            logger.warning(f"Font '{family}' was never resolved, using {BUILTIN_FAMILY}")
            return ImageFont.load_default(size=size)
        if font.source is FontSource.BUILTIN:
            return ImageFont.load_default(size=size)
        return ImageFont.truetype(font.path, size)


def _scan_native_fonts() -> Dict[str, RegisteredFont]:
    native = {
        BUILTIN_FAMILY.lower(): RegisteredFont(family=BUILTIN_FAMILY, source=FontSource.BUILTIN)
    }
    for family, filename in NATIVE_FONT_FILES.items():
        try:
            ImageFont.truetype(filename, 12)
        except OSError:
            continue
        native[family.lower()] = RegisteredFont(family=family, source=FontSource.NATIVE, path=filename)
    logger.debug(f"Native fonts available: {sorted(f.family for f in native.values())}")
    return native


class FontResolver:
    """Resolves requested families through the fallback chain, caching results."""

    def __init__(
        self,
        cache: Optional[FontCache] = None,
        fonts_dir: Optional[Path] = None,
        cache_dir: Optional[Path] = None,
        catalog: Optional[Dict[str, str]] = None,
        aliases: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.cache = cache if cache is not None else FontCache()
        self.fonts_dir = Path(fonts_dir or cert_config.FONTS_DIR)
        self.cache_dir = Path(cache_dir or cert_config.FONT_CACHE_DIR)
        self.catalog = GOOGLE_FONT_URLS if catalog is None else catalog
        self.aliases = SYSTEM_FONT_FALLBACKS if aliases is None else aliases
        self.timeout = timeout or cert_config.DOWNLOAD_TIMEOUT
        self._transport = transport
        self._download_locks: Dict[str, asyncio.Lock] = {}

    async def resolve_all(self, families: Iterable[str]) -> Dict[str, str]:
        """Resolve each distinct family once, concurrently.

        Returns a mapping from requested to renderable family for the render
        step to use without touching the network or disk again.
        """
        unique = list(dict.fromkeys(families))
        resolved = await asyncio.gather(*(self.resolve(family) for family in unique))
        return dict(zip(unique, resolved))

    async def resolve(self, family: str) -> str:
        cached = self.cache.resolved.get(family)
        if cached is not None:
            return cached
        resolved = await self._resolve_uncached(family)
        self.cache.resolved[family] = resolved
        return resolved

    async def _resolve_uncached(self, family: str) -> str:
        if await self._register_custom_font(family):
            return family

        if family in self.catalog and await self.ensure_catalog_font(family):
            return family

        if await asyncio.to_thread(self.cache.is_native, family):
            return family

        substitute = self.aliases.get(family)
        if substitute and substitute in self.catalog:
            logger.info(f"Font '{family}' is not available, substituting with '{substitute}'")
            if await self.ensure_catalog_font(substitute):
                return substitute

        logger.info(f"Trying {UNIVERSAL_FALLBACK} as universal fallback for '{family}'")
        if await self.ensure_catalog_font(UNIVERSAL_FALLBACK):
            return UNIVERSAL_FALLBACK

        logger.warning(f"All font fallbacks failed for '{family}', using {BUILTIN_FAMILY}")
        return BUILTIN_FAMILY

    async def _register_custom_font(self, family: str) -> bool:
        # The first lookup scans system font files.
        font = await asyncio.to_thread(self.cache.lookup, family)
        if font is not None and font.source is FontSource.CUSTOM:
            return True
        path = await asyncio.to_thread(find_custom_font, self.fonts_dir, family)
        if path is None:
            return False
        return await asyncio.to_thread(self._register_file, family, path, FontSource.CUSTOM)

    async def ensure_catalog_font(self, family: str) -> bool:
        """Download (once) and register a catalog font. Returns success."""
        if self.cache.is_registered(family):
            return True
        url = self.catalog.get(family)
        if not url:
            return False

        lock = self._download_locks.setdefault(family, asyncio.Lock())
        async with lock:
            if self.cache.is_registered(family):
                return True

            font_path = self.cache_dir / catalog_font_filename(family)
            try:
                if not await asyncio.to_thread(font_path.exists):
                    logger.info(f"Downloading catalog font: {family}")
                    data = await self._download(url)
                    await asyncio.to_thread(_write_atomic, font_path, data)
            except (FontDownloadError, OSError) as exc:
                logger.error(f"Failed to fetch catalog font {family}: {exc}")
                return False

            registered = await asyncio.to_thread(self._register_file, family, font_path, FontSource.CATALOG)
            if not registered:
                # Drop unusable bytes so the next request downloads again.
                await asyncio.to_thread(font_path.unlink, missing_ok=True)
            return registered

    async def _download(self, url: str) -> bytes:
        try:
            async with httpx.AsyncClient(
                follow_redirects=True,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
                return response.content
        except httpx.HTTPError as exc:
            raise FontDownloadError(f"Download failed: {url}", cause=exc) from exc

    def _register_file(self, family: str, path: Path, source: FontSource) -> bool:
        try:
            ImageFont.truetype(str(path), 12)
        except OSError as exc:
            logger.warning(f"Cannot load font file {path.name} for '{family}': {exc}")
            return False
        self.cache.register(RegisteredFont(family=family, source=source, path=str(path)))
        return True


def _write_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.part")
    tmp_path.write_bytes(data)
    os.replace(tmp_path, path)


def find_custom_font(fonts_dir: Path, family: str) -> Optional[Path]:
    if not fonts_dir.is_dir():
        return None
    for ext in cert_config.FONT_EXTENSIONS:
        for candidate in (fonts_dir / f"{family}{ext}", fonts_dir / f"{family}{ext.upper()}"):
            if candidate.is_file() and candidate.stem == family:
                return candidate
    return None


def list_custom_fonts(fonts_dir: Path) -> List[dict]:
    """Custom fonts uploaded to ``fonts_dir``, sorted by family."""
    fonts = []
    if fonts_dir.is_dir():
        for font_file in fonts_dir.iterdir():
            if not font_file.is_file() or font_file.suffix.lower() not in cert_config.FONT_EXTENSIONS:
                continue
            fonts.append({
                "family": font_file.stem,
                "source": FontSource.CUSTOM.value,
                "file": font_file.name,
                "size_kb": round(font_file.stat().st_size / 1024, 2),
            })
    return sorted(fonts, key=lambda f: f["family"])


def list_available_fonts(fonts_dir: Path) -> List[dict]:
    """Every family a field may request: desktop aliases, catalog, custom."""
    system = [
        {"family": family, "source": FontSource.NATIVE.value}
        for family in ("Arial", "Times New Roman", "Courier New", "Georgia",
                       "Verdana", "Helvetica", "sans-serif", "serif")
    ]
    catalog = [{"family": family, "source": FontSource.CATALOG.value} for family in GOOGLE_FONT_URLS]
    return system + catalog + list_custom_fonts(fonts_dir)


def save_custom_font(data: bytes, filename: str, fonts_dir: Path) -> dict:
    """Validate and store an uploaded font; its stem becomes the family name.

    Raises ``ValueError`` for unsupported or unreadable files and
    ``FileExistsError`` when a font with that file name is already present.
    """
    safe_filename = Path(filename or "").name
    safe_filename = "".join(c for c in safe_filename if c.isalnum() or c in ".-_ ")
    suffix = Path(safe_filename).suffix.lower()
    if suffix not in cert_config.FONT_EXTENSIONS:
        raise ValueError(f"Invalid font format. Only .ttf and .otf files are allowed. Got: {suffix or 'none'}")
    if not Path(safe_filename).stem.strip():
        raise ValueError("Font file name is empty")

    try:
        ImageFont.truetype(io.BytesIO(data), 12)
    except OSError as exc:
        raise ValueError(f"'{safe_filename}' is not a readable font file") from exc

    fonts_dir.mkdir(parents=True, exist_ok=True)
    target_path = fonts_dir / safe_filename
    with target_path.open("xb") as f:
        f.write(data)
    logger.info(f"Saved custom font: {target_path.stem}")

    return {
        "family": target_path.stem,
        "source": FontSource.CUSTOM.value,
        "file": safe_filename,
        "size_kb": round(len(data) / 1024, 2),
    }
