"""
Runtime configuration for the certificate renderer.

Values come from the environment (optionally via a ``.env`` file next to the
process working directory). Components read these as constructor defaults so
callers and tests can override any of them explicitly.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

ROOT_DIR = Path(__file__).resolve().parent


def _env_path(name: str, default: Path) -> Path:
    value = os.environ.get(name, "").strip()
    return Path(value).expanduser().resolve() if value else default


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


def _env_list(name: str) -> tuple[str, ...]:
    value = os.environ.get(name, "")
    return tuple(item.strip() for item in value.split(",") if item.strip())


UPLOAD_DIR: Path = _env_path("CERT_UPLOAD_DIR", Path.cwd() / "uploads")
GENERATED_DIR: Path = _env_path("CERT_GENERATED_DIR", Path.cwd() / "generated")
FONTS_DIR: Path = _env_path("CERT_FONTS_DIR", Path.cwd() / "fonts")
FONT_CACHE_DIR: Path = _env_path("CERT_FONT_CACHE_DIR", FONTS_DIR / "cache")

# Rows rendered concurrently; the next chunk starts only after this one finishes.
CHUNK_SIZE: int = _env_int("CERT_CHUNK_SIZE", 25)
ARCHIVE_COMPRESSION_LEVEL: int = _env_int("CERT_ARCHIVE_COMPRESSION", 4)
DOWNLOAD_TIMEOUT: float = float(_env_int("CERT_DOWNLOAD_TIMEOUT", 30))
MAX_UPLOAD_BYTES: int = _env_int("CERT_MAX_UPLOAD_MB", 10) * 1024 * 1024
LOG_LEVEL: str = os.environ.get("CERT_LOG_LEVEL", "INFO")
# Comma-separated origins allowed to call the API from a browser; empty disables CORS.
CORS_ORIGINS: tuple[str, ...] = _env_list("CERT_CORS_ORIGINS")

ALLOWED_IMAGE_TYPES: frozenset[str] = frozenset({"image/png", "image/jpeg", "image/jpg"})
ALLOWED_DATA_EXTENSIONS: frozenset[str] = frozenset({".csv"})
FONT_EXTENSIONS: tuple[str, ...] = (".ttf", ".otf")

OUTPUT_EXTENSION = ".png"
