"""
Zip packaging of generated certificates.
"""

from __future__ import annotations

import asyncio
import time
import zipfile
from pathlib import Path
from typing import Iterable, Optional, Sequence

import cert_config
from cert_errors import ArchiveError
from log_setup import get_logger

logger = get_logger(__name__)


def _write_zip(zip_path: Path, file_paths: Sequence[Path], compress_level: int) -> None:
    with zipfile.ZipFile(
        zip_path, "x", zipfile.ZIP_DEFLATED, compresslevel=compress_level
    ) as zipf:
        for file_path in file_paths:
            # ZipFile.write copies the file in blocks, never whole.
            zipf.write(file_path, file_path.name)


async def package_to_archive(
    file_paths: Iterable[Path],
    dest_dir: Optional[Path] = None,
    compress_level: Optional[int] = None,
) -> Path:
    """Write every file into ``certificates_<ms>.zip`` under ``dest_dir``.

    Entries are stored under their base names. The returned path is only
    handed back once the archive is closed; on failure the partial archive
    is removed and ``ArchiveError`` is raised.
    """
    paths = [Path(p) for p in file_paths]
    dest = Path(dest_dir or cert_config.GENERATED_DIR)
    level = cert_config.ARCHIVE_COMPRESSION_LEVEL if compress_level is None else compress_level
    stamp = int(time.time() * 1000)
    zip_path = dest / f"certificates_{stamp}.zip"

    try:
        await asyncio.to_thread(dest.mkdir, parents=True, exist_ok=True)
        attempt = 0
        while True:
            try:
                await asyncio.to_thread(_write_zip, zip_path, paths, level)
                break
            except FileExistsError:
                # Another archive was created in the same millisecond.
                attempt += 1
                zip_path = dest / f"certificates_{stamp}_{attempt}.zip"
    except OSError as exc:
        zip_path.unlink(missing_ok=True)
        raise ArchiveError(
            "Failed to create certificate archive",
            cause=exc,
            context={"archive": zip_path.name, "files": len(paths)},
        ) from exc

    logger.info(f"Archived {len(paths)} certificate(s) into {zip_path.name}")
    return zip_path


def cleanup_generated_files(file_paths: Iterable[Path], archive_path: Optional[Path] = None) -> None:
    """Best-effort removal of loose outputs, their batch directory and the archive."""
    parents = set()
    for file_path in file_paths:
        file_path = Path(file_path)
        parents.add(file_path.parent)
        try:
            file_path.unlink(missing_ok=True)
        except OSError as exc:
            logger.debug(f"Could not remove {file_path}: {exc}")

    for directory in parents:
        if not directory.name.startswith("batch_"):
            continue
        try:
            directory.rmdir()
        except OSError as exc:
            logger.debug(f"Could not remove {directory}: {exc}")

    if archive_path is not None:
        try:
            Path(archive_path).unlink(missing_ok=True)
        except OSError as exc:
            logger.debug(f"Could not remove {archive_path}: {exc}")
