"""
Batch certificate generation.

Rows are rendered in fixed-size chunks: every row in a chunk renders
concurrently on worker threads, and the next chunk starts only once the
current one is fully written. Output paths come back in row order.

Usage:
    python batch_generator.py --template template.png --fields fields.json --csv data.csv
    python batch_generator.py --template template.png --fields fields.json --csv data.csv --preview preview.png
"""

from __future__ import annotations

import argparse
import asyncio
import re
import time
from dataclasses import dataclass, field as dataclass_field
from pathlib import Path
from typing import Iterator, List, Mapping, Optional, Sequence, Tuple, TypeVar

from PIL import Image

import cert_config
from archive_writer import cleanup_generated_files, package_to_archive
from cert_errors import BatchGenerationError, CertificateError
from certificate_overlay import composite, decode_template
from field_mapping import FieldMapping, Row, load_csv_rows, load_fields
from font_resolver import FontCache, FontResolver
from log_setup import get_logger, setup_logging

logger = get_logger(__name__)

MAX_FILENAME_LENGTH = 200
DEFAULT_FILE_NAME_COLUMN = "Name"

T = TypeVar("T")


def _default_chunk_size() -> int:
    return cert_config.CHUNK_SIZE


@dataclass(frozen=True)
class ChunkPolicy:
    """How many rows render concurrently before the next chunk starts."""
    size: int = dataclass_field(default_factory=_default_chunk_size)

    def __post_init__(self):
        if self.size < 1:
            raise ValueError(f"Chunk size must be at least 1, got {self.size}")


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def sanitize_filename(name: str) -> str:
    name = re.sub(r"[^a-zA-Z0-9_\-.]", "_", name)
    name = re.sub(r"_+", "_", name)
    return name[:MAX_FILENAME_LENGTH]


def unique_filename(base_name: str, ext: str, used_names: set[str]) -> str:
    """Return ``base_name + ext``, suffixed ``_1``, ``_2``... if already used."""
    name = f"{base_name}{ext}"
    counter = 1
    while name in used_names:
        name = f"{base_name}_{counter}{ext}"
        counter += 1
    used_names.add(name)
    return name


def output_filename(row: Row, position: int, file_name_column: Optional[str], used_names: set[str]) -> str:
    """File name for the row at 1-based ``position`` within the batch."""
    raw_name = (row.get(file_name_column) or "").strip() if file_name_column else ""
    if not raw_name:
        raw_name = f"certificate_{position}"
    return unique_filename(sanitize_filename(raw_name), cert_config.OUTPUT_EXTENSION, used_names)


def create_batch_dir(output_root: Path) -> Path:
    output_root.mkdir(parents=True, exist_ok=True)
    stamp = int(time.time() * 1000)
    batch_dir = output_root / f"batch_{stamp}"
    attempt = 0
    while True:
        try:
            batch_dir.mkdir()
            return batch_dir
        except FileExistsError:
            attempt += 1
            batch_dir = output_root / f"batch_{stamp}_{attempt}"


class BatchGenerator:
    """Renders certificates for many rows against one template."""

    def __init__(
        self,
        resolver: Optional[FontResolver] = None,
        fonts: Optional[FontCache] = None,
        output_root: Optional[Path] = None,
        chunk_policy: Optional[ChunkPolicy] = None,
    ):
        self.resolver = resolver or FontResolver(cache=fonts)
        self.fonts = self.resolver.cache
        self.output_root = Path(output_root or cert_config.GENERATED_DIR)
        self.chunk_policy = chunk_policy or ChunkPolicy()

    async def _prepare(
        self, template_path: Path, fields: Sequence[FieldMapping]
    ) -> Tuple[Image.Image, Mapping[str, str]]:
        """Read the template and resolve every distinct font family at once."""
        template_path = Path(template_path)
        try:
            data, resolved = await asyncio.gather(
                asyncio.to_thread(template_path.read_bytes),
                self.resolver.resolve_all(f.font_family for f in fields),
            )
        except OSError as exc:
            raise BatchGenerationError(
                "Failed to read template", cause=exc, context={"template": str(template_path)}
            ) from exc
        template = await asyncio.to_thread(decode_template, data)
        return template, resolved

    async def _render_row(
        self,
        template: Image.Image,
        fields: Sequence[FieldMapping],
        row: Row,
        resolved: Mapping[str, str],
        output_path: Path,
    ) -> Path:
        try:
            png = await asyncio.to_thread(composite, template, fields, row, resolved, self.fonts)
            await asyncio.to_thread(output_path.write_bytes, png)
        except CertificateError:
            raise
        except Exception as exc:
            raise BatchGenerationError(
                "Failed to generate certificate", cause=exc, context={"output": output_path.name}
            ) from exc
        return output_path

    async def run_batch(
        self,
        template_path: Path,
        fields: Sequence[FieldMapping],
        rows: Sequence[Row],
        file_name_column: Optional[str] = DEFAULT_FILE_NAME_COLUMN,
    ) -> List[Path]:
        """Render one PNG per row into a fresh ``batch_<ms>`` directory.

        Any failure aborts the batch; files already written are left for the
        caller to clean up.
        """
        template, resolved = await self._prepare(template_path, fields)
        try:
            batch_dir = await asyncio.to_thread(create_batch_dir, self.output_root)
        except OSError as exc:
            raise BatchGenerationError("Failed to create batch directory", cause=exc) from exc

        positioned = list(enumerate(rows, start=1))
        used_names: set[str] = set()
        output_paths: List[Path] = []
        chunk_size = self.chunk_policy.size

        for chunk_index, chunk in enumerate(chunked(positioned, chunk_size)):
            # Names are claimed here, before any render in the chunk starts.
            targets = [
                (row, batch_dir / output_filename(row, position, file_name_column, used_names))
                for position, row in chunk
            ]
            written = await asyncio.gather(*(
                self._render_row(template, fields, row, resolved, path) for row, path in targets
            ))
            output_paths.extend(written)
            logger.debug(f"Chunk {chunk_index + 1}: {len(output_paths)}/{len(positioned)} rendered")

        logger.info(f"Generated {len(output_paths)} certificate(s) in {batch_dir.name}")
        return output_paths

    async def render_preview(
        self, template_path: Path, fields: Sequence[FieldMapping], row: Row
    ) -> bytes:
        """Render a single row and return the PNG bytes without writing them."""
        template, resolved = await self._prepare(template_path, fields)
        try:
            return await asyncio.to_thread(composite, template, fields, row, resolved, self.fonts)
        except CertificateError:
            raise
        except Exception as exc:
            raise BatchGenerationError("Failed to render preview", cause=exc) from exc


async def generate_certificates(
    template_path: Path,
    fields: Sequence[FieldMapping],
    rows: Sequence[Row],
    file_name_column: Optional[str] = DEFAULT_FILE_NAME_COLUMN,
    generator: Optional[BatchGenerator] = None,
    keep_files: bool = False,
) -> Tuple[Path, int]:
    """Run a batch, zip it and remove the loose PNGs. Returns (archive, count)."""
    generator = generator or BatchGenerator()
    paths = await generator.run_batch(template_path, fields, rows, file_name_column)
    archive_path = await package_to_archive(paths, generator.output_root)
    if not keep_files:
        await asyncio.to_thread(cleanup_generated_files, paths)
    return archive_path, len(paths)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Render one PNG certificate per CSV row onto a template image."
    )
    parser.add_argument("--template", required=True, help="Path to the template PNG/JPEG.")
    parser.add_argument("--fields", required=True, help="Path to the field mappings JSON.")
    parser.add_argument("--csv", dest="csv_path", required=True, help="Path to the CSV data file.")
    parser.add_argument(
        "--file-name-column",
        default=DEFAULT_FILE_NAME_COLUMN,
        help="Column used to name output files (default: Name).",
    )
    parser.add_argument("--preview", help="Render only the first row to this PNG path.")
    parser.add_argument("--output-dir", help="Directory for batches and archives.")
    parser.add_argument("--chunk-size", type=int, default=None, help="Rows rendered concurrently.")
    parser.add_argument("--keep-files", action="store_true", help="Keep loose PNGs after zipping.")
    parser.add_argument("--log-level", default=cert_config.LOG_LEVEL)
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    setup_logging(args.log_level)

    fields = load_fields(Path(args.fields))
    headers, rows = load_csv_rows(Path(args.csv_path))
    if args.file_name_column and args.file_name_column not in headers:
        logger.warning(f"Column '{args.file_name_column}' not in CSV, using numbered file names")

    chunk_policy = ChunkPolicy(args.chunk_size) if args.chunk_size is not None else None
    generator = BatchGenerator(
        output_root=Path(args.output_dir) if args.output_dir else None,
        chunk_policy=chunk_policy,
    )

    if args.preview:
        png = asyncio.run(generator.render_preview(Path(args.template), fields, rows[0]))
        preview_path = Path(args.preview)
        preview_path.parent.mkdir(parents=True, exist_ok=True)
        preview_path.write_bytes(png)
        print(f"Wrote: {preview_path}")
        return

    print(f"Generating {len(rows)} certificates...")
    archive_path, total = asyncio.run(generate_certificates(
        Path(args.template),
        fields,
        rows,
        args.file_name_column,
        generator=generator,
        keep_files=args.keep_files,
    ))
    print(f"Done! Generated {total} certificates")
    print(f"Created ZIP archive: {archive_path}")


if __name__ == "__main__":
    main()
