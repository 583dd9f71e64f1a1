import asyncio
import uuid
from pathlib import Path
from typing import Any

from fastapi import BackgroundTasks, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

import cert_config
from archive_writer import cleanup_generated_files, package_to_archive
from batch_generator import DEFAULT_FILE_NAME_COLUMN, BatchGenerator
from cert_errors import CertificateError, TemplateDecodeError
from certificate_overlay import decode_template
from field_mapping import FieldMapping, Row, parse_csv_rows
from font_resolver import FontCache, FontResolver, list_available_fonts, save_custom_font
from log_setup import get_logger

logger = get_logger(__name__)

UPLOAD_DIR = cert_config.UPLOAD_DIR
GENERATED_DIR = cert_config.GENERATED_DIR
FONTS_DIR = cert_config.FONTS_DIR

# One cache for the process lifetime; every batch reuses its resolutions.
font_cache = FontCache()
font_resolver = FontResolver(cache=font_cache)

app = FastAPI(title="Certificate Generator API")

# ── CORS ──────────────────────────────────────────────────────────────────────
# Browser frontends served from another origin must be listed in CERT_CORS_ORIGINS.
if cert_config.CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cert_config.CORS_ORIGINS),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def _ok(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": "Request validation failed.",
            "detail": exc.errors(),
        },
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": str(exc.detail)},
    )


@app.exception_handler(CertificateError)
async def certificate_exception_handler(request: Request, exc: CertificateError) -> JSONResponse:
    status_code = 400 if isinstance(exc, TemplateDecodeError) else 500
    logger.error(f"Generation error: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": exc.message},
    )


class GenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    template_path: str = Field(alias="templatePath")
    fields: list[FieldMapping]
    rows: list[dict[str, Any]]
    file_name_column: str = Field(default=DEFAULT_FILE_NAME_COLUMN, alias="fileNameColumn")
    preview: bool = False


def get_generator() -> BatchGenerator:
    return BatchGenerator(resolver=font_resolver, output_root=GENERATED_DIR)


def normalize_rows(rows: list[dict[str, Any]]) -> list[Row]:
    return [
        {str(key): "" if value is None else str(value).strip() for key, value in row.items()}
        for row in rows
    ]


def template_dir() -> Path:
    return UPLOAD_DIR / "templates"


def _too_large() -> HTTPException:
    max_mb = cert_config.MAX_UPLOAD_BYTES // (1024 * 1024)
    return HTTPException(status_code=400, detail=f"File too large. Maximum: {max_mb}MB")


async def read_upload(upload: UploadFile) -> bytes:
    # The multipart parser records the size, so oversized uploads are refused unread.
    if upload.size is not None and upload.size > cert_config.MAX_UPLOAD_BYTES:
        raise _too_large()
    contents = await upload.read()
    if len(contents) > cert_config.MAX_UPLOAD_BYTES:
        raise _too_large()
    return contents


def write_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


@app.get("/api/health")
def health() -> dict[str, Any]:
    return _ok({"status": "ok"})


@app.post("/api/upload-template")
async def upload_template(template: UploadFile | None = File(None)) -> dict[str, Any]:
    if template is None:
        raise HTTPException(status_code=400, detail="No file uploaded")
    if template.content_type not in cert_config.ALLOWED_IMAGE_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid file type: {template.content_type}. Allowed: PNG, JPG",
        )

    contents = await read_upload(template)
    image = await asyncio.to_thread(decode_template, contents)

    ext = Path(template.filename or "").suffix.lower() or ".png"
    file_name = f"{uuid.uuid4().hex}{ext}"
    await asyncio.to_thread(write_file, template_dir() / file_name, contents)

    return _ok({
        "templatePath": file_name,
        "templateUrl": f"/api/upload-template?path={file_name}",
        "width": image.width,
        "height": image.height,
    })


@app.get("/api/upload-template")
def get_template(path: str | None = None) -> FileResponse:
    if not path:
        raise HTTPException(status_code=400, detail="Missing path")
    safe_name = Path(path).name
    file_path = template_dir() / safe_name
    if not file_path.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    media_type = "image/png" if file_path.suffix.lower() == ".png" else "image/jpeg"
    return FileResponse(file_path, media_type=media_type, headers={"Cache-Control": "no-cache"})


@app.post("/api/upload-data")
async def upload_data(data: UploadFile | None = File(None)) -> dict[str, Any]:
    if data is None:
        raise HTTPException(status_code=400, detail="No file uploaded")
    ext = Path(data.filename or "").suffix.lower()
    if ext not in cert_config.ALLOWED_DATA_EXTENSIONS:
        raise HTTPException(status_code=400, detail=f"Invalid file type: {ext or 'none'}. Allowed: .csv")

    contents = await read_upload(data)
    try:
        headers, rows = await asyncio.to_thread(parse_csv_rows, contents.decode("utf-8-sig"))
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="CSV file must be UTF-8 encoded.") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if not any(headers):
        raise HTTPException(status_code=400, detail="No columns found in the file")

    return _ok({"headers": headers, "rows": rows, "totalRows": len(rows)})


@app.get("/api/fonts")
def list_fonts() -> dict[str, Any]:
    return _ok({"fonts": list_available_fonts(FONTS_DIR)})


@app.post("/api/fonts/upload")
async def upload_font(font: UploadFile | None = File(None)) -> dict[str, Any]:
    if font is None:
        raise HTTPException(status_code=400, detail="No font file uploaded")

    contents = await read_upload(font)
    try:
        info = await asyncio.to_thread(save_custom_font, contents, font.filename or "", FONTS_DIR)
    except FileExistsError as exc:
        raise HTTPException(
            status_code=409,
            detail=f"Font file '{font.filename}' already exists. Delete it first or rename your file.",
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    # A previous request may have resolved this family to a fallback.
    font_cache.forget(info["family"])
    return _ok(info)


@app.post("/api/generate")
async def generate(request: GenerateRequest, background_tasks: BackgroundTasks) -> dict[str, Any]:
    if not request.template_path:
        raise HTTPException(status_code=400, detail="Template path is required")
    if not request.fields:
        raise HTTPException(status_code=400, detail="At least one field mapping is required")
    if not request.rows:
        raise HTTPException(status_code=400, detail="No data rows provided")

    template_path = template_dir() / Path(request.template_path).name
    if not await asyncio.to_thread(template_path.is_file):
        raise HTTPException(status_code=400, detail="Template file not found. Please re-upload.")

    rows = normalize_rows(request.rows)
    generator = get_generator()

    if request.preview:
        png = await generator.render_preview(template_path, request.fields, rows[0])
        preview_name = f"preview_{uuid.uuid4().hex}.png"
        await asyncio.to_thread(write_file, GENERATED_DIR / preview_name, png)
        return _ok({"previewUrl": f"/api/generate/serve?file={preview_name}"})

    paths = await generator.run_batch(template_path, request.fields, rows, request.file_name_column)
    zip_path = await package_to_archive(paths, GENERATED_DIR)
    # Loose PNGs are in the archive now; remove them after the response is sent.
    background_tasks.add_task(cleanup_generated_files, paths)

    return _ok({
        "zipUrl": f"/api/generate/serve?file={zip_path.name}",
        "totalGenerated": len(paths),
    })


@app.get("/api/generate/serve")
def serve_generated(file: str | None = None) -> FileResponse:
    if not file:
        raise HTTPException(status_code=400, detail="Missing file parameter")
    safe_name = Path(file).name
    file_path = GENERATED_DIR / safe_name
    ext = file_path.suffix.lower()
    if ext not in (".png", ".zip"):
        raise HTTPException(status_code=400, detail="Only .png and .zip files can be served.")
    if not file_path.is_file():
        raise HTTPException(status_code=404, detail="File not found")

    if ext == ".zip":
        return FileResponse(file_path, media_type="application/zip", filename="certificates.zip")
    return FileResponse(file_path, media_type="image/png", headers={"Cache-Control": "no-cache"})
