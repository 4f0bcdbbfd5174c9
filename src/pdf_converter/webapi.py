import asyncio
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import List
from urllib.parse import quote

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.background import BackgroundTask

from pdf_converter import __version__
from pdf_converter.conversion import (
    ConversionService,
    ConverterError,
    ImageSource,
    ImageToPdfRequest,
    PayloadTooLargeError,
    PdfToImagesRequest,
    ServiceSettings,
    ValidationError,
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="PDF Converter Service",
    version=os.getenv("PDF_CONVERTER_VERSION", __version__),
    description=(
        "Chunked uploads plus image to PDF and PDF to images conversion. "
        "Large files are uploaded in chunks, assembled once, and referenced "
        "by a temporary key in later conversion calls."
    ),
)

# Global configuration defaults
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
SCRATCH_DIR = Path(os.getenv("SCRATCH_DIR", str(Path(tempfile.gettempdir()) / "pdf_converter"))).resolve()
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "50"))
MAX_FILES = int(os.getenv("MAX_FILES", "100"))
MAX_DOCUMENT_MB = int(os.getenv("MAX_DOCUMENT_MB", "200"))
RASTER_DPI = int(os.getenv("RASTER_DPI", "150"))
RASTER_TIMEOUT_SEC = float(os.getenv("RASTER_TIMEOUT_SEC", "120"))
RASTERIZER_BIN = os.getenv("RASTERIZER_BIN", "pdftoppm")
ARTIFACT_TTL_SEC = float(os.getenv("ARTIFACT_TTL_SEC", "3600"))
ARTIFACT_CAPACITY = int(os.getenv("ARTIFACT_CAPACITY", "1024"))
SCRATCH_MAX_AGE_SEC = float(os.getenv("SCRATCH_MAX_AGE_SEC", "3600"))
REAPER_INTERVAL_SEC = float(os.getenv("REAPER_INTERVAL_SEC", "300"))
DISCONNECT_POLL_SEC = 0.5

PREFIX = "/tools/pdf-converter"

# Permissive CORS that echoes the caller's origin; tighten for production.
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=".*",
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"],
    allow_headers=["Content-Type", "Authorization", "Accept", "X-Requested-With"],
)

SERVICE: ConversionService | None = None


def build_service() -> ConversionService:
    settings = ServiceSettings(
        scratch_dir=SCRATCH_DIR,
        max_upload_bytes=MAX_UPLOAD_MB * 1024 * 1024,
        max_document_bytes=MAX_DOCUMENT_MB * 1024 * 1024,
        raster_dpi=RASTER_DPI,
        raster_timeout_sec=RASTER_TIMEOUT_SEC,
        rasterizer_bin=RASTERIZER_BIN,
        artifact_ttl_sec=ARTIFACT_TTL_SEC,
        artifact_capacity=ARTIFACT_CAPACITY,
        scratch_max_age_sec=SCRATCH_MAX_AGE_SEC,
        reaper_interval_sec=REAPER_INTERVAL_SEC,
    )
    return ConversionService(settings)


def _service() -> ConversionService:
    global SERVICE
    assert SERVICE is not None, "service not started"
    return SERVICE


@app.on_event("startup")
async def _startup() -> None:
    logging.basicConfig(
        level=LOG_LEVEL.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    global SERVICE
    if SERVICE is None:
        SERVICE = build_service()
    await SERVICE.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    global SERVICE
    if SERVICE is not None:
        await SERVICE.stop()


@app.exception_handler(ConverterError)
async def _converter_error(request: Request, exc: ConverterError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc, exc_info=exc)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.as_detail()})


@app.exception_handler(Exception)
async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": {"code": "internal_error", "message": "Server error"}})


def _upload_size(upload: UploadFile) -> int:
    fh = upload.file
    fh.seek(0, os.SEEK_END)
    size = fh.tell()
    fh.seek(0)
    return size


def _check_upload(upload: UploadFile) -> None:
    size = _upload_size(upload)
    if size == 0:
        raise ValidationError(f"File '{upload.filename}' is empty.")
    if size > MAX_UPLOAD_MB * 1024 * 1024:
        raise PayloadTooLargeError(f"File '{upload.filename}' exceeds {MAX_UPLOAD_MB} MB")


def _attachment_header(filename: str) -> str:
    """Content-Disposition value that survives latin-1 header encoding."""
    quoted = quote(filename)
    if quoted == filename:
        return f'attachment; filename="{filename}"'
    fallback = filename.encode("ascii", "ignore").decode("ascii").strip() or "download"
    fallback = fallback.replace('"', "")
    return f"attachment; filename=\"{fallback}\"; filename*=utf-8''{quoted}"


async def _watch_disconnect(request: Request, cancelled: threading.Event) -> None:
    while not cancelled.is_set():
        if await request.is_disconnected():
            logger.info("Client disconnected from %s; cancelling", request.url.path)
            cancelled.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SEC)


@app.get("/")
def root() -> dict[str, bool]:
    return {"ok": True}


@app.get("/health")
def health() -> dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "ok"}


class AssembleUploadBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    upload_id: str | None = Field(None, alias="uploadId")
    filename: str | None = None


@app.post(f"{PREFIX}/upload-chunk")
async def upload_chunk(
    chunk: UploadFile | None = File(None),
    chunk_index: str | None = Form(None, alias="chunkIndex"),
    upload_id: str | None = Form(None, alias="uploadId"),
) -> JSONResponse:
    """Store one chunk of a larger file.

    Accepts multipart/form-data with the chunk body in a part named "chunk",
    its ordering key in "chunkIndex" and the session in "uploadId". When
    "uploadId" is omitted a new session id is generated and returned.
    """
    if chunk is None:
        raise HTTPException(status_code=400, detail={"code": "invalid_request", "message": "chunk file is required"})
    if not chunk_index:
        raise HTTPException(status_code=400, detail={"code": "invalid_request", "message": "chunkIndex is required"})
    service = _service()
    upload_id = upload_id or service.new_upload_id()
    await run_in_threadpool(service.put_chunk, upload_id, chunk_index, chunk.file)
    return JSONResponse(content={"ok": True, "uploadId": upload_id, "chunkIndex": chunk_index})


@app.get(f"{PREFIX}/upload-chunk")
def upload_chunk_usage() -> dict[str, object]:
    return {
        "ok": True,
        "message": "POST multipart/form-data with field `chunk` plus `chunkIndex` and `uploadId`, "
        "then POST JSON {uploadId, filename} to /assemble-upload.",
    }


@app.post(f"{PREFIX}/assemble-upload")
async def assemble_upload(body: AssembleUploadBody) -> JSONResponse:
    """Concatenate an upload's chunks and return a key for later conversions."""
    if not body.upload_id or not body.filename:
        raise HTTPException(status_code=400, detail={"code": "invalid_request", "message": "uploadId and filename required"})
    key = await run_in_threadpool(_service().assemble, body.upload_id, body.filename)
    return JSONResponse(content={"ok": True, "tempKey": key})


@app.get(f"{PREFIX}/assemble-upload")
def assemble_upload_usage() -> dict[str, object]:
    return {
        "ok": True,
        "message": "POST JSON {uploadId, filename} after all chunks are uploaded; returns `tempKey`.",
    }


@app.post(f"{PREFIX}/image-to-pdf", response_class=FileResponse)
async def image_to_pdf(
    request: Request,
    images: List[UploadFile] | None = File(None),
    temp_keys: str | None = Form(None, alias="tempKeys"),
    page_size: str | None = Form(None, alias="pageSize"),
    orientation: str | None = Form(None),
    margin: str | None = Form(None),
    quality: str | None = Form(None),
    output_name: str | None = Form(None, alias="outputName"),
) -> FileResponse:
    """Compose images into a PDF with one page per image, in upload order.

    Images come either as multipart parts named "images" or as assembled
    uploads listed in "tempKeys" (comma separated; takes precedence).
    """
    sources: list[ImageSource] = []
    if temp_keys and temp_keys.strip():
        keys = [k.strip() for k in temp_keys.split(",") if k.strip()]
        sources = [ImageSource(name=k, key=k) for k in keys]
    elif images:
        if len(images) > MAX_FILES:
            raise ValidationError(f"Too many files uploaded (max {MAX_FILES})")
        for upload in images:
            _check_upload(upload)
            sources.append(ImageSource(name=upload.filename or "image", stream=upload.file))
    conversion = ImageToPdfRequest.parse(
        sources,
        page_size=page_size,
        orientation=orientation,
        margin=margin,
        quality=quality,
        output_name=output_name,
    )

    service = _service()
    cancelled = threading.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancelled))
    try:
        path, pages = await run_in_threadpool(service.image_to_pdf, conversion, cancelled.is_set)
    finally:
        watcher.cancel()
    logger.info("Built %s with %d page(s)", conversion.output_name, pages)
    return FileResponse(
        path,
        media_type="application/pdf",
        filename=conversion.output_name,
        background=BackgroundTask(service.discard, path),
    )


@app.get(f"{PREFIX}/image-to-pdf")
def image_to_pdf_usage() -> dict[str, object]:
    return {
        "ok": True,
        "message": "POST multipart/form-data with field `images` to create a PDF. "
        "Optional fields: tempKeys, pageSize (auto|A4|letter), orientation, margin, quality, outputName.",
    }


@app.post(f"{PREFIX}/pdf-to-images")
async def pdf_to_images(
    pdf: UploadFile | None = File(None),
    temp_keys: str | None = Form(None, alias="tempKeys"),
    output_name: str | None = Form(None, alias="outputName"),
) -> StreamingResponse:
    """Rasterize every PDF page to PNG and stream them back as one zip.

    Entries are named page_1.png, page_2.png, ... in page order. Requires
    the `pdftoppm` tool from Poppler on the server.
    """
    if pdf is not None and not (temp_keys and temp_keys.strip()):
        _check_upload(pdf)
    conversion = PdfToImagesRequest.parse(
        stream=pdf.file if pdf is not None else None,
        filename=pdf.filename if pdf is not None else None,
        temp_keys=temp_keys,
        output_name=output_name,
    )
    headers = {"Content-Disposition": _attachment_header(conversion.output_name)}
    pages = await run_in_threadpool(_service().pdf_to_images, conversion)
    try:
        return StreamingResponse(
            pages.iter_archive(),
            media_type="application/zip",
            headers=headers,
            background=BackgroundTask(pages.cleanup),
        )
    except Exception:
        pages.cleanup()
        raise


@app.get(f"{PREFIX}/pdf-to-images")
def pdf_to_images_usage() -> dict[str, object]:
    return {
        "ok": True,
        "message": "POST multipart/form-data with field `pdf` (or `tempKeys`) to receive a ZIP "
        "of per-page PNG images: page_1.png, page_2.png, ...",
    }


def run() -> None:
    """Run a development ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:8080). Set PORT env var to override.
    """
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8080"))
    # Enable reload in dev unless explicitly disabled
    reload = os.getenv("RELOAD", "true").lower() in {"1", "true", "yes", "on"}

    uvicorn.run("pdf_converter.webapi:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()
