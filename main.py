"""FastAPI document field locator: grid-grounded extraction with highlight boxes.

Runs the staged extraction pipeline against an OpenAI-compatible vision
inference service, keeps results in memory, and serves download and chat
endpoints over them. PDFs take a text-only path through their text layer.
No image logging, no disk writes.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, File, UploadFile
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.concurrency import run_in_threadpool

from config import settings
from export import render
from extraction import ExtractionPipeline
from inference_client import InferenceClient
from models import BatchItem, ChatRequest, ExtractionResult, ExtractResponse
from pdf_text import PDF_MIME_TYPE, PdfParseError, extract_text
from relay import ask_about_result, sse_events
from result_store import ResultNotFound, ResultStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

_client: InferenceClient | None = None
_pipeline: ExtractionPipeline | None = None
_store = ResultStore()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the inference client on startup if configured."""
    global _client, _pipeline

    if not settings.INFERENCE_SERVICE_URL:
        logger.info("Inference service not configured (INFERENCE_SERVICE_URL is empty), extraction disabled")
    else:
        logger.info("Using inference service at %s (model=%s)", settings.INFERENCE_SERVICE_URL, settings.MODEL_ID)
        _client = InferenceClient()
        _pipeline = ExtractionPipeline(_client)

        health = _client.health()
        if health.get("ready"):
            logger.info("Inference service is ready: %s", health)
        else:
            logger.warning("Inference service not yet ready: %s", health)

    yield

    if _client is not None:
        _client.close()
        _client = None
        _pipeline = None


app = FastAPI(title="Document Field Locator", version="1.0.0", lifespan=lifespan)


def _unavailable() -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"detail": "Document extraction is not available - no inference service configured"},
    )


def _not_found(e: ResultNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(e)})


async def _read_upload(file: UploadFile) -> tuple[bytes | None, JSONResponse | None]:
    """Read an uploaded image or PDF, or return the error response to send instead."""
    content_type = file.content_type or ""
    if not (content_type.startswith("image/") or content_type == PDF_MIME_TYPE):
        return None, JSONResponse(
            status_code=415,
            content={"detail": f"Unsupported file type: {content_type or 'unknown'}"},
        )

    file_bytes = await file.read()
    if not file_bytes:
        return None, JSONResponse(status_code=400, content={"detail": "Empty file uploaded"})
    if len(file_bytes) > settings.MAX_UPLOAD_BYTES:
        return None, JSONResponse(status_code=413, content={"detail": "File too large"})

    return file_bytes, None


async def _pdf_text(file_bytes: bytes) -> tuple[str | None, JSONResponse | None]:
    """Pull the text layer out of a PDF upload, or return a 400 to send instead."""
    try:
        return await run_in_threadpool(extract_text, file_bytes), None
    except PdfParseError as e:
        logger.warning("Rejecting unreadable PDF: %s", e)
        return None, JSONResponse(status_code=400, content={"detail": "Failed to parse PDF"})


async def _prepare(file: UploadFile) -> tuple[tuple | None, JSONResponse | None]:
    """Validate one upload into (payload, mime_type, file_name).

    The payload is raw image bytes, or the extracted text for a PDF.
    """
    file_bytes, error = await _read_upload(file)
    if error is not None:
        return None, error

    mime_type = file.content_type
    payload: bytes | str = file_bytes
    if mime_type == PDF_MIME_TYPE:
        payload, error = await _pdf_text(file_bytes)
        if error is not None:
            return None, error

    return (payload, mime_type, file.filename or "document"), None


async def _extract_one(payload: bytes | str, mime_type: str, file_name: str) -> tuple[str, ExtractionResult]:
    if mime_type == PDF_MIME_TYPE:
        logger.info("Processing extraction: file=%s type=%s text=%d chars", file_name, mime_type, len(payload))
        result = await run_in_threadpool(_pipeline.run_text, payload, file_name)
    else:
        # Log byte count only, never image content
        logger.info("Processing extraction: file=%s type=%s size=%d bytes", file_name, mime_type, len(payload))
        result = await run_in_threadpool(_pipeline.run, payload, mime_type, file_name)

    return _store.put(result), result


@app.post("/api/v1/extract", response_model=ExtractResponse)
async def extract(file: UploadFile = File(...)):
    """Extract labeled fields with highlight boxes from a document image or PDF."""
    if _pipeline is None:
        return _unavailable()

    upload, error = await _prepare(file)
    if error is not None:
        return error

    result_id, result = await _extract_one(*upload)
    return ExtractResponse(id=result_id, data=result)


@app.post("/api/v1/extract/batch", response_model=list[BatchItem])
async def extract_batch(files: list[UploadFile] = File(...)):
    """Extract every uploaded document, running the pipelines concurrently."""
    if _pipeline is None:
        return _unavailable()

    uploads = []
    for file in files:
        upload, error = await _prepare(file)
        if error is not None:
            return error
        uploads.append(upload)

    done = await asyncio.gather(*(_extract_one(*upload) for upload in uploads))

    return [
        BatchItem(file_name=file_name, id=result_id, data=result)
        for (_, _, file_name), (result_id, result) in zip(uploads, done)
    ]


@app.get("/api/v1/results/{result_id}", response_model=ExtractionResult)
async def get_result(result_id: str):
    """Return a stored extraction result."""
    try:
        return _store.get(result_id)
    except ResultNotFound as e:
        return _not_found(e)


@app.delete("/api/v1/results/{result_id}", status_code=204)
async def delete_result(result_id: str):
    """Discard a stored result. Its id is never reused."""
    try:
        _store.delete(result_id)
    except ResultNotFound as e:
        return _not_found(e)

    return Response(status_code=204)


@app.get("/api/v1/results/{result_id}/download/{fmt}")
async def download(result_id: str, fmt: str):
    """Download a stored result's fields as CSV or XLSX."""
    try:
        result = _store.get(result_id)
    except ResultNotFound as e:
        return _not_found(e)

    try:
        body, media_type, filename = render(result, fmt)
    except ValueError as e:
        return JSONResponse(status_code=400, content={"detail": str(e)})

    return Response(
        content=body,
        media_type=media_type,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@app.post("/api/v1/chat")
async def chat(req: ChatRequest):
    """Stream an answer about a stored result as server-sent events."""
    if _client is None:
        return _unavailable()

    try:
        chunks = ask_about_result(_store, _client, req.id, req.message)
    except ResultNotFound as e:
        return _not_found(e)

    return StreamingResponse(
        sse_events(chunks),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.get("/health")
async def health():
    """Return service status and inference-service availability."""
    base = {
        "status": "healthy",
        "inference_available": _client is not None,
        "stored_results": len(_store),
    }

    if _client is not None:
        base["inference_health"] = _client.health()

    return base


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
