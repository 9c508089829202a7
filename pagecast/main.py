"""Main FastAPI application for the pagecast service.

This module defines the HTTP API. Uploading a book stores the PDF,
creates the book with its first chunk and starts the pipeline in the
background. With ``?stream=true`` the upload request stays open instead
and streams progress for the first chunk as server-sent events until a
single ``completed`` or ``error`` event closes it.

Listeners fetch the chunk list of a book, play the ready chunks and ask
for the next chunk when they get close to the end. Change notifications
for one book (or a set of books) are available as an event stream so a
player or library view can refresh without polling.

The application initialises its database and pipeline on startup from
environment variables; see :mod:`pagecast.config`.
"""

from __future__ import annotations

import logging
import mimetypes
import os
import re
from typing import Any, AsyncIterator, Dict, List, Optional

import pydantic
from fastapi import Depends, FastAPI, File, Form, Query, Request, Response, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse

from . import db, search
from .auth import CREATE_BOOK, HeaderAuthProvider, Principal, authorize
from .blobstore import LocalBlobStore, SupabaseBlobStore
from .config import Settings, configure_logging, load_settings
from .errors import AuthorizationError, NotFoundError, PagecastError, ValidationError
from .notifier import ProgressStream, broker, format_sse
from .ocr import OCRSpaceProvider, PdfTextProvider
from .pipeline import PipelineController
from .schemas import (
    BookCreate,
    BookView,
    ChunkView,
    NextChunkRequest,
    NextChunkResult,
    VisibilityUpdate,
)
from .tts import DummyTTSProvider, OpenAITTSProvider

logger = logging.getLogger(__name__)

app = FastAPI(title="Pagecast PDF Audiobook Service")

AUTH = HeaderAuthProvider()

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def build_blob_store(settings: Settings):
    if settings.blob_backend == "supabase":
        if not (settings.supabase_url and settings.supabase_key):
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required for supabase storage")
        return SupabaseBlobStore(settings.supabase_url, settings.supabase_key,
                                 bucket=settings.books_bucket, timeout=settings.http_timeout)
    return LocalBlobStore(settings.data_dir, settings.public_base_url)


def build_ocr(settings: Settings):
    if settings.ocr_provider == "ocrspace":
        if settings.ocr_api_key:
            return OCRSpaceProvider(api_key=settings.ocr_api_key, language=settings.ocr_language,
                                    timeout=settings.http_timeout, max_retries=settings.http_retries)
        logger.warning("OCR_API_KEY is not set, reading embedded PDF text instead of running OCR")
    return PdfTextProvider()


def build_speech(settings: Settings):
    if settings.tts_provider == "openai":
        if settings.openai_api_key:
            return OpenAITTSProvider(api_key=settings.openai_api_key, voice=settings.openai_voice,
                                     model=settings.openai_model, timeout=settings.http_timeout)
        logger.warning("OPENAI_API_KEY is not set, falling back to silent audio")
    return DummyTTSProvider()


def build_controller(settings: Settings) -> PipelineController:
    return PipelineController(
        blobs=build_blob_store(settings),
        ocr=build_ocr(settings),
        speech=build_speech(settings),
        settings=settings,
    )


@app.on_event("startup")
async def on_startup() -> None:
    """Initialise logging, database and the pipeline controller on startup."""
    settings = load_settings()
    configure_logging(settings.log_level)
    db.DB_PATH = settings.db_path
    db.init_db()
    app.state.controller = build_controller(settings)
    app.state.controller.recover_interrupted()
    logger.info("Pagecast started (ocr=%s, tts=%s, storage=%s)",
                app.state.controller.ocr.name, app.state.controller.speech.name,
                settings.blob_backend)


@app.exception_handler(PagecastError)
async def pagecast_error_handler(request: Request, exc: PagecastError) -> JSONResponse:
    return JSONResponse({"detail": exc.message}, status_code=exc.status_code)


def get_controller(request: Request) -> PipelineController:
    return request.app.state.controller


def get_principal(request: Request) -> Optional[Principal]:
    return AUTH.current_principal(request.headers)


def require_principal(principal: Optional[Principal] = Depends(get_principal)) -> Principal:
    if principal is None:
        raise AuthorizationError("Authentication required", status_code=401)
    return principal


def _book_payload(book: Dict[str, Any]) -> Dict[str, Any]:
    return BookView.from_row(book, db.get_chunks(book["id"])).model_dump()


def _chunk_payload(chunks: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [ChunkView.from_row(chunk).model_dump() for chunk in chunks]


@app.post("/books")
async def upload_book(
    title: str = Form(""),
    author: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    language: str = Form("hindi"),
    is_public: bool = Form(True),
    pdf_file: Optional[UploadFile] = File(None),
    cover_image: Optional[UploadFile] = File(None),
    stream: bool = Query(False),
    principal: Optional[Principal] = Depends(get_principal),
    controller: PipelineController = Depends(get_controller),
) -> Response:
    """Upload a PDF book.

    Returns the new book id immediately and processes the first chunk in
    the background. With ``stream=true`` the response is an event stream
    of the first chunk's progress instead.
    """
    decision = authorize(principal, CREATE_BOOK)
    decision.enforce()
    try:
        metadata = BookCreate(title=title, author=author, description=description,
                              language=language, is_public=is_public)
    except pydantic.ValidationError as exc:
        error = exc.errors()[0]
        raise ValidationError(f"{error['loc'][-1]}: {error['msg']}") from exc
    if pdf_file is None:
        raise ValidationError("Please upload a PDF file")
    pdf = (await pdf_file.read(), pdf_file.filename or "book.pdf", pdf_file.content_type or "application/pdf")
    cover = None
    if cover_image is not None and cover_image.filename:
        cover = (await cover_image.read(), cover_image.filename, cover_image.content_type or "image/jpeg")

    if stream:
        progress = ProgressStream()
        controller.spawn(controller.upload_with_progress(principal, metadata, pdf, cover, progress,
                                                         decision=decision))
        return StreamingResponse(progress.sse(), media_type="text/event-stream", headers=SSE_HEADERS)

    book_id = await controller.create_book(principal, metadata, pdf, cover, decision=decision)
    return JSONResponse({"book_id": book_id, "chunk_number": 1}, status_code=201)


@app.get("/books")
async def list_books(q: Optional[str] = None, language: Optional[str] = None,
                     sort: str = "recent") -> Response:
    """Search the public library."""
    books = search.search_books(q or "", public_only=True, language=language, sort=sort)
    return JSONResponse({"results": [_book_payload(book) for book in books]})


@app.get("/books/mine")
async def my_books(q: Optional[str] = None, sort: str = "recent",
                   principal: Principal = Depends(require_principal)) -> Response:
    """List every book uploaded by the current user, private ones included."""
    books = search.search_books(q or "", public_only=False, user_id=principal.id, sort=sort)
    return JSONResponse({"results": [_book_payload(book) for book in books]})


@app.get("/books/{book_id}")
async def get_book(book_id: str, principal: Optional[Principal] = Depends(get_principal),
                   controller: PipelineController = Depends(get_controller)) -> Response:
    book = controller.get_book(principal, book_id)
    return JSONResponse({"book": _book_payload(book)})


@app.get("/books/{book_id}/chunks")
async def get_chunks(book_id: str, principal: Optional[Principal] = Depends(get_principal),
                     controller: PipelineController = Depends(get_controller)) -> Response:
    chunks = controller.get_chunks(principal, book_id)
    return JSONResponse({"book_id": book_id, "chunks": _chunk_payload(chunks)})


@app.post("/books/{book_id}/next-chunk")
async def next_chunk(book_id: str, payload: NextChunkRequest,
                     principal: Optional[Principal] = Depends(get_principal),
                     controller: PipelineController = Depends(get_controller)) -> Response:
    """Ask for the chunk after ``known_last_chunk_number``. Idempotent."""
    number, created = await controller.request_next_chunk(
        book_id, payload.known_last_chunk_number, principal=principal
    )
    result = NextChunkResult(book_id=book_id, chunk_number=number, created=created)
    return JSONResponse(result.model_dump(), status_code=202)


@app.post("/books/{book_id}/regenerate")
async def regenerate(book_id: str, principal: Principal = Depends(require_principal),
                     controller: PipelineController = Depends(get_controller)) -> Response:
    numbers = await controller.regenerate(principal, book_id)
    return JSONResponse({"book_id": book_id, "chunks": numbers}, status_code=202)


@app.patch("/books/{book_id}/visibility")
async def set_visibility(book_id: str, payload: VisibilityUpdate,
                         principal: Principal = Depends(require_principal),
                         controller: PipelineController = Depends(get_controller)) -> Response:
    book = controller.set_visibility(principal, book_id, payload.is_public)
    return JSONResponse({"book": _book_payload(book)})


@app.delete("/books/{book_id}")
async def delete_book(book_id: str, principal: Principal = Depends(require_principal),
                      controller: PipelineController = Depends(get_controller)) -> Response:
    await controller.delete_book(principal, book_id)
    return JSONResponse({"book_id": book_id, "deleted": True})


@app.post("/books/{book_id}/like")
async def like_book(book_id: str, principal: Principal = Depends(require_principal),
                    controller: PipelineController = Depends(get_controller)) -> Response:
    count = controller.like(principal, book_id, liked=True)
    return JSONResponse({"book_id": book_id, "liked": True, "likes_count": count})


@app.delete("/books/{book_id}/like")
async def unlike_book(book_id: str, principal: Principal = Depends(require_principal),
                      controller: PipelineController = Depends(get_controller)) -> Response:
    count = controller.like(principal, book_id, liked=False)
    return JSONResponse({"book_id": book_id, "liked": False, "likes_count": count})


async def change_events(controller: PipelineController, principal: Optional[Principal],
                        book_ids: Optional[List[str]]) -> AsyncIterator[str]:
    """Render chunk store changes as server-sent events.

    Each ``chunks`` event carries the full, refreshed chunk list of the
    book that changed. Books the principal may not read are skipped, and
    a ``book_deleted`` event is only sent for a book the stream has
    already shown.
    """
    subscription = broker.subscribe(book_ids)
    shown = set()
    try:
        for book_id in book_ids or []:
            chunks = controller.get_chunks(principal, book_id)
            shown.add(book_id)
            yield format_sse("chunks", {"book_id": book_id, "chunks": _chunk_payload(chunks)})
        async for event in subscription:
            if event.kind == "delete":
                if event.book_id in shown:
                    shown.discard(event.book_id)
                    yield format_sse("book_deleted", {"book_id": event.book_id})
                continue
            try:
                chunks = controller.get_chunks(principal, event.book_id)
            except PagecastError:
                continue
            shown.add(event.book_id)
            yield format_sse("chunks", {
                "book_id": event.book_id,
                "chunk_number": event.chunk_number,
                "chunks": _chunk_payload(chunks),
            })
    finally:
        subscription.close()


@app.get("/books/{book_id}/changes")
async def book_changes(book_id: str, principal: Optional[Principal] = Depends(get_principal),
                       controller: PipelineController = Depends(get_controller)) -> Response:
    """Stream change notifications for one book."""
    controller.get_book(principal, book_id)
    return StreamingResponse(change_events(controller, principal, [book_id]),
                             media_type="text/event-stream", headers=SSE_HEADERS)


@app.get("/changes")
async def changes(book_id: Optional[List[str]] = Query(None),
                  principal: Optional[Principal] = Depends(get_principal),
                  controller: PipelineController = Depends(get_controller)) -> Response:
    """Stream change notifications for several books, or all readable books."""
    for one in book_id or []:
        controller.get_book(principal, one)
    return StreamingResponse(change_events(controller, principal, book_id or None),
                             media_type="text/event-stream", headers=SSE_HEADERS)


def iter_file(path: str, start: int, end: int, chunk_size: int = 8192):
    """Generator to read bytes from ``path`` between ``start`` and ``end``."""
    with open(path, "rb") as f:
        f.seek(start)
        bytes_left = end - start + 1
        while bytes_left > 0:
            read_size = min(chunk_size, bytes_left)
            data = f.read(read_size)
            if not data:
                break
            bytes_left -= len(data)
            yield data


@app.get("/media/{path:path}")
async def media(path: str, request: Request,
                controller: PipelineController = Depends(get_controller)) -> Response:
    """Serve locally stored blobs with HTTP range support."""
    blobs = controller.blobs
    if not isinstance(blobs, LocalBlobStore):
        raise NotFoundError("Media is served by the storage backend")
    file_path = blobs.local_path(path)
    if not file_path.is_file():
        raise NotFoundError("File not found")
    media_type = mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"
    file_size = os.path.getsize(file_path)
    range_header = request.headers.get("range")
    if range_header:
        # Parse Range header, e.g. "bytes=0-1023"
        match = re.match(r"bytes=(\d*)-(\d*)", range_header)
        if match:
            start_str, end_str = match.groups()
            start = int(start_str) if start_str else 0
            end = int(end_str) if end_str else file_size - 1
            if end >= file_size:
                end = file_size - 1
            if start > end:
                start, end = 0, file_size - 1
            headers = {
                "Content-Range": f"bytes {start}-{end}/{file_size}",
                "Accept-Ranges": "bytes",
                "Content-Length": str(end - start + 1),
                "Content-Type": media_type,
            }
            return StreamingResponse(iter_file(str(file_path), start, end), status_code=206, headers=headers)
    return StreamingResponse(iter_file(str(file_path), 0, file_size - 1), media_type=media_type,
                             headers={"Content-Length": str(file_size), "Accept-Ranges": "bytes"})
