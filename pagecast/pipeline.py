"""The book ingestion pipeline controller.

Every chunk of a book moves through a small state machine::

    pending -> processing (stage "ocr") -> processing (stage "synthesis") -> completed
                     \\______________________________\\__________________-> failed

The controller is the only writer of chunk rows. It OCRs every page of
the chunk's page range in order, stores the text, synthesizes speech,
stores the audio URL and marks the chunk ``completed``. OCR, speech and
storage failures are caught here and recorded as a ``failed`` chunk with
the error message; nothing is retried automatically.

New chunks are materialized on demand. A book starts with chunk 1 and
listeners call :meth:`PipelineController.request_next_chunk` when they get
close to the end of what is ready. The call is idempotent: the unique
``(book_id, chunk_number)`` constraint in the chunk store decides which of
two racing callers creates the chunk.

Within a chunk OCR always completes before synthesis starts. Across
chunks only one chunk per book is in flight: the next chunk is refused
while the last one is still being processed, and :meth:`regenerate`
reprocesses chunks one at a time in ascending order.

"In flight" means owned by a task of this controller, not just a
non-terminal row. A chunk left pending or processing by a lost task
(a restart, a cancelled request) is picked up again by the next
:meth:`~PipelineController.request_next_chunk` call, and
:meth:`~PipelineController.recover_interrupted` fails such chunks at
startup so that :meth:`~PipelineController.regenerate` can redo them.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Coroutine, Dict, List, Optional, Set, Tuple

from . import db, slicing
from .auth import (
    CREATE_BOOK,
    DELETE_BOOK,
    LIKE,
    READ,
    REGENERATE,
    REQUEST_NEXT_CHUNK,
    SET_VISIBILITY,
    Decision,
    Principal,
    authorize,
)
from .blobstore import BlobStore, sanitize_file_name
from .config import Settings
from .errors import (
    ConflictError,
    ExternalServiceError,
    InFlightError,
    NotFoundError,
    PagecastError,
    ValidationError,
)
from .notifier import ProgressStream
from .ocr import OCRProvider
from .schemas import BookCreate, BookView
from .slicing import PageSlice
from .tts import SpeechProvider, synthesize_text

logger = logging.getLogger(__name__)

# (data, filename, content type)
Upload = Tuple[bytes, str, str]

INTERRUPTED = "Processing interrupted"


class PipelineController:
    """Drive chunks of books through OCR and speech synthesis."""

    def __init__(self, blobs: BlobStore, ocr: OCRProvider, speech: SpeechProvider,
                 settings: Optional[Settings] = None) -> None:
        self.blobs = blobs
        self.ocr = ocr
        self.speech = speech
        self.settings = settings or Settings()
        # books deleted while work may still be in flight
        self._stopped: Set[str] = set()
        # (book_id, chunk_number) pairs currently being processed
        self._active: Set[Tuple[str, int]] = set()
        # pairs handed to a background task that has not started them yet
        self._queued: Set[Tuple[str, int]] = set()
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # helpers

    def _require_book(self, book_id: str) -> Dict[str, Any]:
        book = db.get_book(book_id)
        if not book:
            raise NotFoundError(f"Book {book_id} not found")
        return book

    def _write_chunk(self, book_id: str, chunk_number: int, **fields: Any) -> bool:
        """Update a chunk, dropping the write if its book has been deleted."""
        try:
            db.update_chunk(book_id, chunk_number, **fields)
            return True
        except NotFoundError:
            if book_id in self._stopped or db.get_book(book_id) is None:
                logger.debug("Dropping write to chunk %d of deleted book %s", chunk_number, book_id)
                return False
            raise

    def _fail(self, book_id: str, chunk_number: int, message: str) -> Optional[str]:
        if self._write_chunk(book_id, chunk_number, status="failed", stage=None, error=message):
            return "failed"
        return None

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Run ``coro`` in the background, keeping a reference until it ends."""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, NotFoundError):
            logger.debug("Background task ended early: %s", exc.message)
        elif exc is not None:
            logger.error("Background task failed", exc_info=exc)

    def schedule(self, book_id: str, chunk_number: int) -> asyncio.Task:
        """Process a chunk in the background."""
        key = (book_id, chunk_number)
        self._queued.add(key)
        return self.spawn(self._run_queued([key]))

    async def _run_queued(self, keys: List[Tuple[str, int]]) -> None:
        """Process queued chunks one at a time, in the given order."""
        try:
            for key in keys:
                book_id, chunk_number = key
                if book_id in self._stopped:
                    return
                try:
                    await self.process_chunk(book_id, chunk_number)
                except NotFoundError:
                    logger.debug("Book %s disappeared before chunk %d was processed",
                                 book_id, chunk_number)
                    return
                finally:
                    self._queued.discard(key)
        finally:
            self._queued.difference_update(keys)

    def is_tracked(self, book_id: str, chunk_number: int) -> bool:
        """True while this controller owns work for the chunk."""
        key = (book_id, chunk_number)
        return key in self._active or key in self._queued

    async def drain(self) -> None:
        """Wait for every background task started by the controller."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def book_view(self, book: Dict[str, Any]) -> Dict[str, Any]:
        return BookView.from_row(book, db.get_chunks(book["id"])).model_dump()

    # ------------------------------------------------------------------
    # book lifecycle

    async def create_book(self, principal: Optional[Principal], metadata: BookCreate,
                          pdf: Upload, cover: Optional[Upload] = None,
                          progress: Optional[ProgressStream] = None,
                          start: bool = True, decision: Optional[Decision] = None) -> str:
        """Store the PDF, create the book with chunk 1 and start processing.

        Nothing is written if validation or authorization fails. A failed
        cover upload is logged and the book is created without a cover.
        Pass ``decision`` when the caller already authorized the upload.
        """
        if decision is None:
            decision = authorize(principal, CREATE_BOOK)
        decision.enforce()
        pdf_data, pdf_name, _ = pdf
        if not pdf_data:
            raise ValidationError("Please upload a PDF file")
        total_pages = await asyncio.to_thread(slicing.count_pages, pdf_data)
        first_range = slicing.next_page_range(0, total_pages, self.settings.pages_per_chunk)

        book_id = str(uuid.uuid4())
        prefix = f"{principal.id}/{book_id}"
        stamp = int(time.time() * 1000)
        if progress:
            progress.status("Uploading PDF")
        source_name = sanitize_file_name(f"{stamp}_{pdf_name or 'book.pdf'}")
        source_path = f"{prefix}/{source_name}"
        source_url = await self.blobs.put(source_path, pdf_data, "application/pdf")

        cover_url = None
        if cover and cover[0]:
            cover_data, cover_name, cover_type = cover
            extension = (cover_name or "").rsplit(".", 1)[-1] if "." in (cover_name or "") else "jpg"
            cover_path = f"{prefix}/" + sanitize_file_name(f"cover_{stamp}.{extension}")
            try:
                cover_url = await self.blobs.put(cover_path, cover_data, cover_type or "image/jpeg")
            except ExternalServiceError as exc:
                logger.warning("Cover upload failed for book %s: %s", book_id, exc.message)

        db.create_book(
            {
                "id": book_id,
                "user_id": principal.id,
                "title": metadata.title,
                "author": metadata.author,
                "description": metadata.description,
                "language": metadata.language,
                "is_public": metadata.is_public,
                "cover_url": cover_url,
                "source_url": source_url,
                "source_path": source_path,
                "total_pages": total_pages,
            },
            {"first_page": first_range[0], "last_page": first_range[1]},
        )
        logger.info("Created book %s (%d pages) for user %s", book_id, total_pages, principal.id)
        if progress:
            progress.status("PDF uploaded, starting text extraction")
        if start:
            self.schedule(book_id, 1)
        return book_id

    async def upload_with_progress(self, principal: Optional[Principal], metadata: BookCreate,
                                   pdf: Upload, cover: Optional[Upload],
                                   progress: ProgressStream,
                                   decision: Optional[Decision] = None) -> Optional[str]:
        """Create a book and process chunk 1, reporting on ``progress``.

        Always finishes ``progress`` with exactly one ``completed`` or
        ``error`` event.
        """
        book_id: Optional[str] = None
        try:
            book_id = await self.create_book(principal, metadata, pdf, cover,
                                             progress=progress, start=False, decision=decision)
            status = await self.process_chunk(book_id, 1, progress=progress)
            if status == "completed":
                progress.completed(self.book_view(self._require_book(book_id)))
            else:
                chunk = db.get_chunk(book_id, 1) or {}
                progress.error(chunk.get("error") or "Processing stopped before completion")
        except PagecastError as exc:
            progress.error(exc.message)
        except Exception:
            logger.exception("Upload of %r failed", metadata.title)
            progress.error("Internal server error")
        finally:
            if not progress.finished:
                progress.error("Upload interrupted")
        return book_id

    async def delete_book(self, principal: Optional[Principal], book_id: str) -> None:
        """Delete a book, its chunks and likes, then clean up its blobs.

        Work already in flight for the book runs to completion but its
        writes are dropped.
        """
        book = self._require_book(book_id)
        authorize(principal, DELETE_BOOK, book).enforce()
        self._stopped.add(book_id)
        db.delete_book(book_id)
        logger.info("Deleted book %s", book_id)
        try:
            await self.blobs.delete_prefix(f"{book['user_id']}/{book_id}")
        except (PagecastError, OSError) as exc:
            logger.warning("Blob cleanup for book %s failed: %s", book_id, exc)

    def set_visibility(self, principal: Optional[Principal], book_id: str,
                       is_public: bool) -> Dict[str, Any]:
        book = self._require_book(book_id)
        authorize(principal, SET_VISIBILITY, book).enforce()
        db.update_book(book_id, is_public=is_public)
        logger.info("Book %s is now %s", book_id, "public" if is_public else "private")
        return self._require_book(book_id)

    def get_book(self, principal: Optional[Principal], book_id: str) -> Dict[str, Any]:
        book = self._require_book(book_id)
        authorize(principal, READ, book).enforce()
        return book

    def get_chunks(self, principal: Optional[Principal], book_id: str) -> List[Dict[str, Any]]:
        """Return the chunks of a readable book in chunk number order."""
        self.get_book(principal, book_id)
        return db.get_chunks(book_id)

    def like(self, principal: Optional[Principal], book_id: str, liked: bool = True) -> int:
        book = self._require_book(book_id)
        authorize(principal, LIKE, book).enforce()
        if liked:
            db.add_like(principal.id, book_id)
        else:
            db.remove_like(principal.id, book_id)
        return db.count_likes(book_id)

    # ------------------------------------------------------------------
    # chunk processing

    async def _extract_text(self, book: Dict[str, Any], chunk: Dict[str, Any],
                            progress: Optional[ProgressStream]) -> str:
        book_id = book["id"]
        first, last = chunk["first_page"], chunk["last_page"]
        source = await self.blobs.get(book["source_path"])
        pages = await asyncio.to_thread(slicing.extract_pages, source, first, last)
        count = len(pages)
        if progress:
            progress.emit("processing_started", chunk_number=chunk["chunk_number"],
                          total_pages=count, first_page=first, last_page=last,
                          message=f"Processing {count} pages with OCR")
        texts: List[str] = []
        for offset, page_data in enumerate(pages):
            page_number = first + offset
            url = None
            if self.blobs.public:
                url = await self.blobs.put(
                    f"{book['user_id']}/{book_id}/pages/page_{page_number}.pdf",
                    page_data, "application/pdf",
                )
            text = await self.ocr.extract(PageSlice(
                book_id=book_id,
                page_number=page_number,
                total_pages=book["total_pages"],
                data=page_data,
                url=url,
                language=book["language"],
            ))
            if text:
                texts.append(text)
            if progress:
                progress.emit("page_progress", current_page=offset + 1, total_pages=count,
                              page_number=page_number,
                              progress=int(100 * (offset + 1) / count),
                              message=f"Processing page {offset + 1} of {count}")
        text = "\n\n".join(texts).strip()
        if not text:
            raise ExternalServiceError("No text extracted from PDF", service="ocr")
        return text

    async def process_chunk(self, book_id: str, chunk_number: int,
                            progress: Optional[ProgressStream] = None) -> Optional[str]:
        """Run OCR then synthesis for one chunk.

        Returns the final status (``completed`` or ``failed``), or None when
        the work was skipped or its writes were dropped because the book
        was deleted.
        """
        key = (book_id, chunk_number)
        if key in self._active:
            logger.info("Chunk %d of book %s is already being processed", chunk_number, book_id)
            return None
        if book_id in self._stopped:
            return None
        book = self._require_book(book_id)
        chunk = db.get_chunk(book_id, chunk_number)
        if chunk is None:
            raise NotFoundError(f"Chunk {chunk_number} of book {book_id} not found")
        if chunk["status"] in db.TERMINAL_STATUSES:
            # only regenerate moves a chunk out of a terminal state
            logger.info("Chunk %d of book %s is already %s", chunk_number, book_id, chunk["status"])
            return chunk["status"]

        self._active.add(key)
        try:
            if not self._write_chunk(book_id, chunk_number, status="processing", stage="ocr", error=None):
                return None
            logger.info("Chunk %d of book %s: OCR of pages %s-%s", chunk_number, book_id,
                        chunk["first_page"], chunk["last_page"])
            try:
                text = await self._extract_text(book, chunk, progress)
                if not self._write_chunk(book_id, chunk_number, text_content=text, stage="synthesis"):
                    return None

                logger.info("Chunk %d of book %s: synthesizing %d characters",
                            chunk_number, book_id, len(text))
                if progress:
                    progress.emit("audio_generation_started", chunk_number=chunk_number,
                                  total_pages=book["total_pages"],
                                  message="Starting audio generation...")
                audio = await synthesize_text(self.speech, text, self.settings.tts_max_chars)
                if book_id in self._stopped:
                    logger.debug("Book %s deleted during synthesis, discarding audio", book_id)
                    return None
                # a fresh name per run so regenerated audio never reuses a cached URL
                audio_path = (f"{book['user_id']}/{book_id}/audio/"
                              f"chunk_{chunk_number}_{uuid.uuid4().hex[:12]}.{audio.extension}")
                audio_url = await self.blobs.put(audio_path, audio.data, audio.content_type)
                if not self._write_chunk(book_id, chunk_number, status="completed", stage=None,
                                         audio_url=audio_url, audio_path=audio_path,
                                         duration_seconds=audio.duration, error=None):
                    return None
            except ExternalServiceError as exc:
                logger.error("Chunk %d of book %s failed: %s", chunk_number, book_id, exc.message)
                return self._fail(book_id, chunk_number, exc.message)
            except Exception as exc:
                logger.exception("Unexpected error while processing chunk %d of book %s",
                                 chunk_number, book_id)
                return self._fail(book_id, chunk_number, str(exc) or exc.__class__.__name__)
        finally:
            self._active.discard(key)
        logger.info("Chunk %d of book %s completed", chunk_number, book_id)
        return "completed"

    async def request_next_chunk(self, book_id: str, known_last_chunk_number: int,
                                 principal: Optional[Principal] = None,
                                 wait: bool = False) -> Tuple[Optional[int], bool]:
        """Materialize the chunk after ``known_last_chunk_number`` if needed.

        Returns ``(chunk_number, created)``. The call is a no-op when the
        chunk already exists, when the last chunk is still in flight or
        when the document has no pages left; in the last two cases the
        chunk number is None.
        """
        book = self._require_book(book_id)
        authorize(principal, REQUEST_NEXT_CHUNK, book).enforce()
        if known_last_chunk_number < 1:
            raise ValidationError("Chunk numbers start at 1")
        if book_id in self._stopped:
            return None, False
        chunks = db.get_chunks(book_id)
        if not chunks:
            raise ValidationError(f"Book {book_id} has no chunks")
        last = chunks[-1]
        target = known_last_chunk_number + 1
        if target <= last["chunk_number"]:
            return target, False
        if target > last["chunk_number"] + 1:
            raise ValidationError(
                f"Chunk {known_last_chunk_number} of book {book_id} does not exist yet"
            )
        if last["status"] not in db.TERMINAL_STATUSES:
            if self.is_tracked(book_id, last["chunk_number"]):
                logger.debug("Chunk %d of book %s still in flight, not extending",
                             last["chunk_number"], book_id)
            else:
                # nothing is working on it, e.g. the process restarted mid-chunk
                logger.warning("Chunk %d of book %s was left %s, processing it again",
                               last["chunk_number"], book_id, last["status"])
                if wait:
                    await self.process_chunk(book_id, last["chunk_number"])
                else:
                    self.schedule(book_id, last["chunk_number"])
            return None, False
        page_range = slicing.next_page_range(last["last_page"] or 0, book["total_pages"] or 0,
                                             self.settings.pages_per_chunk)
        if page_range is None:
            logger.info("Book %s has no pages left after chunk %d", book_id, last["chunk_number"])
            return None, False
        try:
            db.insert_chunk(book_id, target, *page_range)
        except ConflictError:
            return target, False
        logger.info("Created chunk %d of book %s (pages %d-%d)", target, book_id, *page_range)
        if wait:
            await self.process_chunk(book_id, target)
        else:
            self.schedule(book_id, target)
        return target, True

    async def regenerate(self, principal: Optional[Principal], book_id: str,
                         wait: bool = False) -> List[int]:
        """Reset every chunk to ``processing`` and redo OCR and synthesis.

        Chunks are reprocessed one at a time in ascending order; each gets
        a new audio URL. Refused while this controller is still working on
        a chunk of the book. Chunks left pending or processing by a lost
        task are not busy and get reprocessed.
        """
        book = self._require_book(book_id)
        authorize(principal, REGENERATE, book).enforce()
        chunks = db.get_chunks(book_id)
        if not chunks:
            raise ValidationError(f"Book {book_id} has no chunks")
        busy = [c["chunk_number"] for c in chunks if self.is_tracked(book_id, c["chunk_number"])]
        if busy:
            raise InFlightError(f"Chunk {busy[0]} of book {book_id} is still being processed")
        numbers = [chunk["chunk_number"] for chunk in chunks]
        keys = [(book_id, number) for number in numbers]
        self._queued.update(keys)
        for number in numbers:
            self._write_chunk(book_id, number, status="processing", stage=None, error=None)
        logger.info("Regenerating %d chunks of book %s", len(numbers), book_id)
        if wait:
            await self._run_queued(keys)
        else:
            self.spawn(self._run_queued(keys))
        return numbers

    def recover_interrupted(self) -> List[Tuple[str, int]]:
        """Fail chunks left pending or processing by a previous process.

        Called at startup. Chunks this controller is working on are left
        alone. Recovered chunks can be reprocessed with :meth:`regenerate`.
        """
        recovered = []
        for chunk in db.get_unfinished_chunks():
            book_id, chunk_number = chunk["book_id"], chunk["chunk_number"]
            if self.is_tracked(book_id, chunk_number):
                continue
            logger.warning("Chunk %d of book %s was interrupted while %s",
                           chunk_number, book_id, chunk["status"])
            if self._fail(book_id, chunk_number, INTERRUPTED):
                recovered.append((book_id, chunk_number))
        return recovered
