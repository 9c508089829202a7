import asyncio

import pytest

from pagecast import db
from pagecast.errors import (
    AuthorizationError,
    InFlightError,
    NotFoundError,
    ValidationError,
)
from pagecast.notifier import ProgressStream
from pagecast.pipeline import INTERRUPTED, PipelineController
from pagecast.schemas import BookCreate
from pagecast.slicing import count_pages
from tests.conftest import BASE_URL, make_pdf


def _upload(controller, principal, metadata, pages=1):
    async def scenario():
        progress = ProgressStream()
        pdf = (make_pdf(pages), "My Book.pdf", "application/pdf")
        book_id = await controller.upload_with_progress(principal, metadata, pdf, None, progress)
        return book_id, progress

    return asyncio.run(scenario())


def test_upload_processes_first_chunk(controller, owner, metadata, ocr):
    ocr.texts = {1: "नमस्ते"}
    book_id, progress = _upload(controller, owner, metadata)

    chunk = db.get_chunk(book_id, 1)
    assert chunk["status"] == "completed"
    assert chunk["stage"] is None
    assert chunk["text_content"] == "नमस्ते"
    assert chunk["audio_url"].startswith(f"{BASE_URL}/media/user-1/{book_id}/audio/chunk_1_")
    assert chunk["duration_seconds"] >= 1

    types = [event.type for event in progress.events]
    assert types[-1] == "completed"
    assert types.count("completed") + types.count("error") == 1
    assert types.index("processing_started") < types.index("page_progress") < types.index("audio_generation_started")
    assert progress.events[-1].data["book"]["processing_status"] == "completed"


def test_upload_stores_source_pdf(controller, owner, metadata, blobs):
    book_id, _ = _upload(controller, owner, metadata, pages=2)
    book = db.get_book(book_id)
    assert book["total_pages"] == 2
    assert book["source_path"].startswith(f"user-1/{book_id}/")
    assert book["source_path"].endswith("_My_Book.pdf")
    assert count_pages(asyncio.run(blobs.get(book["source_path"]))) == 2


def test_ocr_failure_fails_chunk(controller, owner, metadata, ocr, speech):
    ocr.failures = {1: "no text found"}
    book_id, progress = _upload(controller, owner, metadata)

    chunk = db.get_chunk(book_id, 1)
    assert chunk["status"] == "failed"
    assert chunk["error"] == "no text found"
    assert chunk["text_content"] is None
    assert chunk["audio_url"] is None
    assert speech.calls == []
    assert progress.events[-1].type == "error"
    assert progress.events[-1].data == {"error": "no text found"}


def test_blank_chunk_fails_with_no_text(controller, owner, metadata, ocr):
    ocr.default = ""
    book_id, progress = _upload(controller, owner, metadata, pages=2)
    assert db.get_chunk(book_id, 1)["error"] == "No text extracted from PDF"
    assert progress.events[-1].data == {"error": "No text extracted from PDF"}


def test_blank_page_inside_chunk_is_skipped(controller, owner, metadata, ocr):
    ocr.texts = {1: ""}
    book_id, _ = _upload(controller, owner, metadata, pages=2)
    chunk = db.get_chunk(book_id, 1)
    assert chunk["status"] == "completed"
    assert chunk["text_content"] == "पृष्ठ 2"


def test_speech_failure_keeps_text(controller, owner, metadata, speech):
    speech.fail = "quota exceeded"
    book_id, _ = _upload(controller, owner, metadata)
    chunk = db.get_chunk(book_id, 1)
    assert chunk["status"] == "failed"
    assert chunk["error"] == "quota exceeded"
    assert chunk["text_content"] == "पृष्ठ 1"


def test_unverified_user_cannot_upload(controller, metadata):
    from pagecast.auth import Principal

    book_id, progress = _upload(controller, Principal("new"), metadata)
    assert book_id is None
    assert progress.events[-1].data == {"error": "Please verify your email before uploading books"}
    assert db.list_books() == []


def test_create_book_rejects_empty_pdf(controller, owner, metadata):
    with pytest.raises(ValidationError):
        asyncio.run(controller.create_book(owner, metadata, (b"", "a.pdf", "application/pdf")))
    with pytest.raises(ValidationError):
        asyncio.run(controller.create_book(owner, metadata, (b"junk", "a.pdf", "application/pdf")))
    assert db.list_books() == []


def test_create_book_slices_first_chunk(controller, owner, metadata, new_book):
    book_id = new_book(pages=5)
    chunk = db.get_chunk(book_id, 1)
    assert chunk["status"] == "pending"
    assert (chunk["first_page"], chunk["last_page"]) == (1, 2)


def test_completed_chunk_is_not_reprocessed(controller, new_book, ocr):
    book_id = new_book()
    assert asyncio.run(controller.process_chunk(book_id, 1)) == "completed"
    calls = list(ocr.calls)
    assert asyncio.run(controller.process_chunk(book_id, 1)) == "completed"
    assert ocr.calls == calls


def test_next_chunk_is_idempotent(controller, new_book, ocr):
    book_id = new_book(pages=5)

    async def scenario():
        await controller.process_chunk(book_id, 1)
        results = await asyncio.gather(
            controller.request_next_chunk(book_id, 1),
            controller.request_next_chunk(book_id, 1),
        )
        await controller.drain()
        return results

    results = asyncio.run(scenario())
    assert sorted(created for _, created in results) == [False, True]
    assert {number for number, _ in results} == {2}
    chunks = db.get_chunks(book_id)
    assert [c["chunk_number"] for c in chunks] == [1, 2]
    assert (chunks[1]["first_page"], chunks[1]["last_page"]) == (3, 4)
    assert chunks[1]["status"] == "completed"
    assert ocr.calls == [1, 2, 3, 4]


def test_next_chunk_waits_for_chunk_in_flight(controller, new_book):
    book_id = new_book(pages=5)

    async def scenario():
        await controller.process_chunk(book_id, 1)
        first = await controller.request_next_chunk(book_id, 1)
        second = await controller.request_next_chunk(book_id, 2)
        await controller.drain()
        return first, second

    first, second = asyncio.run(scenario())
    assert first == (2, True)
    assert second == (None, False)
    assert len(db.get_chunks(book_id)) == 2


def test_next_chunk_after_failed_chunk(controller, new_book, ocr):
    ocr.failures = {1: "no text found"}
    book_id = new_book(pages=3)
    assert asyncio.run(controller.process_chunk(book_id, 1)) == "failed"
    number, created = asyncio.run(controller.request_next_chunk(book_id, 1, wait=True))
    assert (number, created) == (2, True)
    assert db.get_chunk(book_id, 2)["status"] == "completed"


def test_next_chunk_end_of_document(controller, new_book):
    book_id = new_book(pages=2)
    asyncio.run(controller.process_chunk(book_id, 1))
    assert asyncio.run(controller.request_next_chunk(book_id, 1)) == (None, False)
    assert len(db.get_chunks(book_id)) == 1


def test_next_chunk_rejects_gaps(controller, new_book):
    book_id = new_book(pages=9)
    asyncio.run(controller.process_chunk(book_id, 1))
    with pytest.raises(ValidationError):
        asyncio.run(controller.request_next_chunk(book_id, 3))
    with pytest.raises(NotFoundError):
        asyncio.run(controller.request_next_chunk("missing", 1))


def test_private_book_next_chunk_needs_owner(controller, new_book, stranger, owner):
    book_id = new_book(pages=4, is_public=False)
    asyncio.run(controller.process_chunk(book_id, 1))
    with pytest.raises(AuthorizationError):
        asyncio.run(controller.request_next_chunk(book_id, 1, principal=stranger))
    assert asyncio.run(controller.request_next_chunk(book_id, 1, principal=owner, wait=True)) == (2, True)


def test_regenerate_produces_new_audio_in_order(controller, new_book, owner, ocr, speech):
    book_id = new_book(pages=6)
    asyncio.run(controller.process_chunk(book_id, 1))
    asyncio.run(controller.request_next_chunk(book_id, 1, wait=True))
    asyncio.run(controller.request_next_chunk(book_id, 2, wait=True))
    before = {c["chunk_number"]: c["audio_url"] for c in db.get_chunks(book_id)}
    ocr.calls.clear()
    speech.calls.clear()

    async def scenario():
        numbers = await controller.regenerate(owner, book_id)
        reset = [c["status"] for c in db.get_chunks(book_id)]
        await controller.drain()
        return numbers, reset

    numbers, reset = asyncio.run(scenario())

    assert numbers == [1, 2, 3]
    assert reset == ["processing"] * 3
    after = db.get_chunks(book_id)
    assert all(c["status"] == "completed" for c in after)
    for chunk in after:
        assert chunk["audio_url"] != before[chunk["chunk_number"]]
    assert len({c["audio_url"] for c in after}) == 3
    assert ocr.calls == [1, 2, 3, 4, 5, 6]
    assert speech.calls == ["पृष्ठ 1 पृष्ठ 2", "पृष्ठ 3 पृष्ठ 4", "पृष्ठ 5 पृष्ठ 6"]


def test_regenerate_recovers_failed_chunk(controller, new_book, owner, ocr):
    ocr.failures = {1: "no text found"}
    book_id = new_book()
    asyncio.run(controller.process_chunk(book_id, 1))
    ocr.failures = {}
    asyncio.run(controller.regenerate(owner, book_id, wait=True))
    chunk = db.get_chunk(book_id, 1)
    assert chunk["status"] == "completed"
    assert chunk["error"] is None


def test_regenerate_refused_while_in_flight(controller, new_book, owner):
    book_id = new_book()

    async def scenario():
        controller.schedule(book_id, 1)
        with pytest.raises(InFlightError):
            await controller.regenerate(owner, book_id)
        await controller.drain()

    asyncio.run(scenario())
    assert db.get_chunk(book_id, 1)["status"] == "completed"


def test_regenerate_recovers_chunk_left_pending(new_book, owner, blobs, ocr, speech, settings):
    book_id = new_book(pages=2)
    fresh = PipelineController(blobs, ocr, speech, settings)

    assert asyncio.run(fresh.regenerate(owner, book_id, wait=True)) == [1]
    chunk = db.get_chunk(book_id, 1)
    assert chunk["status"] == "completed"
    assert chunk["text_content"] == "पृष्ठ 1 पृष्ठ 2"


def test_next_chunk_resumes_abandoned_last_chunk(controller, new_book, ocr):
    book_id = new_book(pages=3)
    db.update_chunk(book_id, 1, status="processing", stage="ocr")

    assert asyncio.run(controller.request_next_chunk(book_id, 1, wait=True)) == (None, False)
    assert db.get_chunk(book_id, 1)["status"] == "completed"
    assert ocr.calls == [1, 2]
    assert asyncio.run(controller.request_next_chunk(book_id, 1, wait=True)) == (2, True)


def test_recover_interrupted_fails_abandoned_chunks(new_book, owner, blobs, ocr, speech, settings):
    book_id = new_book(pages=2)
    db.update_chunk(book_id, 1, status="processing", stage="synthesis")
    fresh = PipelineController(blobs, ocr, speech, settings)

    assert fresh.recover_interrupted() == [(book_id, 1)]
    chunk = db.get_chunk(book_id, 1)
    assert (chunk["status"], chunk["stage"], chunk["error"]) == ("failed", None, INTERRUPTED)
    assert fresh.recover_interrupted() == []

    asyncio.run(fresh.regenerate(owner, book_id, wait=True))
    chunk = db.get_chunk(book_id, 1)
    assert chunk["status"] == "completed"
    assert chunk["error"] is None


def test_recover_interrupted_skips_tracked_chunks(controller, new_book):
    book_id = new_book()

    async def scenario():
        controller.schedule(book_id, 1)
        recovered = controller.recover_interrupted()
        await controller.drain()
        return recovered

    assert asyncio.run(scenario()) == []
    assert db.get_chunk(book_id, 1)["status"] == "completed"


def test_regenerate_requires_owner(controller, new_book, stranger, admin):
    book_id = new_book()
    asyncio.run(controller.process_chunk(book_id, 1))
    with pytest.raises(AuthorizationError):
        asyncio.run(controller.regenerate(stranger, book_id))
    assert asyncio.run(controller.regenerate(admin, book_id, wait=True)) == [1]


def test_delete_during_processing_drops_writes(controller, new_book, owner, ocr, blobs):
    book_id = new_book(pages=2)
    ocr.before = lambda: controller.delete_book(owner, book_id)

    result = asyncio.run(controller.process_chunk(book_id, 1))

    assert result is None
    assert db.get_book(book_id) is None
    assert db.get_chunks(book_id) == []
    assert not blobs.local_path(f"user-1/{book_id}").exists()
    assert asyncio.run(controller.process_chunk(book_id, 1)) is None


def test_delete_requires_owner(controller, new_book, stranger):
    book_id = new_book()
    with pytest.raises(AuthorizationError):
        asyncio.run(controller.delete_book(stranger, book_id))
    assert db.get_book(book_id) is not None


def test_visibility_and_likes(controller, new_book, owner, stranger):
    book_id = new_book()
    assert controller.like(stranger, book_id) == 1
    assert controller.like(stranger, book_id) == 1
    controller.set_visibility(owner, book_id, False)
    with pytest.raises(AuthorizationError):
        controller.get_chunks(stranger, book_id)
    with pytest.raises(AuthorizationError):
        controller.like(stranger, book_id, liked=False)
    assert controller.set_visibility(owner, book_id, True)["is_public"] is True
    assert controller.like(stranger, book_id, liked=False) == 0


def test_cover_upload_is_optional(controller, owner, blobs):
    metadata = BookCreate(title="With cover")
    pdf = (make_pdf(1), "book.pdf", "application/pdf")
    cover = (b"\x89PNG", "front page.png", "image/png")
    book_id = asyncio.run(controller.create_book(owner, metadata, pdf, cover, start=False))
    book = db.get_book(book_id)
    assert book["cover_url"].startswith(f"{BASE_URL}/media/user-1/{book_id}/cover_")
    assert book["cover_url"].endswith(".png")
