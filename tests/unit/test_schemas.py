import pydantic
import pytest

from pagecast.schemas import BookCreate, BookView, processing_summary


def _chunks(*statuses):
    return [{"chunk_number": n, "status": s} for n, s in enumerate(statuses, start=1)]


def test_summary_without_chunks():
    assert processing_summary([]) == {"processing_status": "uploaded", "processing_progress": 0}


def test_summary_in_flight_wins_over_failed():
    summary = processing_summary(_chunks("completed", "failed", "processing"))
    assert summary == {"processing_status": "processing", "processing_progress": 33}


def test_summary_failed_and_completed():
    assert processing_summary(_chunks("completed", "failed"))["processing_status"] == "failed"
    assert processing_summary(_chunks("completed", "completed")) == {
        "processing_status": "completed",
        "processing_progress": 100,
    }


def test_book_create_strips_and_requires_title():
    book = BookCreate(title="  गोदान ", author=" ", description=None)
    assert book.title == "गोदान"
    assert book.author is None
    assert book.language == "hindi"
    with pytest.raises(pydantic.ValidationError):
        BookCreate(title="   ")


def test_book_view_from_row():
    row = {"id": "b1", "title": "T", "language": "hindi", "is_public": True,
           "user_id": "u1", "likes_count": None, "source_path": "u1/b1/book.pdf"}
    view = BookView.from_row(row, _chunks("completed", "pending"))
    assert view.likes_count == 0
    assert view.processing_status == "processing"
    assert view.processing_progress == 50
    assert "source_path" not in view.model_dump()
