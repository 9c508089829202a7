"""Request and response models for the HTTP API.

Rows come out of :mod:`pagecast.db` as plain dicts; the ``from_row``
constructors turn them into the views clients see. A book's
``processing_status`` and ``processing_progress`` are derived from its
chunk rows on every read.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class BookCreate(BaseModel):
    title: str = Field(..., description="Book title")
    author: Optional[str] = Field(None, description="Author name")
    description: Optional[str] = Field(None, description="Short description")
    language: str = Field("hindi", description="Language of the text, used to pick the OCR model")
    is_public: bool = Field(True, description="Whether anyone may list and play the book")

    @field_validator("title", "language")
    @classmethod
    def _required(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("author", "description")
    @classmethod
    def _optional(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class ChunkView(BaseModel):
    chunk_number: int
    status: str
    stage: Optional[str] = None
    first_page: Optional[int] = None
    last_page: Optional[int] = None
    text_content: Optional[str] = None
    audio_url: Optional[str] = None
    duration_seconds: Optional[int] = None
    error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ChunkView":
        return cls(**{name: row.get(name) for name in cls.model_fields})


def processing_summary(chunks: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Derive the aggregate status and percentage of a book from its chunks."""
    if not chunks:
        return {"processing_status": "uploaded", "processing_progress": 0}
    statuses = [chunk["status"] for chunk in chunks]
    completed = statuses.count("completed")
    if any(status in ("pending", "processing") for status in statuses):
        status = "processing"
    elif "failed" in statuses:
        status = "failed"
    else:
        status = "completed"
    return {
        "processing_status": status,
        "processing_progress": int(round(100 * completed / len(statuses))),
    }


class BookView(BaseModel):
    id: str
    title: str
    author: Optional[str] = None
    description: Optional[str] = None
    language: str
    is_public: bool
    user_id: str
    cover_url: Optional[str] = None
    source_url: Optional[str] = None
    total_pages: Optional[int] = None
    likes_count: int = 0
    processing_status: str = "uploaded"
    processing_progress: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any], chunks: List[Dict[str, Any]]) -> "BookView":
        data = {name: row.get(name) for name in cls.model_fields if name in row}
        data["likes_count"] = row.get("likes_count") or 0
        data.update(processing_summary(chunks))
        return cls(**data)


class BookCreated(BaseModel):
    book_id: str
    chunk_number: int = 1


class NextChunkRequest(BaseModel):
    known_last_chunk_number: int = Field(..., ge=1)


class NextChunkResult(BaseModel):
    book_id: str
    chunk_number: Optional[int] = None
    created: bool = False


class VisibilityUpdate(BaseModel):
    is_public: bool
