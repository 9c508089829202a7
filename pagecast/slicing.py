"""Split a source PDF into the page ranges that back each chunk.

Each chunk covers the ``pages_per_chunk`` pages that follow the last page
of the previous chunk (clamped to the document length), so successive
chunks always get disjoint slices in document order. Pages are numbered
from 1.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import List, Optional, Tuple

from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError

from .errors import ValidationError


@dataclass
class PageSlice:
    """One page of a source document, ready to be sent to an OCR engine."""

    book_id: str
    page_number: int
    total_pages: int
    data: bytes
    url: Optional[str] = None
    language: Optional[str] = None


def _reader(data: bytes) -> PdfReader:
    try:
        return PdfReader(io.BytesIO(data))
    except (PdfReadError, ValueError, OSError) as exc:
        raise ValidationError(f"Unreadable PDF: {exc}") from exc


def count_pages(data: bytes) -> int:
    """Return the number of pages of a PDF, rejecting empty documents."""
    total = len(_reader(data).pages)
    if total < 1:
        raise ValidationError("The PDF has no pages")
    return total


def next_page_range(previous_last_page: int, total_pages: int,
                    pages_per_chunk: int) -> Optional[Tuple[int, int]]:
    """Return the inclusive page range following ``previous_last_page``.

    Pass 0 for the first chunk. Returns None once the document is
    exhausted.
    """
    if pages_per_chunk < 1:
        raise ValueError("pages_per_chunk must be positive")
    first = previous_last_page + 1
    if first > total_pages:
        return None
    return first, min(first + pages_per_chunk - 1, total_pages)


def extract_pages(data: bytes, first_page: int, last_page: int) -> List[bytes]:
    """Cut pages ``first_page..last_page`` into standalone single page PDFs."""
    reader = _reader(data)
    total = len(reader.pages)
    if first_page < 1 or last_page > total or first_page > last_page:
        raise ValidationError(f"Page range {first_page}-{last_page} outside 1-{total}")
    pages: List[bytes] = []
    for index in range(first_page - 1, last_page):
        writer = PdfWriter()
        writer.add_page(reader.pages[index])
        buffer = io.BytesIO()
        writer.write(buffer)
        pages.append(buffer.getvalue())
    return pages


def page_text(data: bytes) -> str:
    """Return the embedded text layer of every page, joined by blank lines."""
    reader = _reader(data)
    return "\n\n".join((page.extract_text() or "").strip() for page in reader.pages).strip()
