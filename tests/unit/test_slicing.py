import io

import pytest
from pypdf import PdfReader

from pagecast.errors import ValidationError
from pagecast.slicing import count_pages, extract_pages, next_page_range
from tests.conftest import make_pdf


def test_next_page_range_walks_document():
    assert next_page_range(0, 5, 2) == (1, 2)
    assert next_page_range(2, 5, 2) == (3, 4)
    assert next_page_range(4, 5, 2) == (5, 5)
    assert next_page_range(5, 5, 2) is None


def test_next_page_range_rejects_bad_size():
    with pytest.raises(ValueError):
        next_page_range(0, 5, 0)


def test_count_pages():
    assert count_pages(make_pdf(3)) == 3
    with pytest.raises(ValidationError):
        count_pages(b"not a pdf")


def test_extract_pages_returns_single_page_documents():
    pages = extract_pages(make_pdf(4), 2, 3)
    assert len(pages) == 2
    assert all(len(PdfReader(io.BytesIO(page)).pages) == 1 for page in pages)
    with pytest.raises(ValidationError):
        extract_pages(make_pdf(2), 2, 3)
