import asyncio
import io
from typing import Callable, Dict, List, Optional

import pytest
from pypdf import PdfWriter

from pagecast import db
from pagecast.auth import Principal
from pagecast.blobstore import LocalBlobStore
from pagecast.config import Settings
from pagecast.errors import ExternalServiceError
from pagecast.pipeline import PipelineController
from pagecast.schemas import BookCreate
from pagecast.tts import SpeechAudio, estimate_duration

BASE_URL = "http://testserver"


def make_pdf(pages: int = 1) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=200, height=200)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


class FakeOCR:
    """Scripted OCR engine: returns ``texts[page]`` or a default per page."""

    name = "fake-ocr"

    def __init__(self, texts: Optional[Dict[int, str]] = None, default: str = "पृष्ठ {page}",
                 failures: Optional[Dict[int, str]] = None) -> None:
        self.texts = texts or {}
        self.default = default
        self.failures = failures or {}
        self.calls: List[int] = []
        self.before: Optional[Callable] = None

    async def extract(self, page) -> str:
        self.calls.append(page.page_number)
        if self.before is not None:
            hook, self.before = self.before, None
            await hook()
        if page.page_number in self.failures:
            raise ExternalServiceError(self.failures[page.page_number], service="ocr")
        return self.texts.get(page.page_number, self.default.format(page=page.page_number))


class FakeSpeech:
    name = "fake-tts"

    def __init__(self, fail: Optional[str] = None) -> None:
        self.fail = fail
        self.calls: List[str] = []

    async def synthesize(self, text: str) -> SpeechAudio:
        self.calls.append(text)
        if self.fail:
            raise ExternalServiceError(self.fail, service="tts")
        return SpeechAudio(b"ID3" + text.encode("utf-8"), estimate_duration(text))


@pytest.fixture(autouse=True)
def database(tmp_path, monkeypatch):
    path = str(tmp_path / "pagecast.db")
    monkeypatch.setenv("PAGECAST_DB", path)
    monkeypatch.setenv("PAGECAST_DATA_DIR", str(tmp_path / "startup-blobs"))
    monkeypatch.setenv("PAGECAST_OCR_PROVIDER", "pdftext")
    monkeypatch.setattr(db, "DB_PATH", path)
    db.init_db()
    return path


@pytest.fixture
def blobs(tmp_path):
    return LocalBlobStore(str(tmp_path / "blobs"), BASE_URL)


@pytest.fixture
def ocr():
    return FakeOCR()


@pytest.fixture
def speech():
    return FakeSpeech()


@pytest.fixture
def settings():
    return Settings(pages_per_chunk=2, lookahead=2, public_base_url=BASE_URL)


@pytest.fixture
def controller(blobs, ocr, speech, settings):
    return PipelineController(blobs, ocr, speech, settings)


@pytest.fixture
def owner():
    return Principal("user-1", verified=True)


@pytest.fixture
def stranger():
    return Principal("user-2", verified=True)


@pytest.fixture
def admin():
    return Principal("root", role="admin")


@pytest.fixture
def metadata():
    return BookCreate(title="गोदान", author="प्रेमचंद", description="A novel", language="hindi")


@pytest.fixture
def new_book(controller, owner, metadata):
    """Create a book without starting its pipeline and return its id."""

    def _create(pages: int = 1, is_public: bool = True) -> str:
        meta = metadata.model_copy(update={"is_public": is_public})
        pdf = (make_pdf(pages), "book.pdf", "application/pdf")
        return asyncio.run(controller.create_book(owner, meta, pdf, start=False))

    return _create
