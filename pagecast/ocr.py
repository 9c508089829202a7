"""OCR adapters.

An OCR provider has a ``name`` attribute and an async ``extract`` method
that takes a :class:`~pagecast.slicing.PageSlice` and returns the text of
that page, or an empty string for a blank page. Failures are raised as
:class:`ExternalServiceError`; the pipeline controller turns them into a
``failed`` chunk.

Two providers are available:

* :class:`OCRSpaceProvider` calls the OCR.space API. When the page has a
  public URL the ``parse/imageurl`` endpoint is used, otherwise the page
  PDF is uploaded to ``parse/image``. Transient HTTP failures are retried
  with exponential backoff.

* :class:`PdfTextProvider` reads the embedded text layer with ``pypdf``.
  It needs no network access, which makes it handy for born-digital PDFs
  and local development.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from .errors import ExternalServiceError, ValidationError
from .slicing import PageSlice, page_text

logger = logging.getLogger(__name__)

OCR_SPACE_URL = "https://api.ocr.space"

# Book language names as entered on upload, mapped to OCR.space codes.
LANGUAGE_CODES = {
    "hindi": "hin",
    "english": "eng",
    "marathi": "mar",
    "nepali": "nep",
    "bengali": "ben",
    "tamil": "tam",
    "telugu": "tel",
    "urdu": "urd",
}


class OCRProvider(Protocol):
    name: str

    async def extract(self, page: PageSlice) -> str:
        ...


def _error_message(data: Dict[str, Any]) -> str:
    message = data.get("ErrorMessage") or data.get("ErrorDetails") or "OCR processing failed"
    if isinstance(message, list):
        message = "; ".join(str(part) for part in message)
    return str(message)


class OCRSpaceProvider:
    """OCR provider backed by the OCR.space REST API."""

    name = "ocrspace"

    def __init__(self, api_key: str, language: str = "hin", engine: int = 2,
                 timeout: float = 60.0, max_retries: int = 3, backoff: float = 1.0,
                 base_url: str = OCR_SPACE_URL,
                 transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.api_key = api_key
        self.language = language
        self.engine = engine
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff = backoff
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    def _language_for(self, page: PageSlice) -> str:
        if page.language:
            return LANGUAGE_CODES.get(page.language.lower(), self.language)
        return self.language

    async def _request(self, client: httpx.AsyncClient, page: PageSlice) -> httpx.Response:
        params = {
            "apikey": self.api_key,
            "isTable": "false",
            "OCREngine": str(self.engine),
            "language": self._language_for(page),
        }
        if page.url:
            return await client.get(f"{self.base_url}/parse/imageurl",
                                    params={**params, "url": page.url})
        return await client.post(
            f"{self.base_url}/parse/image",
            data={**params, "filetype": "PDF"},
            files={"file": (f"page_{page.page_number}.pdf", page.data, "application/pdf")},
        )

    async def extract(self, page: PageSlice) -> str:
        last_error: Optional[Exception] = None
        data: Dict[str, Any] = {}
        for attempt in range(self.max_retries):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    response = await self._request(client, page)
                if response.status_code >= 500:
                    raise httpx.HTTPStatusError(
                        f"HTTP {response.status_code}", request=response.request, response=response
                    )
                response.raise_for_status()
                data = response.json()
                break
            except httpx.HTTPStatusError as exc:
                last_error = exc
                if exc.response.status_code < 500:
                    break
            except (httpx.TransportError, ValueError) as exc:
                last_error = exc
            logger.warning("OCR request for page %s failed (attempt %d/%d): %s",
                           page.page_number, attempt + 1, self.max_retries, last_error)
            if attempt + 1 < self.max_retries:
                await asyncio.sleep(self.backoff * (2 ** attempt))
        if not data:
            raise ExternalServiceError(f"OCR request failed: {last_error}", service="ocr")

        results = data.get("ParsedResults") or []
        if data.get("IsErroredOnProcessing") or not results:
            raise ExternalServiceError(_error_message(data), service="ocr")
        return "\n".join((result.get("ParsedText") or "").strip() for result in results).strip()


class PdfTextProvider:
    """Read the text layer embedded in the PDF instead of running OCR."""

    name = "pdftext"

    async def extract(self, page: PageSlice) -> str:
        try:
            return await asyncio.to_thread(page_text, page.data)
        except ValidationError as exc:
            raise ExternalServiceError(f"Could not read page {page.page_number}: {exc.message}",
                                       service="ocr") from exc
