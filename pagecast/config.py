"""Configuration loader for the pagecast service.

Settings are read from environment variables, optionally seeded from a
``.env`` file in the working directory. Vendor credentials keep their
usual names (``OCR_API_KEY``, ``OPENAI_API_KEY``, ``SUPABASE_URL``...);
everything else is prefixed with ``PAGECAST_``.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class Settings(BaseModel):
    """Root application configuration."""

    db_path: str = "./data/pagecast.db"
    data_dir: str = "./data/blobs"
    public_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    # Blob storage
    blob_backend: str = "local"
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    books_bucket: str = "books"

    # OCR
    ocr_provider: str = "ocrspace"
    ocr_api_key: Optional[str] = None
    ocr_language: str = "hin"

    # Speech synthesis
    tts_provider: str = "silent"
    openai_api_key: Optional[str] = None
    openai_voice: str = "alloy"
    openai_model: str = "tts-1"
    tts_max_chars: int = Field(3200, gt=0)

    # Pipeline
    pages_per_chunk: int = Field(2, gt=0)
    lookahead: int = Field(2, ge=0)
    http_timeout: float = 60.0
    http_retries: int = Field(3, ge=1)


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.environ.get(name)
    return value if value not in (None, "") else default


def load_settings() -> Settings:
    """Build a :class:`Settings` instance from the environment."""
    load_dotenv()
    values = {
        "db_path": _env("PAGECAST_DB", _env("PAGECAST_DB_PATH")),
        "data_dir": _env("PAGECAST_DATA_DIR"),
        "public_base_url": _env("PAGECAST_PUBLIC_BASE_URL"),
        "log_level": _env("PAGECAST_LOG_LEVEL"),
        "blob_backend": _env("PAGECAST_BLOB_BACKEND"),
        "supabase_url": _env("SUPABASE_URL"),
        "supabase_key": _env("SUPABASE_SERVICE_ROLE_KEY"),
        "books_bucket": _env("PAGECAST_BOOKS_BUCKET"),
        "ocr_provider": _env("PAGECAST_OCR_PROVIDER"),
        "ocr_api_key": _env("OCR_API_KEY"),
        "ocr_language": _env("PAGECAST_OCR_LANGUAGE"),
        "tts_provider": _env("PAGECAST_TTS_PROVIDER"),
        "openai_api_key": _env("OPENAI_API_KEY"),
        "openai_voice": _env("OPENAI_TTS_VOICE"),
        "openai_model": _env("OPENAI_TTS_MODEL"),
        "tts_max_chars": _env("PAGECAST_TTS_MAX_CHARS"),
        "pages_per_chunk": _env("PAGECAST_PAGES_PER_CHUNK"),
        "lookahead": _env("PAGECAST_LOOKAHEAD"),
        "http_timeout": _env("PAGECAST_HTTP_TIMEOUT"),
        "http_retries": _env("PAGECAST_HTTP_RETRIES"),
    }
    return Settings(**{key: value for key, value in values.items() if value is not None})


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    logging.getLogger("httpx").setLevel(logging.WARNING)
