import pydantic
import pytest

from pagecast.config import Settings, load_settings


def test_defaults():
    settings = Settings()
    assert settings.pages_per_chunk == 2
    assert settings.tts_provider == "silent"
    assert settings.blob_backend == "local"


def test_load_settings_reads_environment(monkeypatch):
    monkeypatch.setenv("PAGECAST_PAGES_PER_CHUNK", "5")
    monkeypatch.setenv("PAGECAST_LOOKAHEAD", "3")
    monkeypatch.setenv("OCR_API_KEY", "k")
    monkeypatch.setenv("PAGECAST_PUBLIC_BASE_URL", "")
    settings = load_settings()
    assert settings.pages_per_chunk == 5
    assert settings.lookahead == 3
    assert settings.ocr_api_key == "k"
    assert settings.public_base_url == "http://localhost:8000"


def test_invalid_values_are_rejected(monkeypatch):
    monkeypatch.setenv("PAGECAST_PAGES_PER_CHUNK", "0")
    with pytest.raises(pydantic.ValidationError):
        load_settings()
