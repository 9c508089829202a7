"""Text‑to‑speech adapters for the pagecast service.

A provider has a ``name`` attribute and an async ``synthesize`` method
that turns a piece of text into :class:`SpeechAudio`. Providers raise
:class:`ExternalServiceError` when the engine fails.

:class:`DummyTTSProvider` produces silent MP3 audio whose length follows
the amount of text. It fulfils the contract without any external service
and is the default for local development and tests.
:class:`OpenAITTSProvider` calls OpenAI's speech endpoint.

Engines limit how much text a single request may carry, so
:func:`synthesize_text` splits long chunk text with :func:`chunk_text`
and concatenates the resulting MP3 pieces.
"""

from __future__ import annotations

import base64
import math
import re
from dataclasses import dataclass
from typing import List, Optional, Protocol

import httpx

from .errors import ExternalServiceError


# Base64 encoded MP3 of approximately one second of silence.
# ``ffmpeg -f lavfi -i anullsrc=r=24000:cl=mono -t 1 -q:a 9 silence.mp3``
SILENT_MP3_BASE64 = (
    "SUQzBAAAAAAAI1RTU0UAAAAPAAADTGF2ZjU4Ljc2LjEwMAAAAAAAAAAAAAAA/+M4wAAAAAAAAAAAA"
    "EluZm8AAAAPAAAAAwAAAbAAqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqq1dXV1dXV1dXV1"
    "dXV1dXV1dXV1dXV1dXV1dXV1dXV1dXV//////////////////////////////AAAAAExhdmM1OC4xMwAA"
    "AAAAAAAAAAAAACQDkAAAAAAAAAGw9wrNaQAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"
    "AAAAAAAAAA/+MYxAAAAANIAAAAAExBTUUzLjEwMFVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVV"
    "VVVVVVVVVVVVVVVVVVVVVVVVVVVV/+MYxDsAAANIAAAAAFVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVV"
    "VVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVV/+MYxHYAAANIAAAAAFVV"
    "VVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVVV"
)
_padding = "=" * ((4 - (len(SILENT_MP3_BASE64) % 4)) % 4)
SILENT_MP3_BYTES: bytes = base64.b64decode(SILENT_MP3_BASE64 + _padding)

# Roughly 120 words per minute; only used to estimate durations.
CHARS_PER_SECOND = 15


@dataclass
class SpeechAudio:
    data: bytes
    duration: int
    content_type: str = "audio/mpeg"
    extension: str = "mp3"


class SpeechProvider(Protocol):
    name: str

    async def synthesize(self, text: str) -> SpeechAudio:
        ...


def estimate_duration(text: str) -> int:
    return max(1, math.ceil(len(text) / CHARS_PER_SECOND))


def chunk_text(text: str, max_chars: int = 3200) -> List[str]:
    """Split ``text`` into pieces not exceeding ``max_chars`` characters.

    The splitting tries to break on sentence boundaries: first on newlines,
    then after sentence terminators (including the Devanagari danda).
    Sentences longer than ``max_chars`` are cut at the character limit.
    """
    sentences: List[str] = []
    for paragraph in text.split("\n"):
        paragraph = paragraph.strip()
        if not paragraph:
            continue
        for sentence in re.split(r"(?<=[.!?।॥])\s+", paragraph):
            while len(sentence) > max_chars:
                sentences.append(sentence[:max_chars])
                sentence = sentence[max_chars:]
            if sentence:
                sentences.append(sentence)
    chunks: List[str] = []
    buf: List[str] = []
    current_len = 0
    for sentence in sentences:
        sent_len = len(sentence)
        if current_len + sent_len + 1 > max_chars and buf:
            chunks.append(" ".join(buf).strip())
            buf = [sentence]
            current_len = sent_len
        else:
            buf.append(sentence)
            current_len += sent_len + 1
    if buf:
        chunks.append(" ".join(buf).strip())
    return chunks


async def synthesize_text(provider: SpeechProvider, text: str, max_chars: int = 3200) -> SpeechAudio:
    """Synthesize arbitrarily long text by joining per-piece MP3 audio.

    MP3 streams can be joined at frame boundaries, so plain byte
    concatenation yields a playable file.
    """
    pieces = chunk_text(text, max_chars)
    if not pieces:
        raise ExternalServiceError("Nothing to synthesize", service="tts")
    audio = b""
    duration = 0
    content_type = "audio/mpeg"
    extension = "mp3"
    for piece in pieces:
        result = await provider.synthesize(piece)
        audio += result.data
        duration += result.duration
        content_type, extension = result.content_type, result.extension
    return SpeechAudio(audio, duration, content_type, extension)


class DummyTTSProvider:
    """A placeholder provider that returns silent MP3 audio.

    The duration is the number of characters divided by
    ``CHARS_PER_SECOND`` so that playback progress moves roughly in
    proportion to the amount of text.
    """

    name = "silent"

    async def synthesize(self, text: str) -> SpeechAudio:
        seconds = estimate_duration(text)
        return SpeechAudio(SILENT_MP3_BYTES * seconds, seconds)


class OpenAITTSProvider:
    """Text‑to‑speech provider using OpenAI's TTS API.

    Usage::

        provider = OpenAITTSProvider(api_key=os.environ["OPENAI_API_KEY"], voice="alloy")
        audio = await provider.synthesize("नमस्ते")

    Supported voices include ``alloy``, ``echo``, ``fable``, ``onyx``,
    ``nova`` and ``shimmer``. The duration is estimated heuristically as
    for the dummy provider.
    """

    name = "openai"
    url = "https://api.openai.com/v1/audio/speech"

    def __init__(self, api_key: str, voice: str = "alloy", model: str = "tts-1",
                 response_format: str = "mp3", speed: float = 1.0, timeout: float = 60.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.api_key = api_key
        self.voice = voice
        self.model = model
        self.response_format = response_format
        self.speed = speed
        self.timeout = timeout
        self._transport = transport

    async def synthesize(self, text: str) -> SpeechAudio:
        payload = {
            "model": self.model,
            "input": text,
            "voice": self.voice,
            "response_format": self.response_format,
            "speed": self.speed,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, headers=headers, json=payload)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ExternalServiceError(
                f"Speech synthesis failed with HTTP {exc.response.status_code}", service="tts"
            ) from exc
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"Speech synthesis request failed: {exc}", service="tts") from exc
        return SpeechAudio(
            response.content,
            estimate_duration(text),
            content_type=f"audio/{'mpeg' if self.response_format == 'mp3' else self.response_format}",
            extension=self.response_format,
        )
