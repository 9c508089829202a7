"""A listening session over the ready chunks of one book.

The session keeps the ordered list of playable chunks (``completed`` with
an audio URL; failed chunks are skipped), the current position and the
play/pause state. When a chunk finishes it moves to the next one and keeps
playing. Whenever the position comes within ``lookahead`` chunks of the
end of what is ready it asks the controller for the next chunk in the
background, so playback of ready chunks never waits on the pipeline.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from .auth import Principal
from .errors import PagecastError
from .notifier import Subscription, broker

logger = logging.getLogger(__name__)


class PlaybackSession:

    def __init__(self, controller: Any, book_id: str, principal: Optional[Principal] = None,
                 lookahead: Optional[int] = None) -> None:
        self.controller = controller
        self.book_id = book_id
        self.principal = principal
        self.lookahead = controller.settings.lookahead if lookahead is None else lookahead
        self.chunks: List[Dict[str, Any]] = []
        self.index = 0
        self.playing = False
        self.stopped = False
        self.last_known_chunk_number = 0
        self.in_flight = False
        self._request: Optional[asyncio.Task] = None
        self._subscription: Optional[Subscription] = None
        self._watcher: Optional[asyncio.Task] = None

    @property
    def current(self) -> Optional[Dict[str, Any]]:
        if 0 <= self.index < len(self.chunks):
            return self.chunks[self.index]
        return None

    @property
    def waiting(self) -> bool:
        """True when playback ran out of ready chunks but more are on the way."""
        return self.stopped and self.in_flight

    def refresh(self) -> List[Dict[str, Any]]:
        """Reload the chunk list, keeping the position on the same chunk."""
        rows = self.controller.get_chunks(self.principal, self.book_id)
        current = self.current
        self.chunks = [row for row in rows if row["status"] == "completed" and row.get("audio_url")]
        self.last_known_chunk_number = rows[-1]["chunk_number"] if rows else 0
        self.in_flight = any(row["status"] in ("pending", "processing") for row in rows)
        if current is not None:
            for position, chunk in enumerate(self.chunks):
                if chunk["chunk_number"] == current["chunk_number"]:
                    self.index = position
                    break
        if self.stopped and self.index + 1 < len(self.chunks):
            # a chunk became ready while we were waiting at the end
            self.stopped = False
            self._advance()
        return self.chunks

    def play(self) -> bool:
        if not self.chunks:
            return False
        self.playing = True
        self.stopped = False
        self._maybe_request_more()
        return True

    def pause(self) -> None:
        self.playing = False

    def seek(self, index: int) -> Optional[Dict[str, Any]]:
        if not 0 <= index < len(self.chunks):
            raise IndexError(f"No playable chunk at position {index}")
        self.index = index
        self._maybe_request_more()
        return self.current

    def previous(self) -> Optional[Dict[str, Any]]:
        if self.index > 0:
            self.index -= 1
        return self.current

    def _advance(self) -> Dict[str, Any]:
        self.index += 1
        self.playing = True
        self._maybe_request_more()
        return self.chunks[self.index]

    def on_chunk_ended(self) -> Optional[Dict[str, Any]]:
        """Move to the next ready chunk and keep playing.

        Returns the new current chunk, or None when nothing is left to
        play. Running out of chunks is not an error: playback simply stops
        (and resumes on :meth:`refresh` if a chunk in flight completes).
        """
        if self.index + 1 < len(self.chunks):
            return self._advance()
        self._maybe_request_more()
        self.playing = False
        self.stopped = True
        return None

    def _maybe_request_more(self) -> None:
        if not self.chunks or self.last_known_chunk_number < 1:
            return
        if self.index < len(self.chunks) - self.lookahead:
            return
        if self._request is not None and not self._request.done():
            return
        self._request = asyncio.create_task(self._request_next(self.last_known_chunk_number))

    async def _request_next(self, known_last: int) -> Optional[int]:
        try:
            number, created = await self.controller.request_next_chunk(
                self.book_id, known_last, principal=self.principal
            )
        except PagecastError as exc:
            logger.warning("Could not request the chunk after %d of book %s: %s",
                           known_last, self.book_id, exc.message)
            return None
        if created:
            logger.debug("Playback of book %s requested chunk %d", self.book_id, number)
        return number

    async def watch(self) -> None:
        """Refresh whenever a chunk of this book changes, until :meth:`close`."""
        if self._subscription is not None:
            return
        self._subscription = broker.subscribe([self.book_id])
        self._watcher = asyncio.create_task(self._watch_loop(self._subscription))

    async def _watch_loop(self, subscription: Subscription) -> None:
        async for event in subscription:
            if event.kind == "delete":
                self.playing = False
                self.stopped = True
                self.in_flight = False
                return
            try:
                self.refresh()
            except PagecastError as exc:
                logger.warning("Stopped watching book %s: %s", self.book_id, exc.message)
                return

    async def close(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._watcher is not None:
            self._watcher.cancel()
            try:
                await self._watcher
            except asyncio.CancelledError:
                pass
            self._watcher = None
        if self._request is not None:
            await asyncio.gather(self._request, return_exceptions=True)
            self._request = None

    async def __aenter__(self) -> "PlaybackSession":
        self.refresh()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
