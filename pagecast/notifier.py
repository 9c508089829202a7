"""Progress reporting for the ingestion pipeline.

Two views over the same controller activity are provided:

* :class:`ProgressStream` is bound to one upload request. It carries an
  ordered sequence of fine grained events (``status``,
  ``processing_started``, ``page_progress``, ``audio_generation_started``)
  and ends with exactly one terminal event, ``completed`` or ``error``.

* :class:`ChangeBroker` fans out row level change notifications from the
  chunk store. Consumers own a :class:`Subscription` scoped to a set of
  book ids (or every book) and close it when they are done. Notifications
  for the same book are coalesced while the subscriber is busy, so a
  subscription gives eventual visibility rather than an event log.

Both are rendered as server-sent events by :func:`format_sse`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, FrozenSet, Iterable, List, Optional

logger = logging.getLogger(__name__)

EVENT_TYPES = (
    "status",
    "processing_started",
    "page_progress",
    "audio_generation_started",
    "completed",
    "error",
)
TERMINAL_EVENTS = frozenset({"completed", "error"})


def format_sse(event_type: str, data: Dict[str, Any]) -> str:
    """Render one server-sent event frame."""
    payload = json.dumps(data, ensure_ascii=False, default=str)
    return f"event: {event_type}\ndata: {payload}\n\n"


@dataclass
class ProgressEvent:
    type: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_sse(self) -> str:
        return format_sse(self.type, self.data)


class ProgressStream:
    """Ordered progress events for a single upload.

    Events emitted after the terminal event are dropped, which guarantees
    that the terminal event is both unique and last.
    """

    def __init__(self) -> None:
        self.events: List[ProgressEvent] = []
        self.finished = False
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()

    def emit(self, event_type: str, **data: Any) -> bool:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown progress event {event_type!r}")
        if self.finished:
            logger.debug("Dropping %s event emitted after the terminal event", event_type)
            return False
        event = ProgressEvent(event_type, data)
        self.events.append(event)
        if event_type in TERMINAL_EVENTS:
            self.finished = True
        self._queue.put_nowait(event)
        return True

    def status(self, message: str) -> bool:
        return self.emit("status", message=message)

    def completed(self, book: Dict[str, Any]) -> bool:
        return self.emit("completed", book=book, total_pages=book.get("total_pages"))

    def error(self, message: str) -> bool:
        return self.emit("error", error=message)

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if event.type in TERMINAL_EVENTS:
                return

    async def sse(self) -> AsyncIterator[str]:
        async for event in self:
            yield event.to_sse()


@dataclass(frozen=True)
class ChangeEvent:
    """A committed write to the chunk store."""

    book_id: str
    kind: str
    chunk_number: Optional[int] = None


class Subscription:
    """Change notifications for a set of books, owned by one consumer.

    Use as an async context manager or call :meth:`close` explicitly. The
    subscription is bound to the event loop it was created on; the broker
    may publish from any thread.
    """

    def __init__(self, broker: "ChangeBroker", book_ids: Optional[FrozenSet[str]],
                 loop: asyncio.AbstractEventLoop) -> None:
        self.book_ids = book_ids
        self.closed = False
        self._broker = broker
        self._loop = loop
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._pending: Dict[str, ChangeEvent] = {}

    def matches(self, event: ChangeEvent) -> bool:
        return self.book_ids is None or event.book_id in self.book_ids

    def _deliver(self, event: ChangeEvent) -> None:
        if self.closed:
            return
        already_queued = event.book_id in self._pending
        self._pending[event.book_id] = event
        if not already_queued:
            self._queue.put_nowait(event.book_id)

    def notify(self, event: ChangeEvent) -> None:
        self._loop.call_soon_threadsafe(self._deliver, event)

    async def get(self) -> Optional[ChangeEvent]:
        """Wait for the next change, or return None once closed."""
        if self.closed:
            return None
        book_id = await self._queue.get()
        if book_id is None:
            return None
        return self._pending.pop(book_id, None)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        while True:
            event = await self.get()
            if event is None:
                if self.closed:
                    raise StopAsyncIteration
                continue
            return event

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._broker.unsubscribe(self)
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, None)
        except RuntimeError:
            # loop already closed
            pass

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()


class ChangeBroker:
    """Fan out chunk store writes to scoped subscriptions."""

    def __init__(self) -> None:
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, book_ids: Optional[Iterable[str]] = None) -> Subscription:
        """Create a subscription. Must be called from a running event loop."""
        scope = frozenset(book_ids) if book_ids else None
        subscription = Subscription(self, scope, asyncio.get_running_loop())
        with self._lock:
            self._subscriptions.append(subscription)
        logger.debug("Subscribed to changes for %s", sorted(scope) if scope else "all books")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            targets = [s for s in self._subscriptions if s.matches(event)]
        for subscription in targets:
            try:
                subscription.notify(event)
            except RuntimeError:
                logger.debug("Dropping subscription bound to a closed event loop")
                self.unsubscribe(subscription)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)


broker = ChangeBroker()
