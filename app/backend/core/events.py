"""Broadcast channel for server lifecycle events.

Emitters call `EventBus.emit(name, payload)`. Consumers (SSE clients) call
`subscribe()` and iterate the returned `Subscription`; `unsubscribe()` (or
leaving the `with` block) detaches it. Each subscriber has a bounded queue;
when a consumer falls behind, its oldest events are dropped so emitters never
block.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from api.logging_config import TRACE_LEVEL_NUM


logger = logging.getLogger(__name__)

BACKUP_STARTED = "backup:started"
BACKUP_PROGRESS = "backup:progress"
BACKUP_COMPLETED = "backup:completed"
VOLUME_MOUNTED = "volume:mounted"
VOLUME_UNMOUNTED = "volume:unmounted"
VOLUME_UPDATED = "volume:updated"
VOLUME_STATUS_CHANGED = "volume:status_changed"
MIRROR_STARTED = "mirror:started"
MIRROR_COMPLETED = "mirror:completed"

EVENT_NAMES = (
    BACKUP_STARTED,
    BACKUP_PROGRESS,
    BACKUP_COMPLETED,
    VOLUME_MOUNTED,
    VOLUME_UNMOUNTED,
    VOLUME_UPDATED,
    VOLUME_STATUS_CHANGED,
    MIRROR_STARTED,
    MIRROR_COMPLETED,
)

DEFAULT_QUEUE_SIZE = 256


@dataclass(frozen=True)
class Event:
    name: str
    payload: Dict[str, Any]
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class Subscription:
    """A subscriber's stream of events."""

    def __init__(self, bus: "EventBus", max_queue_size: int):
        self._bus = bus
        self._queue: "asyncio.Queue[Event]" = asyncio.Queue(maxsize=max_queue_size)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, event: Event) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Return the next event, or None when `timeout` elapses first."""

        if timeout is None:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def pending(self) -> List[Event]:
        """Drain and return events already queued without waiting."""

        events: List[Event] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def unsubscribe(self) -> None:
        if not self._closed:
            self._closed = True
            self._bus._remove(self)

    def __aiter__(self) -> AsyncIterator[Event]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Event]:
        while not self._closed:
            yield await self._queue.get()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unsubscribe()


class EventBus:
    """Fan-out of events to every live subscription."""

    def __init__(self, max_queue_size: int = DEFAULT_QUEUE_SIZE):
        self._max_queue_size = max_queue_size
        self._subscriptions: Set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, self._max_queue_size)
        self._subscriptions.add(subscription)
        logger.debug("Event subscriber added (%d active)", len(self._subscriptions))
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        self._subscriptions.discard(subscription)
        logger.debug("Event subscriber removed (%d active)", len(self._subscriptions))

    def emit(self, name: str, payload: Optional[Dict[str, Any]] = None) -> None:
        event = Event(name=name, payload=dict(payload or {}))
        for subscription in list(self._subscriptions):
            subscription._offer(event)
        logger.log(TRACE_LEVEL_NUM, "Emitted %s to %d subscribers", name, len(self._subscriptions))
