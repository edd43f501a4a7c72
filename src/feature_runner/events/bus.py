"""In-process publish/subscribe for feature lifecycle and progress events.

Each subscriber owns a bounded buffer. Publishing appends to every matching
buffer without awaiting anything, so a slow subscriber can neither block
other subscribers nor back-pressure a run loop. When a buffer is full the
oldest event is dropped; the subscriber's next `get()` then yields a single
`resync` event carrying a snapshot of current feature state before resuming
with the buffered events.

Within one subscription events arrive in publish order, which gives per-feature
ordering. Nothing is promised across subscriptions.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import deque
from typing import Any, Callable, Iterable, Optional

from loguru import logger

from ..constants import DEFAULT_EVENT_BUFFER_SIZE
from ..domain.models import Event, EventKind
from .log import EventLog

SnapshotProvider = Callable[[], list[dict[str, Any]]]


class Subscription:
    def __init__(
        self,
        bus: "EventBus",
        *,
        buffer_size: int,
        feature_ids: Optional[Iterable[str]] = None,
    ) -> None:
        self._bus = bus
        self._buffer: deque[Event] = deque(maxlen=max(1, buffer_size))
        self._ready = asyncio.Event()
        self._resync_pending = False
        self.feature_ids: Optional[set[str]] = set(feature_ids) if feature_ids is not None else None
        self.dropped = 0
        self.closed = False

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def matches(self, event: Event) -> bool:
        if self.feature_ids is None or event.kind == EventKind.RESYNC:
            return True
        return event.feature_id in self.feature_ids

    def _offer(self, event: Event) -> None:
        if self.closed:
            return
        if len(self._buffer) == self._buffer.maxlen:
            # deque(maxlen) evicts the head on append.
            self.dropped += 1
            self._resync_pending = True
            logger.debug("Subscriber buffer full; dropped oldest event (total dropped={})", self.dropped)
        self._buffer.append(event)
        self._ready.set()

    def _resync_event(self) -> Event:
        self._resync_pending = False
        features = self._bus.snapshot()
        if self.feature_ids is not None:
            features = [f for f in features if f.get("id") in self.feature_ids]
        return Event(kind=EventKind.RESYNC, feature_id="*", payload={"features": features, "dropped": self.dropped})

    def get_nowait(self) -> Optional[Event]:
        if self._resync_pending:
            return self._resync_event()
        if self._buffer:
            return self._buffer.popleft()
        return None

    async def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Wait for the next event; returns None once the subscription is closed and drained."""
        while True:
            event = self.get_nowait()
            if event is not None:
                return event
            if self.closed:
                return None
            self._ready.clear()
            if timeout is None:
                await self._ready.wait()
            else:
                await asyncio.wait_for(self._ready.wait(), timeout=timeout)

    def drain(self) -> list[Event]:
        events: list[Event] = []
        while (event := self.get_nowait()) is not None:
            events.append(event)
        return events

    def close(self) -> None:
        self.closed = True
        self._ready.set()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Event:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:
    def __init__(
        self,
        *,
        buffer_size: int = DEFAULT_EVENT_BUFFER_SIZE,
        log: Optional[EventLog] = None,
        snapshot_provider: Optional[SnapshotProvider] = None,
    ) -> None:
        self._buffer_size = buffer_size
        self._log = log
        self._snapshot_provider = snapshot_provider
        self._subscriptions: list[Subscription] = []
        self._seq = itertools.count(1)

    def set_snapshot_provider(self, provider: SnapshotProvider) -> None:
        self._snapshot_provider = provider

    def snapshot(self) -> list[dict[str, Any]]:
        return self._snapshot_provider() if self._snapshot_provider else []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        *,
        feature_ids: Optional[Iterable[str]] = None,
        buffer_size: Optional[int] = None,
    ) -> Subscription:
        subscription = Subscription(self, buffer_size=buffer_size or self._buffer_size, feature_ids=feature_ids)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass

    def publish(self, event: Event) -> Event:
        """Stamp `event` with the next sequence number and fan it out."""
        stamped = event.with_seq(next(self._seq))
        if self._log is not None:
            try:
                self._log.append(stamped)
            except OSError as exc:
                logger.warning("Unable to append event {} to log: {}", stamped.seq, exc)
        for subscription in list(self._subscriptions):
            if subscription.matches(stamped):
                subscription._offer(stamped)
        return stamped

    def emit(self, kind: EventKind, feature_id: str, payload: Optional[dict[str, Any]] = None) -> Event:
        return self.publish(Event(kind=kind, feature_id=feature_id, payload=payload or {}))
