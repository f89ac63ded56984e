from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

from pool_router.stats import RequestLogEntry


@dataclass(slots=True, frozen=True)
class StatusChangeEvent:
    kind: str
    status: dict[str, Any]
    timestamp: float = field(default_factory=time.time)

    @property
    def name(self) -> str:
        return "status_change"

    def to_payload(self) -> dict[str, Any]:
        return {"event": self.name, "kind": self.kind, "status": self.status}


@dataclass(slots=True, frozen=True)
class RequestStartedEvent:
    kind: str
    request_id: str
    path: str
    model: str
    timestamp: float = field(default_factory=time.time)

    @property
    def name(self) -> str:
        return "request_started"

    def to_payload(self) -> dict[str, Any]:
        return {
            "event": self.name,
            "kind": self.kind,
            "requestId": self.request_id,
            "path": self.path,
            "model": self.model,
        }


@dataclass(slots=True, frozen=True)
class RequestCompletedEvent:
    kind: str
    entry: RequestLogEntry
    request_id: str | None = None
    timestamp: float = field(default_factory=time.time)

    @property
    def name(self) -> str:
        return "request_completed"

    def to_payload(self) -> dict[str, Any]:
        return {
            "event": self.name,
            "kind": self.kind,
            "requestId": self.request_id,
            "entry": self.entry.to_payload(),
        }


ProxyEvent = StatusChangeEvent | RequestStartedEvent | RequestCompletedEvent


class Subscription:
    """One consumer's bounded queue. Iterate with ``async for`` until closed."""

    def __init__(self, channel: EventChannel, queue_size: int) -> None:
        self._channel = channel
        self._queue: asyncio.Queue[ProxyEvent | None] = asyncio.Queue(
            maxsize=max(1, queue_size)
        )
        self._closed = False
        self.dropped_events = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    def offer(self, event: ProxyEvent) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped_events += 1
            return False
        return True

    async def get(self) -> ProxyEvent | None:
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._channel._unsubscribe(self)
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # Consumers must still see the end marker on a saturated queue.
            self._queue.get_nowait()
            self.dropped_events += 1
            self._queue.put_nowait(None)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> ProxyEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventChannel:
    """Fan-out of proxy events to subscribers; publishing never blocks."""

    def __init__(self, *, queue_size: int = 1024) -> None:
        self._queue_size = queue_size
        self._subscriptions: list[Subscription] = []
        self._dropped_events = 0

    @property
    def dropped_events(self) -> int:
        return self._dropped_events

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, *, queue_size: int | None = None) -> Subscription:
        subscription = Subscription(self, queue_size or self._queue_size)
        self._subscriptions.append(subscription)
        return subscription

    def publish(self, event: ProxyEvent) -> None:
        for subscription in list(self._subscriptions):
            if not subscription.offer(event):
                self._dropped_events += 1

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.close()

    def _unsubscribe(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass
