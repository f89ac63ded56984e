from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path

from pool_router.events import EventChannel, RequestCompletedEvent, Subscription

logger = logging.getLogger("uvicorn.error")

AUDIT_FILE = "requests.jsonl"


class RequestAuditWriter:
    """Appends every completed request as one JSON line."""

    def __init__(
        self,
        channel: EventChannel,
        path: str | Path,
        *,
        queue_size: int = 8192,
    ) -> None:
        self._channel = channel
        self.path = Path(path)
        self._queue_size = queue_size
        self._subscription: Subscription | None = None
        self._task: asyncio.Task[None] | None = None
        self.written_records = 0

    @property
    def running(self) -> bool:
        return self._task is not None

    @property
    def dropped_records(self) -> int:
        if self._subscription is None:
            return 0
        return self._subscription.dropped_events

    async def start(self) -> None:
        if self._task is not None:
            return
        self._subscription = self._channel.subscribe(queue_size=self._queue_size)
        self._task = asyncio.create_task(self._run(), name="request-audit-writer")

    async def stop(self) -> None:
        if self._task is None:
            return
        if self._subscription is not None:
            self._subscription.close()
        try:
            await self._task
        finally:
            self._task = None
            self._subscription = None

    async def _run(self) -> None:
        subscription = self._subscription
        if subscription is None:
            return
        async for event in subscription:
            if not isinstance(event, RequestCompletedEvent):
                continue
            record = {"ts": int(time.time()), "kind": event.kind, **event.entry.to_payload()}
            line = json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)
            try:
                await asyncio.to_thread(self._append, line)
            except OSError as exc:
                logger.warning("request_audit_write_failed path=%s error=%s", self.path, exc)
                continue
            self.written_records += 1

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
