from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from pool_router.credentials import CredentialRecord, CredentialStore
from pool_router.errors import CredentialError
from pool_router.store import ProxyStore

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class TokenSupervisorStatus:
    interval_seconds: float
    refresh_before_expiry_seconds: float
    last_run_epoch: float | None = None
    last_refreshed: list[str] = field(default_factory=list)
    last_failed: list[str] = field(default_factory=list)
    last_skipped: list[str] = field(default_factory=list)
    last_error: str | None = None


class TokenLifecycleSupervisor:
    def __init__(
        self,
        *,
        kind: str,
        store: ProxyStore,
        credentials: CredentialStore,
        refresh_before_expiry_seconds: float = 300.0,
        interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._kind = kind
        self._store = store
        self._credentials = credentials
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._task: asyncio.Task[None] | None = None
        self._status = TokenSupervisorStatus(
            interval_seconds=max(1.0, float(interval_seconds)),
            refresh_before_expiry_seconds=max(0.0, float(refresh_before_expiry_seconds)),
        )

    @property
    def status(self) -> TokenSupervisorStatus:
        return self._status

    @property
    def running(self) -> bool:
        return self._task is not None

    def set_refresh_window(self, seconds: float) -> None:
        self._status.refresh_before_expiry_seconds = max(0.0, float(seconds))

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(
            self._run(), name=f"token-supervisor-{self._kind}"
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    async def run_once(self, now: float | None = None) -> TokenSupervisorStatus:
        current = self._clock() if now is None else now
        window = self._status.refresh_before_expiry_seconds
        refreshed: list[str] = []
        failed: list[str] = []
        skipped: list[str] = []

        for account_id in await self._store.account_ids():
            record = await self._credentials.get(account_id)
            if record is None or not record.expires_within(window, current):
                continue
            lock = self._locks.setdefault(account_id, asyncio.Lock())
            if lock.locked():
                skipped.append(account_id)
                continue
            if await self._refresh_locked(account_id, lock) is None:
                failed.append(account_id)
            else:
                refreshed.append(account_id)

        self._status.last_run_epoch = current
        self._status.last_refreshed = refreshed
        self._status.last_failed = failed
        self._status.last_skipped = skipped
        if refreshed or failed:
            logger.info(
                "token_supervisor_run kind=%s refreshed=%d failed=%d skipped=%d",
                self._kind,
                len(refreshed),
                len(failed),
                len(skipped),
            )
        return self._status

    async def refresh_account(self, account_id: str) -> CredentialRecord | None:
        """Refresh one account now; waits behind a refresh already in flight."""
        lock = self._locks.setdefault(account_id, asyncio.Lock())
        if lock.locked():
            async with lock:
                pass
            return await self._credentials.get(account_id)
        return await self._refresh_locked(account_id, lock)

    async def _refresh_locked(
        self, account_id: str, lock: asyncio.Lock
    ) -> CredentialRecord | None:
        async with lock:
            try:
                record = await self._credentials.refresh(account_id)
            except CredentialError as exc:
                self._status.last_error = str(exc)
                await self._store.mark_refresh_failed(account_id, str(exc))
                logger.warning(
                    "token_refresh_failed kind=%s account=%s error=%s",
                    self._kind,
                    account_id,
                    str(exc),
                )
                return None
            except Exception as exc:
                self._status.last_error = str(exc)
                await self._store.mark_refresh_failed(account_id, str(exc))
                logger.exception(
                    "token_refresh_error kind=%s account=%s", self._kind, account_id
                )
                return None
        await self._store.mark_refresh_succeeded(account_id)
        return record

    async def _run(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as exc:
                self._status.last_run_epoch = self._clock()
                self._status.last_error = str(exc)
                logger.warning(
                    "token_supervisor_failed kind=%s error=%s", self._kind, str(exc)
                )
            await asyncio.sleep(self._status.interval_seconds)
