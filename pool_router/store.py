from __future__ import annotations

import asyncio
from collections.abc import Collection, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from pool_router.account_pool import Account, AccountPool, CooldownPolicy, Outcome
from pool_router.config import ApiKeyConfig, ProxyConfig
from pool_router.credentials import CredentialRecord
from pool_router.gateway.auth import ApiKeyGateway, AuthResult
from pool_router.stats import (
    DEFAULT_LOG_CAPACITY,
    DEFAULT_LOG_LIMIT,
    RequestLogEntry,
    StatsAggregator,
    utc_day,
)


@dataclass(slots=True)
class PersistableState:
    aggregate: dict[str, Any] | None = None
    logs: list[dict[str, Any]] | None = None
    api_keys: list[ApiKeyConfig] | None = None


class ProxyStore:
    """Single access point for the mutable state of one proxy kind.

    The lock is held only for in-memory work, never across upstream calls.
    Callers receive copies and payload views, never the live objects.
    """

    def __init__(
        self,
        config: ProxyConfig | None = None,
        *,
        log_capacity: int = DEFAULT_LOG_CAPACITY,
    ) -> None:
        self._lock = asyncio.Lock()
        self._pool = AccountPool()
        self._gateway = ApiKeyGateway()
        self._stats = StatsAggregator(capacity=log_capacity)
        self._stats_dirty = False
        self._keys_dirty = False
        if config is not None:
            self._apply_config(config)

    def _apply_config(self, config: ProxyConfig) -> None:
        self._pool.set_policy(CooldownPolicy.from_config(config))
        self._gateway.configure(config)

    async def configure(self, config: ProxyConfig) -> None:
        async with self._lock:
            self._apply_config(config)

    def restore(
        self,
        aggregate: dict[str, Any] | None,
        logs: list[dict[str, Any]] | None,
    ) -> None:
        """Load persisted stats; only valid before the store is shared."""
        self._stats.load(aggregate, logs)

    async def sync_accounts(
        self,
        records: Iterable[CredentialRecord],
        selected_ids: Collection[str] = (),
    ) -> int:
        async with self._lock:
            self._pool.sync(records, selected_ids)
            return len(self._pool)

    async def account_ids(self) -> list[str]:
        async with self._lock:
            return self._pool.ids()

    async def get_account(self, account_id: str) -> Account | None:
        async with self._lock:
            return self._pool.get(account_id)

    async def designated_account_id(self, selected_ids: Collection[str]) -> str | None:
        async with self._lock:
            return self._pool.designated_account_id(selected_ids)

    async def select_account(
        self,
        candidate_ids: Collection[str],
        now: float,
        exclude: Collection[str] = (),
        *,
        allow_fallback: bool = True,
    ) -> Account | None:
        async with self._lock:
            account = self._pool.select_account(candidate_ids, now, exclude)
            if account is None and allow_fallback:
                account = self._pool.fallback_account(candidate_ids, now, exclude)
            return account

    async def report_outcome(
        self,
        account_id: str,
        outcome: Outcome,
        now: float,
        error: str | None = None,
    ) -> Account | None:
        async with self._lock:
            return self._pool.report_outcome(account_id, outcome, now, error)

    async def mark_refresh_failed(self, account_id: str, error: str) -> None:
        async with self._lock:
            self._pool.mark_refresh_failed(account_id, error)

    async def mark_refresh_succeeded(self, account_id: str) -> None:
        async with self._lock:
            self._pool.mark_refresh_succeeded(account_id)

    async def authenticate(self, presented_key: str | None) -> AuthResult:
        async with self._lock:
            return self._gateway.authenticate(presented_key)

    async def enforce_quota(self, api_key_id: str | None) -> None:
        async with self._lock:
            self._gateway.enforce_quota(api_key_id)

    async def commit_request(
        self,
        entry: RequestLogEntry,
        *,
        outcome: Outcome | None = None,
        now: float | None = None,
    ) -> None:
        """Apply account outcome, key usage and stats for one finished request."""
        finished_at = float(entry.timestamp) if now is None else now
        async with self._lock:
            if entry.account_id is not None and outcome is not None:
                self._pool.report_outcome(entry.account_id, outcome, finished_at, entry.error)
            if entry.success and self._gateway.record_usage(
                entry.api_key_id,
                input_tokens=entry.input_tokens,
                output_tokens=entry.output_tokens,
                credits=entry.credits,
                model=entry.model,
                day=utc_day(entry.timestamp),
                path=entry.path,
                now=finished_at,
            ):
                self._keys_dirty = True
            self._stats.record(entry)
            self._stats_dirty = True

    async def stats_snapshot(self, status: dict[str, Any], now: float) -> dict[str, Any]:
        async with self._lock:
            payload = self._stats.snapshot(status, self._pool.views(), now=now)
            payload["availableAccounts"] = self._pool.available_count(now)
            return payload

    async def account_views(self) -> list[dict[str, Any]]:
        async with self._lock:
            return self._pool.views()

    async def available_count(self, now: float) -> int:
        async with self._lock:
            return self._pool.available_count(now)

    async def first_available_account_id(self, now: float) -> str | None:
        async with self._lock:
            return self._pool.first_available_id(now)

    async def totals(self) -> dict[str, Any]:
        async with self._lock:
            aggregate = self._stats.aggregate
            return {
                "totalRequests": aggregate.total_requests,
                "successRequests": aggregate.success_requests,
                "failedRequests": aggregate.failed_requests,
                "totalInputTokens": aggregate.total_input_tokens,
                "totalOutputTokens": aggregate.total_output_tokens,
                "totalCredits": round(aggregate.total_credits, 6),
            }

    async def get_logs(self, limit: int = DEFAULT_LOG_LIMIT) -> list[dict[str, Any]]:
        async with self._lock:
            return [entry.to_payload() for entry in self._stats.get_logs(limit)]

    async def clear_logs(self) -> None:
        async with self._lock:
            self._stats.clear_logs()
            self._stats_dirty = True

    async def reset_stats(self) -> None:
        async with self._lock:
            self._stats.reset()
            self._pool.reset_counters()
            self._stats_dirty = True

    async def api_key_views(self) -> list[dict[str, Any]]:
        async with self._lock:
            return self._gateway.views()

    async def add_api_key(
        self,
        *,
        key: str,
        name: str = "",
        enabled: bool = True,
        credits_limit: float | None = None,
    ) -> dict[str, Any]:
        async with self._lock:
            view = self._gateway.add_key(
                key=key, name=name, enabled=enabled, credits_limit=credits_limit
            )
            self._keys_dirty = True
            return view

    async def update_api_key(self, key_id: str, changes: Mapping[str, Any]) -> dict[str, Any]:
        async with self._lock:
            view = self._gateway.update_key(key_id, changes)
            self._keys_dirty = True
            return view

    async def delete_api_key(self, key_id: str) -> None:
        async with self._lock:
            self._gateway.delete_key(key_id)
            self._keys_dirty = True

    async def reset_api_key_usage(self, key_id: str) -> dict[str, Any]:
        async with self._lock:
            view = self._gateway.reset_usage(key_id)
            self._keys_dirty = True
            return view

    async def api_key_configs(self) -> list[ApiKeyConfig]:
        async with self._lock:
            return self._gateway.to_configs()

    async def take_dirty(self, *, force: bool = False) -> PersistableState:
        """Snapshot state changed since the last call and clear the dirty flags."""
        async with self._lock:
            state = PersistableState()
            if self._stats_dirty or force:
                state.aggregate = self._stats.aggregate.to_payload()
                state.logs = [entry.to_payload() for entry in self._stats.all_logs()]
                self._stats_dirty = False
            if self._keys_dirty or force:
                state.api_keys = self._gateway.to_configs()
                self._keys_dirty = False
            return state
