from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

DEFAULT_LOG_CAPACITY = 2000
DEFAULT_LOG_LIMIT = 200


def utc_day(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=UTC).strftime("%Y-%m-%d")


@dataclass(slots=True, frozen=True)
class RequestLogEntry:
    timestamp: int
    path: str
    method: str
    model: str
    account_id: str | None
    api_key_id: str | None
    input_tokens: int
    output_tokens: int
    credits: float
    response_time_ms: int
    status: int
    success: bool
    error: str | None = None
    account_email: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "path": self.path,
            "method": self.method,
            "model": self.model,
            "accountId": self.account_id,
            "accountEmail": self.account_email,
            "apiKeyId": self.api_key_id,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "credits": self.credits,
            "responseTimeMs": self.response_time_ms,
            "status": self.status,
            "success": self.success,
            "error": self.error,
        }

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> RequestLogEntry:
        return cls(
            timestamp=int(raw.get("timestamp") or 0),
            path=str(raw.get("path") or ""),
            method=str(raw.get("method") or "POST"),
            model=str(raw.get("model") or ""),
            account_id=raw.get("accountId"),
            account_email=raw.get("accountEmail"),
            api_key_id=raw.get("apiKeyId"),
            input_tokens=int(raw.get("inputTokens") or 0),
            output_tokens=int(raw.get("outputTokens") or 0),
            credits=float(raw.get("credits") or 0.0),
            response_time_ms=int(raw.get("responseTimeMs") or 0),
            status=int(raw.get("status") or 0),
            success=bool(raw.get("success")),
            error=raw.get("error"),
        )


@dataclass(slots=True)
class StatsBucket:
    requests: int = 0
    success: int = 0
    failed: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    credits: float = 0.0

    def add(self, entry: RequestLogEntry) -> None:
        self.requests += 1
        if entry.success:
            self.success += 1
        else:
            self.failed += 1
        self.input_tokens += entry.input_tokens
        self.output_tokens += entry.output_tokens
        self.credits += entry.credits

    def to_payload(self) -> dict[str, Any]:
        return {
            "requests": self.requests,
            "success": self.success,
            "failed": self.failed,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "credits": round(self.credits, 6),
        }

    @classmethod
    def from_payload(cls, raw: Any) -> StatsBucket:
        if not isinstance(raw, dict):
            return cls()
        return cls(
            requests=int(raw.get("requests") or 0),
            success=int(raw.get("success") or 0),
            failed=int(raw.get("failed") or 0),
            input_tokens=int(raw.get("inputTokens") or 0),
            output_tokens=int(raw.get("outputTokens") or 0),
            credits=float(raw.get("credits") or 0.0),
        )


@dataclass(slots=True)
class AggregateStats:
    total_requests: int = 0
    success_requests: int = 0
    failed_requests: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_credits: float = 0.0
    by_model: dict[str, StatsBucket] = field(default_factory=dict)
    daily: dict[str, StatsBucket] = field(default_factory=dict)

    def add(self, entry: RequestLogEntry) -> None:
        self.total_requests += 1
        if entry.success:
            self.success_requests += 1
        else:
            self.failed_requests += 1
        self.total_input_tokens += entry.input_tokens
        self.total_output_tokens += entry.output_tokens
        self.total_credits += entry.credits
        model = entry.model or "unknown"
        self.by_model.setdefault(model, StatsBucket()).add(entry)
        self.daily.setdefault(utc_day(entry.timestamp), StatsBucket()).add(entry)

    def to_payload(self) -> dict[str, Any]:
        return {
            "totalRequests": self.total_requests,
            "successRequests": self.success_requests,
            "failedRequests": self.failed_requests,
            "totalInputTokens": self.total_input_tokens,
            "totalOutputTokens": self.total_output_tokens,
            "totalCredits": round(self.total_credits, 6),
            "byModel": {key: value.to_payload() for key, value in self.by_model.items()},
            "daily": {key: value.to_payload() for key, value in sorted(self.daily.items())},
        }

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> AggregateStats:
        by_model = raw.get("byModel")
        daily = raw.get("daily")
        return cls(
            total_requests=int(raw.get("totalRequests") or 0),
            success_requests=int(raw.get("successRequests") or 0),
            failed_requests=int(raw.get("failedRequests") or 0),
            total_input_tokens=int(raw.get("totalInputTokens") or 0),
            total_output_tokens=int(raw.get("totalOutputTokens") or 0),
            total_credits=float(raw.get("totalCredits") or 0.0),
            by_model={
                str(key): StatsBucket.from_payload(value)
                for key, value in (by_model.items() if isinstance(by_model, dict) else [])
            },
            daily={
                str(key): StatsBucket.from_payload(value)
                for key, value in (daily.items() if isinstance(daily, dict) else [])
            },
        )


class StatsAggregator:
    """Aggregate counters plus a bounded ring buffer of recent request logs."""

    def __init__(self, capacity: int = DEFAULT_LOG_CAPACITY) -> None:
        self._logs: deque[RequestLogEntry] = deque(maxlen=max(1, capacity))
        self._aggregate = AggregateStats()

    @property
    def aggregate(self) -> AggregateStats:
        return self._aggregate

    def record(self, entry: RequestLogEntry) -> None:
        self._aggregate.add(entry)
        self._logs.append(entry)

    def get_logs(self, limit: int = DEFAULT_LOG_LIMIT) -> list[RequestLogEntry]:
        if limit <= 0:
            return []
        newest_first = list(reversed(self._logs))
        return newest_first[:limit]

    def all_logs(self) -> list[RequestLogEntry]:
        return list(self._logs)

    def clear_logs(self) -> None:
        self._logs.clear()

    def reset(self) -> None:
        self._aggregate = AggregateStats()

    def load(
        self,
        aggregate: dict[str, Any] | None,
        logs: list[dict[str, Any]] | None,
    ) -> None:
        if aggregate:
            self._aggregate = AggregateStats.from_payload(aggregate)
        for raw in logs or []:
            self._logs.append(RequestLogEntry.from_payload(raw))

    def snapshot(
        self,
        status: dict[str, Any],
        accounts: list[dict[str, Any]],
        *,
        now: float | None = None,
    ) -> dict[str, Any]:
        current = time.time() if now is None else now
        today = self._aggregate.daily.get(utc_day(current))
        return {
            "status": status,
            "aggregate": self._aggregate.to_payload(),
            "today": (today or StatsBucket()).to_payload(),
            "accounts": accounts,
            "logCount": len(self._logs),
        }
