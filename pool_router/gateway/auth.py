from __future__ import annotations

import secrets
import time
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from pool_router.config import (
    ApiKeyConfig,
    ApiKeyUsage,
    ProxyConfig,
    UsageBucket,
    UsageRecord,
)
from pool_router.errors import AuthError, NotFoundError, QuotaExceeded, ValidationError

USAGE_HISTORY_LIMIT = 200
DEFAULT_KEY_NAME = "API Key"


@dataclass(slots=True)
class AuthResult:
    method: str
    principal: str
    api_key_id: str | None = None


@dataclass(slots=True)
class _Bucket:
    requests: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    credits: float = 0.0

    def add(self, input_tokens: int, output_tokens: int, credits: float) -> None:
        self.requests += 1
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.credits += credits

    def to_config(self) -> UsageBucket:
        return UsageBucket(
            requests=self.requests,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            credits=self.credits,
        )

    @classmethod
    def from_config(cls, bucket: UsageBucket) -> _Bucket:
        return cls(
            requests=bucket.requests,
            input_tokens=bucket.input_tokens,
            output_tokens=bucket.output_tokens,
            credits=bucket.credits,
        )


@dataclass(slots=True)
class _KeyState:
    id: str
    name: str
    key: str
    enabled: bool
    credits_limit: float | None
    created_at: int
    last_used_at: int | None = None
    total: _Bucket = field(default_factory=_Bucket)
    daily: dict[str, _Bucket] = field(default_factory=dict)
    by_model: dict[str, _Bucket] = field(default_factory=dict)
    history: deque[UsageRecord] = field(
        default_factory=lambda: deque(maxlen=USAGE_HISTORY_LIMIT)
    )

    @classmethod
    def from_config(cls, config: ApiKeyConfig) -> _KeyState:
        state = cls(
            id=config.id,
            name=config.name,
            key=config.key,
            enabled=config.enabled,
            credits_limit=config.credits_limit,
            created_at=config.created_at,
            last_used_at=config.last_used_at,
        )
        state.load_usage(config.usage, config.usage_history)
        return state

    def load_usage(self, usage: ApiKeyUsage, history: Iterable[UsageRecord]) -> None:
        self.total = _Bucket(
            requests=usage.total_requests,
            input_tokens=usage.total_input_tokens,
            output_tokens=usage.total_output_tokens,
            credits=usage.total_credits,
        )
        self.daily = {day: _Bucket.from_config(item) for day, item in usage.daily.items()}
        self.by_model = {
            model: _Bucket.from_config(item) for model, item in usage.by_model.items()
        }
        self.history = deque(history, maxlen=USAGE_HISTORY_LIMIT)

    def reset_usage(self) -> None:
        self.total = _Bucket()
        self.daily = {}
        self.by_model = {}
        self.history.clear()

    def usage(self) -> ApiKeyUsage:
        return ApiKeyUsage(
            total_requests=self.total.requests,
            total_input_tokens=self.total.input_tokens,
            total_output_tokens=self.total.output_tokens,
            total_credits=self.total.credits,
            daily={day: item.to_config() for day, item in self.daily.items()},
            by_model={model: item.to_config() for model, item in self.by_model.items()},
        )

    def to_config(self) -> ApiKeyConfig:
        return ApiKeyConfig(
            id=self.id,
            name=self.name,
            key=self.key,
            enabled=self.enabled,
            credits_limit=self.credits_limit,
            created_at=self.created_at,
            last_used_at=self.last_used_at,
            usage=self.usage(),
            usage_history=list(self.history),
        )

    def to_view(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "keyPreview": key_preview(self.key),
            "enabled": self.enabled,
            "creditsLimit": self.credits_limit,
            "createdAt": self.created_at,
            "lastUsedAt": self.last_used_at,
            "usage": self.usage().to_payload(),
            "usageHistory": [record.to_payload() for record in reversed(self.history)],
        }


def key_preview(key: str) -> str:
    if len(key) <= 8:
        return "***"
    return f"{key[:4]}***{key[-4:]}"


def extract_presented_key(headers: Mapping[str, str]) -> str | None:
    auth_header = headers.get("authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    api_key = headers.get("x-api-key", "").strip()
    return api_key or None


class ApiKeyGateway:
    """Client API key registry: authentication, credit quota and usage metering."""

    def __init__(self, config: ProxyConfig | None = None) -> None:
        self._auth_enabled = False
        self._legacy_key: str | None = None
        self._keys: dict[str, _KeyState] = {}
        if config is not None:
            self.configure(config)

    @property
    def auth_enabled(self) -> bool:
        return self._auth_enabled

    def configure(self, config: ProxyConfig) -> None:
        self._auth_enabled = config.auth_enabled
        self._legacy_key = config.api_key
        self.sync(config.api_keys)

    def sync(self, api_keys: Iterable[ApiKeyConfig]) -> None:
        """Replace key definitions, keeping in-memory usage for surviving ids."""
        updated: dict[str, _KeyState] = {}
        for config in api_keys:
            previous = self._keys.get(config.id)
            state = _KeyState.from_config(config)
            if previous is not None:
                state.total = previous.total
                state.daily = previous.daily
                state.by_model = previous.by_model
                state.history = previous.history
                state.last_used_at = previous.last_used_at
            updated[config.id] = state
        self._keys = updated

    def authenticate(self, presented_key: str | None) -> AuthResult:
        if not self._auth_enabled:
            return AuthResult(method="anonymous", principal="anonymous")
        if not presented_key:
            raise AuthError("Missing API key")

        for state in self._keys.values():
            if state.enabled and secrets.compare_digest(
                state.key.encode("utf-8"), presented_key.encode("utf-8")
            ):
                return AuthResult(method="api_key", principal=state.name, api_key_id=state.id)

        if self._legacy_key and secrets.compare_digest(
            self._legacy_key.encode("utf-8"), presented_key.encode("utf-8")
        ):
            return AuthResult(method="legacy_api_key", principal="legacy")

        raise AuthError("Invalid API key")

    def enforce_quota(self, api_key_id: str | None) -> None:
        if api_key_id is None:
            return
        state = self._keys.get(api_key_id)
        if state is None or state.credits_limit is None:
            return
        if state.total.credits >= state.credits_limit:
            raise QuotaExceeded(
                f"API key '{state.name}' has exhausted its credits limit "
                f"({state.total.credits:g}/{state.credits_limit:g}).",
            )

    def record_usage(
        self,
        api_key_id: str | None,
        *,
        input_tokens: int,
        output_tokens: int,
        credits: float,
        model: str,
        day: str,
        path: str,
        now: float,
    ) -> bool:
        if api_key_id is None:
            return False
        state = self._keys.get(api_key_id)
        if state is None:
            return False
        state.total.add(input_tokens, output_tokens, credits)
        state.daily.setdefault(day, _Bucket()).add(input_tokens, output_tokens, credits)
        state.by_model.setdefault(model, _Bucket()).add(input_tokens, output_tokens, credits)
        state.last_used_at = int(now)
        state.history.append(
            UsageRecord(
                timestamp=int(now),
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                credits=credits,
                path=path,
            )
        )
        return True

    def add_key(
        self,
        *,
        key: str,
        name: str = "",
        enabled: bool = True,
        credits_limit: float | None = None,
        now: float | None = None,
    ) -> dict[str, Any]:
        normalized = key.strip()
        if not normalized:
            raise ValidationError("API key must not be empty.")
        if any(state.key == normalized for state in self._keys.values()):
            raise ValidationError("API key already exists.")
        if credits_limit is not None and credits_limit < 0:
            raise ValidationError("creditsLimit must not be negative.")
        state = _KeyState(
            id=str(uuid4()),
            name=name.strip() or DEFAULT_KEY_NAME,
            key=normalized,
            enabled=enabled,
            credits_limit=credits_limit,
            created_at=int(time.time() if now is None else now),
        )
        self._keys[state.id] = state
        return state.to_view()

    def update_key(self, key_id: str, changes: Mapping[str, Any]) -> dict[str, Any]:
        state = self._require(key_id)
        if "name" in changes and changes["name"] is not None:
            name = str(changes["name"]).strip()
            if name:
                state.name = name
        if "enabled" in changes and changes["enabled"] is not None:
            state.enabled = bool(changes["enabled"])
        if "creditsLimit" in changes:
            limit = changes["creditsLimit"]
            if limit is not None:
                limit = float(limit)
                if limit < 0:
                    raise ValidationError("creditsLimit must not be negative.")
            state.credits_limit = limit
        return state.to_view()

    def delete_key(self, key_id: str) -> None:
        self._require(key_id)
        del self._keys[key_id]

    def reset_usage(self, key_id: str) -> dict[str, Any]:
        state = self._require(key_id)
        state.reset_usage()
        return state.to_view()

    def views(self) -> list[dict[str, Any]]:
        return [state.to_view() for state in self._keys.values()]

    def to_configs(self) -> list[ApiKeyConfig]:
        return [state.to_config() for state in self._keys.values()]

    def _require(self, key_id: str) -> _KeyState:
        state = self._keys.get(key_id)
        if state is None:
            raise NotFoundError(f"API key '{key_id}' not found.")
        return state
