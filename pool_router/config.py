from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

from pool_router.errors import ConfigError
from pool_router.storage import YamlFileStore

DEFAULT_PROXY_HOST = "127.0.0.1"
DEFAULT_PROXY_PORT = 5580
DEFAULT_MAPPING_PRIORITY = 100


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class UsageBucket(_CamelModel):
    requests: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    credits: float = 0.0


class ApiKeyUsage(_CamelModel):
    total_requests: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_credits: float = 0.0
    daily: dict[str, UsageBucket] = Field(default_factory=dict)
    by_model: dict[str, UsageBucket] = Field(default_factory=dict)


class UsageRecord(_CamelModel):
    timestamp: int
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    credits: float = 0.0
    path: str = ""


class ApiKeyConfig(_CamelModel):
    id: str
    name: str = "API Key"
    key: str
    enabled: bool = True
    credits_limit: float | None = None
    created_at: int = Field(default_factory=lambda: int(time.time()))
    last_used_at: int | None = None
    usage: ApiKeyUsage = Field(default_factory=ApiKeyUsage)
    usage_history: list[UsageRecord] = Field(default_factory=list)

    @field_validator("key")
    @classmethod
    def _require_key(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("API key must not be empty.")
        return normalized


class ModelMappingRule(_CamelModel):
    id: str
    name: str = ""
    enabled: bool = True
    mapping_type: Literal["replace", "loadbalance"] = Field(
        default="replace",
        alias="type",
        validation_alias=AliasChoices("type", "mappingType", "mapping_type"),
    )
    source_model: str
    target_models: list[str]
    weights: list[float] = Field(default_factory=list)
    priority: int = DEFAULT_MAPPING_PRIORITY
    api_key_ids: list[str] = Field(default_factory=list)

    @field_validator("mapping_type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("source_model")
    @classmethod
    def _require_source(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("sourceModel must not be empty.")
        return normalized

    @field_validator("target_models")
    @classmethod
    def _require_targets(cls, value: list[str]) -> list[str]:
        cleaned = [item.strip() for item in value if item and item.strip()]
        if not cleaned:
            raise ValueError("targetModels must contain at least one model.")
        return cleaned

    @field_validator("weights")
    @classmethod
    def _require_positive_weights(cls, value: list[float]) -> list[float]:
        for weight in value:
            if not weight > 0:
                raise ValueError("weights must be positive numbers.")
        return value

    def effective_weights(self) -> list[float] | None:
        if self.weights and len(self.weights) == len(self.target_models):
            return list(self.weights)
        return None


class ProxyConfig(_CamelModel):
    enabled: bool = False
    auto_start: bool = False
    host: str = DEFAULT_PROXY_HOST
    port: int = Field(default=DEFAULT_PROXY_PORT, ge=1, le=65535)
    auth_enabled: bool = False
    api_key: str | None = None
    api_keys: list[ApiKeyConfig] = Field(default_factory=list)
    enable_multi_account: bool = True
    selected_account_ids: list[str] = Field(default_factory=list)
    log_requests: bool = True
    max_retries: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=1000, ge=0)
    thinking_output_format: Literal["reasoning_content", "thinking", "think"] = (
        "reasoning_content"
    )
    auto_continue_rounds: int = Field(default=0, ge=0)
    disable_tools: bool = False
    preferred_endpoint: str | None = None
    model_cache_ttl_sec: int = Field(default=300, ge=0)
    token_refresh_before_expiry_sec: int = Field(default=300, ge=0)
    auto_switch_on_quota_exhausted: bool = False
    model_mappings: list[ModelMappingRule] = Field(default_factory=list)
    upstream_endpoints: dict[str, str] = Field(default_factory=dict)
    transient_cooldown_sec: float = Field(default=15.0, ge=0)
    quota_cooldown_sec: float = Field(default=300.0, ge=0)
    auth_cooldown_sec: float = Field(default=60.0, ge=0)
    cooldown_max_sec: float = Field(default=3600.0, ge=0)

    @field_validator("api_key")
    @classmethod
    def _blank_api_key_is_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("api_keys")
    @classmethod
    def _unique_api_keys(cls, value: list[ApiKeyConfig]) -> list[ApiKeyConfig]:
        seen_ids: set[str] = set()
        seen_keys: set[str] = set()
        for entry in value:
            if entry.id in seen_ids:
                raise ValueError(f"Duplicate API key id '{entry.id}'.")
            if entry.key in seen_keys:
                raise ValueError(f"Duplicate API key value for '{entry.name}'.")
            seen_ids.add(entry.id)
            seen_keys.add(entry.key)
        return value

    @property
    def effective_max_attempts(self) -> int:
        return max(1, self.max_retries)

    def ordered_endpoints(self) -> list[tuple[str, str]]:
        endpoints = [
            (name, url.rstrip("/"))
            for name, url in self.upstream_endpoints.items()
            if url and url.strip()
        ]
        preferred = (self.preferred_endpoint or "").strip().lower()
        if not preferred:
            return endpoints
        return sorted(endpoints, key=lambda item: item[0].lower() != preferred)

    def replace(self, **changes: Any) -> ProxyConfig:
        """Validated copy with ``changes`` applied; the original is left untouched."""
        payload = self.model_dump()
        payload.update(changes)
        return ProxyConfig.model_validate(payload)


class ProxyConfigFile:
    """``proxies.<kind>`` sections of a YAML configuration file."""

    def __init__(self, path: str | Path) -> None:
        self._store = YamlFileStore(path)

    @property
    def path(self) -> Path:
        return self._store.path

    def _load_raw(self) -> dict[str, Any]:
        try:
            payload = self._store.load(default={})
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in '{self.path}': {exc}") from exc
        if not isinstance(payload, dict):
            raise ConfigError(f"Expected YAML object in '{self.path}'.")
        return payload

    def load_all(self) -> dict[str, ProxyConfig]:
        proxies = self._load_raw().get("proxies") or {}
        if not isinstance(proxies, dict):
            raise ConfigError(f"'proxies' must be a mapping in '{self.path}'.")
        return {
            str(kind): _validate_proxy_config(str(kind), raw or {})
            for kind, raw in proxies.items()
        }

    def load(self, kind: str) -> ProxyConfig:
        proxies = self._load_raw().get("proxies") or {}
        raw = proxies.get(kind) if isinstance(proxies, dict) else None
        return _validate_proxy_config(kind, raw or {})

    def save(self, kind: str, config: ProxyConfig) -> None:
        payload = self._load_raw()
        proxies = payload.get("proxies")
        if not isinstance(proxies, dict):
            proxies = {}
        proxies[kind] = config.to_payload()
        payload["proxies"] = proxies
        self._store.write(payload)


def _validate_proxy_config(kind: str, raw: Any) -> ProxyConfig:
    if not isinstance(raw, dict):
        raise ConfigError(f"Proxy config for '{kind}' must be a mapping.")
    try:
        return ProxyConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid proxy config for '{kind}': {exc}") from exc
