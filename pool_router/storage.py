from __future__ import annotations

import contextlib
import logging
from pathlib import Path
from typing import Any
from uuid import uuid4

import yaml

logger = logging.getLogger("uvicorn.error")

STATS_FILE = "aggregate_stats.yaml"
LOGS_FILE = "request_logs.yaml"
MODEL_CACHE_FILE = "models_cache.yaml"


class YamlFileStore:
    """YAML document on disk, replaced atomically on every write."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self, *, default: Any = None) -> Any:
        if not self.path.exists():
            return default
        with self.path.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
        if payload is None:
            return default
        return payload

    def write(self, payload: Any, *, sort_keys: bool = False) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(f".{self.path.name}.{uuid4().hex}.tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=sort_keys, allow_unicode=True)
            temp_path.replace(self.path)
        except Exception:
            with contextlib.suppress(Exception):
                temp_path.unlink(missing_ok=True)
            raise


class ProxyStateStorage:
    """Per-kind volatile state that survives restarts: aggregates, log buffer, model cache."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self._stats = YamlFileStore(self.directory / STATS_FILE)
        self._logs = YamlFileStore(self.directory / LOGS_FILE)
        self._models = YamlFileStore(self.directory / MODEL_CACHE_FILE)

    def load_aggregate(self) -> dict[str, Any]:
        return _load_mapping(self._stats, "aggregate")

    def save_aggregate(self, aggregate: dict[str, Any]) -> None:
        self._stats.write({"aggregate": aggregate})

    def load_logs(self) -> list[dict[str, Any]]:
        payload = self._logs.load(default={})
        raw = payload.get("logs") if isinstance(payload, dict) else None
        if not isinstance(raw, list):
            return []
        return [item for item in raw if isinstance(item, dict)]

    def save_logs(self, logs: list[dict[str, Any]]) -> None:
        self._logs.write({"logs": logs})

    def load_model_cache(self) -> dict[str, Any]:
        return _load_mapping(self._models, "cache")

    def save_model_cache(self, cache: dict[str, Any]) -> None:
        self._models.write({"cache": cache})


def _load_mapping(store: YamlFileStore, key: str) -> dict[str, Any]:
    try:
        payload = store.load(default={})
    except yaml.YAMLError as exc:
        logger.warning("state_load_failed path=%s error=%s", store.path, exc)
        return {}
    raw = payload.get(key) if isinstance(payload, dict) else None
    return raw if isinstance(raw, dict) else {}
