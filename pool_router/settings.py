from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    proxy_config_path: str = "pool-router.yaml"
    proxy_kinds: str = ""
    credential_store_path: str = "accounts-{kind}.yaml"
    state_dir: str = ".pool-router"
    upstream_timeout_seconds: float = 120.0
    upstream_connect_timeout_seconds: float = 10.0
    oauth_refresh_timeout_seconds: float = 30.0
    token_supervisor_interval_seconds: float = 60.0
    persist_interval_seconds: float = 5.0
    shutdown_grace_seconds: float = 5.0
    startup_timeout_seconds: float = 10.0
    event_queue_size: int = 1024
    request_log_capacity: int = 2000
    log_level: str = "info"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def proxy_kinds_list(self) -> list[str]:
        return _split_csv(self.proxy_kinds)

    def state_dir_for(self, kind: str) -> Path:
        return Path(self.state_dir) / kind

    def credential_store_for(self, kind: str) -> Path:
        return Path(self.credential_store_path.replace("{kind}", kind))


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
