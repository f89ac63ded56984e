from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import uvicorn
import yaml
from pydantic import ValidationError as PydanticValidationError

from pool_router.config import ModelMappingRule, ProxyConfig, ProxyConfigFile
from pool_router.credentials import CredentialStore, YamlCredentialStore
from pool_router.dispatcher import DispatchOutcome, DispatchRequest, RequestDispatcher
from pool_router.errors import (
    ConfigError,
    CredentialError,
    ProxyError,
    ProxyStartError,
    ValidationError,
)
from pool_router.events import EventChannel, StatusChangeEvent
from pool_router.gateway.audit import AUDIT_FILE, RequestAuditWriter
from pool_router.gateway.upstream import HttpUpstreamCaller, UpstreamCaller
from pool_router.model_mapping import ModelMappingRouter
from pool_router.settings import Settings, get_settings
from pool_router.storage import ProxyStateStorage
from pool_router.store import ProxyStore
from pool_router.token_supervisor import TokenLifecycleSupervisor

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = logging.getLogger("uvicorn.error")

MIN_MODEL_CACHE_TTL_SECONDS = 30


@dataclass(slots=True)
class ProxyRuntimeStatus:
    running: bool = False
    host: str = ""
    port: int = 0
    started_at: float | None = None
    error: str | None = None

    def to_payload(self, counters: Mapping[str, Any], now: float) -> dict[str, Any]:
        uptime = int(now - self.started_at) if self.running and self.started_at else 0
        return {
            "running": self.running,
            "host": self.host,
            "port": self.port,
            "startedAt": int(self.started_at) if self.started_at else None,
            "uptimeSeconds": max(0, uptime),
            "error": self.error,
            **counters,
        }


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the host."""

    @contextlib.contextmanager
    def capture_signals(self):  # type: ignore[override]
        yield

    def install_signal_handlers(self) -> None:
        return None


class ProxyService:
    """Lifecycle and admin surface of one proxy kind."""

    def __init__(
        self,
        *,
        kind: str,
        config: ProxyConfig,
        credentials: CredentialStore,
        upstream: UpstreamCaller,
        settings: Settings | None = None,
        config_file: ProxyConfigFile | None = None,
        state_storage: ProxyStateStorage | None = None,
        events: EventChannel | None = None,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        self.kind = kind
        self.settings = settings or get_settings()
        self._config = config
        self._credentials = credentials
        self._upstream = upstream
        self._config_file = config_file
        self._state_storage = state_storage
        self._clock = clock
        self.events = events or EventChannel(queue_size=self.settings.event_queue_size)

        self.store = ProxyStore(config, log_capacity=self.settings.request_log_capacity)
        self.router = ModelMappingRouter(config.model_mappings, rng=rng)
        self.supervisor = TokenLifecycleSupervisor(
            kind=kind,
            store=self.store,
            credentials=credentials,
            refresh_before_expiry_seconds=config.token_refresh_before_expiry_sec,
            interval_seconds=self.settings.token_supervisor_interval_seconds,
            clock=clock,
        )
        self.dispatcher = RequestDispatcher(
            kind=kind,
            store=self.store,
            router=self.router,
            credentials=credentials,
            upstream=upstream,
            config_provider=lambda: self._config,
            supervisor=self.supervisor,
            events=self.events,
            clock=clock,
        )
        self._audit: RequestAuditWriter | None = None
        if state_storage is not None:
            self._audit = RequestAuditWriter(
                self.events, state_storage.directory / AUDIT_FILE
            )

        self._status = ProxyRuntimeStatus(host=config.host, port=config.port)
        self._lifecycle_lock = asyncio.Lock()
        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task[None] | None = None
        self._flusher_task: asyncio.Task[None] | None = None
        self._restart_task: asyncio.Task[dict[str, Any]] | None = None
        self._app: FastAPI | None = None

        self._models_lock = asyncio.Lock()
        self._model_cache: list[str] = []
        self._model_cache_fetched_at = 0.0
        self._apply_endpoints(config)
        self._restore_state()

    @property
    def config(self) -> ProxyConfig:
        return self._config

    @property
    def running(self) -> bool:
        return self._status.running

    @property
    def app(self) -> FastAPI:
        if self._app is None:
            from pool_router.main import create_app

            self._app = create_app(self)
        return self._app

    def _restore_state(self) -> None:
        if self._state_storage is None:
            return
        self.store.restore(
            self._state_storage.load_aggregate(),
            self._state_storage.load_logs(),
        )
        cache = self._state_storage.load_model_cache()
        models = cache.get("models")
        if isinstance(models, list):
            self._model_cache = [str(item) for item in models if item]
            self._model_cache_fetched_at = float(cache.get("fetchedAt") or 0.0)

    def _apply_endpoints(self, config: ProxyConfig) -> None:
        set_endpoints = getattr(self._upstream, "set_endpoints", None)
        if callable(set_endpoints):
            set_endpoints(config.ordered_endpoints())

    async def dispatch(self, request: DispatchRequest) -> DispatchOutcome:
        return await self.dispatcher.dispatch(request)

    async def status(self) -> dict[str, Any]:
        return self._status.to_payload(await self.store.totals(), self._clock())

    async def start(self) -> dict[str, Any]:
        async with self._lifecycle_lock:
            if self._status.running:
                return await self.status()
            config = self._config
            self._status = ProxyRuntimeStatus(host=config.host, port=config.port)
            try:
                try:
                    await self.sync_accounts()
                except (CredentialError, OSError) as exc:
                    raise ProxyStartError(f"Could not load accounts: {exc}") from exc
                await self._start_server(config)
            except ProxyStartError as exc:
                self._status.error = str(exc)
                logger.error(
                    "proxy_start_failed kind=%s host=%s port=%d error=%s",
                    self.kind,
                    config.host,
                    config.port,
                    str(exc),
                )
                self._publish_status(await self.status())
                raise

            self._status.running = True
            self._status.started_at = self._clock()
            await self.supervisor.start()
            if self._audit is not None and config.log_requests:
                await self._audit.start()
            self._flusher_task = asyncio.create_task(
                self._run_flusher(), name=f"state-flusher-{self.kind}"
            )
            logger.info(
                "proxy_started kind=%s host=%s port=%d", self.kind, config.host, config.port
            )
            payload = await self.status()
            self._publish_status(payload)
            return payload

    async def _start_server(self, config: ProxyConfig) -> None:
        server = _EmbeddedServer(
            uvicorn.Config(
                self.app,
                host=config.host,
                port=config.port,
                log_level=self.settings.log_level,
                lifespan="off",
            )
        )
        task = asyncio.create_task(
            _serve(server), name=f"proxy-server-{self.kind}"
        )
        deadline = time.monotonic() + self.settings.startup_timeout_seconds
        while not server.started and not task.done():
            if time.monotonic() >= deadline:
                server.should_exit = True
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError, ProxyStartError):
                    await task
                raise ProxyStartError(
                    f"Listener on {config.host}:{config.port} did not start in time."
                )
            await asyncio.sleep(0.05)

        if task.done():
            exc = task.exception() if not task.cancelled() else None
            if isinstance(exc, ProxyStartError):
                raise exc
            raise ProxyStartError(
                f"Listener on {config.host}:{config.port} exited during startup."
            )
        self._server = server
        self._server_task = task

    async def stop(self) -> dict[str, Any]:
        async with self._lifecycle_lock:
            if not self._status.running:
                return await self.status()
            await self._stop_server()
            await self.supervisor.stop()
            if self._audit is not None:
                await self._audit.stop()
            if self._flusher_task is not None:
                self._flusher_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._flusher_task
                self._flusher_task = None
            await self.persist(force=True)
            self._status.running = False
            self._status.started_at = None
            logger.info("proxy_stopped kind=%s", self.kind)
            payload = await self.status()
            self._publish_status(payload)
            return payload

    async def _stop_server(self) -> None:
        server, task = self._server, self._server_task
        self._server = None
        self._server_task = None
        if server is None or task is None:
            return
        server.should_exit = True
        try:
            await asyncio.wait_for(
                asyncio.shield(task), timeout=self.settings.shutdown_grace_seconds
            )
        except TimeoutError:
            logger.warning("proxy_stop_forced kind=%s", self.kind)
            server.force_exit = True
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        except ProxyStartError:
            pass

    async def restart(self) -> dict[str, Any]:
        await self.stop()
        return await self.start()

    async def close(self) -> None:
        await self.stop()
        close = getattr(self._upstream, "close", None)
        if callable(close):
            await close()

    async def maybe_auto_start(self) -> dict[str, Any] | None:
        if not (self._config.enabled and self._config.auto_start):
            return None
        try:
            return await self.start()
        except ProxyStartError:
            return None

    async def update_config(
        self, new_config: ProxyConfig, *, defer_restart: bool = False
    ) -> dict[str, Any]:
        previous = self._config
        # Key usage lives in the store; carry it into the new definitions.
        await self.store.configure(new_config)
        new_config = new_config.replace(api_keys=await self.store.api_key_configs())
        self._config = new_config
        self.router.replace_rules(new_config.model_mappings)
        self.supervisor.set_refresh_window(new_config.token_refresh_before_expiry_sec)
        self._apply_endpoints(new_config)
        await self.sync_accounts()
        await self._save_config()
        if self._audit is not None and self._status.running:
            if new_config.log_requests and not self._audit.running:
                await self._audit.start()
            elif not new_config.log_requests and self._audit.running:
                await self._audit.stop()

        if self._status.running and (
            previous.host != new_config.host or previous.port != new_config.port
        ):
            logger.info(
                "proxy_rebind kind=%s host=%s port=%d",
                self.kind,
                new_config.host,
                new_config.port,
            )
            if defer_restart:
                # Called from a request served by this listener; it cannot wait for itself.
                self._restart_task = asyncio.create_task(
                    self.restart(), name=f"proxy-restart-{self.kind}"
                )
                return await self.status()
            return await self.restart()
        return await self.status()

    async def update_config_from_payload(
        self, changes: Mapping[str, Any], *, defer_restart: bool = False
    ) -> dict[str, Any]:
        merged = self._config.to_payload()
        merged.update(changes)
        try:
            new_config = ProxyConfig.model_validate(merged)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid proxy config: {exc}") from exc
        return await self.update_config(new_config, defer_restart=defer_restart)

    async def sync_accounts(self) -> int:
        try:
            records = await self._credentials.list_accounts()
        except CredentialError as exc:
            logger.warning("account_sync_failed kind=%s error=%s", self.kind, str(exc))
            raise
        count = await self.store.sync_accounts(records, self._config.selected_account_ids)
        logger.info("account_sync kind=%s accounts=%d", self.kind, count)
        return count

    async def get_accounts(self) -> list[dict[str, Any]]:
        return await self.store.account_views()

    async def get_models(self) -> list[str]:
        ttl = max(self._config.model_cache_ttl_sec, MIN_MODEL_CACHE_TTL_SECONDS)
        if self._model_cache and self._clock() - self._model_cache_fetched_at < ttl:
            return self._merge_models(self._model_cache)

        async with self._models_lock:
            now = self._clock()
            if self._model_cache and now - self._model_cache_fetched_at < ttl:
                return self._merge_models(self._model_cache)
            fetched = await self._fetch_models(now)
            if fetched:
                self._model_cache = fetched
                self._model_cache_fetched_at = now
                await self._save_model_cache()
        return self._merge_models(self._model_cache)

    async def _fetch_models(self, now: float) -> list[str]:
        account_id = await self.store.first_available_account_id(now)
        if account_id is None:
            return []
        credentials = await self._credentials.get(account_id)
        if credentials is None:
            return []
        try:
            return await self._upstream.list_models(credentials)
        except ProxyError as exc:
            logger.warning("model_list_failed kind=%s error=%s", self.kind, exc.message)
            return []

    def _merge_models(self, models: list[str]) -> list[str]:
        merged: list[str] = []
        for model in [*models, *self.router.advertised_models()]:
            if model not in merged:
                merged.append(model)
        return merged

    async def get_stats(self) -> dict[str, Any]:
        return await self.store.stats_snapshot(await self.status(), self._clock())

    async def get_logs(self, limit: int = 200) -> list[dict[str, Any]]:
        return await self.store.get_logs(limit)

    async def clear_logs(self) -> None:
        await self.store.clear_logs()
        await self.persist()

    async def reset_stats(self) -> None:
        await self.store.reset_stats()
        await self.persist()

    async def get_api_keys(self) -> list[dict[str, Any]]:
        return await self.store.api_key_views()

    async def add_api_key(
        self,
        *,
        key: str,
        name: str = "",
        enabled: bool = True,
        credits_limit: float | None = None,
    ) -> dict[str, Any]:
        view = await self.store.add_api_key(
            key=key, name=name, enabled=enabled, credits_limit=credits_limit
        )
        await self._persist_api_keys()
        return view

    async def update_api_key(self, key_id: str, changes: Mapping[str, Any]) -> dict[str, Any]:
        view = await self.store.update_api_key(key_id, changes)
        await self._persist_api_keys()
        return view

    async def delete_api_key(self, key_id: str) -> None:
        await self.store.delete_api_key(key_id)
        await self._persist_api_keys()

    async def reset_api_key_usage(self, key_id: str) -> dict[str, Any]:
        view = await self.store.reset_api_key_usage(key_id)
        await self._persist_api_keys()
        return view

    def get_model_mappings(self) -> list[dict[str, Any]]:
        return [rule.to_payload() for rule in self._config.model_mappings]

    async def save_model_mappings(self, raw_rules: list[Any]) -> list[dict[str, Any]]:
        try:
            rules = [ModelMappingRule.model_validate(item) for item in raw_rules]
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid model mapping: {exc}") from exc
        ids = [rule.id for rule in rules]
        if len(ids) != len(set(ids)):
            raise ValidationError("Model mapping ids must be unique.")
        self._config = self._config.replace(model_mappings=rules)
        self.router.replace_rules(rules)
        await self._save_config()
        return self.get_model_mappings()

    async def persist(self, *, force: bool = False) -> None:
        state = await self.store.take_dirty(force=force)
        if self._state_storage is not None:
            if state.aggregate is not None:
                await asyncio.to_thread(self._state_storage.save_aggregate, state.aggregate)
            if state.logs is not None:
                await asyncio.to_thread(self._state_storage.save_logs, state.logs)
        if state.api_keys is not None:
            # Admin key edits may have landed during the state writes above.
            await self._persist_api_keys()

    async def _persist_api_keys(self) -> None:
        self._config = self._config.replace(api_keys=await self.store.api_key_configs())
        await self._save_config()

    async def _save_config(self) -> None:
        if self._config_file is None:
            return
        try:
            await asyncio.to_thread(self._config_file.save, self.kind, self._config)
        except (OSError, yaml.YAMLError, ConfigError) as exc:
            logger.warning("config_save_failed kind=%s error=%s", self.kind, str(exc))

    async def _save_model_cache(self) -> None:
        if self._state_storage is None:
            return
        payload = {"models": list(self._model_cache), "fetchedAt": self._model_cache_fetched_at}
        try:
            await asyncio.to_thread(self._state_storage.save_model_cache, payload)
        except OSError as exc:
            logger.warning("model_cache_save_failed kind=%s error=%s", self.kind, str(exc))

    async def _run_flusher(self) -> None:
        interval = max(0.5, float(self.settings.persist_interval_seconds))
        while True:
            await asyncio.sleep(interval)
            try:
                await self.persist()
            except (OSError, yaml.YAMLError) as exc:
                logger.warning("state_flush_failed kind=%s error=%s", self.kind, str(exc))

    def _publish_status(self, payload: dict[str, Any]) -> None:
        self.events.publish(StatusChangeEvent(kind=self.kind, status=payload))


async def _serve(server: uvicorn.Server) -> None:
    try:
        await server.serve()
    except SystemExit as exc:
        # uvicorn exits the process when it cannot bind; keep that inside the task.
        raise ProxyStartError(f"Listener failed to start (exit code {exc.code}).") from None


def build_service(
    kind: str,
    *,
    settings: Settings | None = None,
    config_file: ProxyConfigFile | None = None,
    credentials: CredentialStore | None = None,
    upstream: UpstreamCaller | None = None,
) -> ProxyService:
    resolved = settings or get_settings()
    config_file = config_file or ProxyConfigFile(resolved.proxy_config_path)
    config = config_file.load(kind)
    return ProxyService(
        kind=kind,
        config=config,
        credentials=credentials
        or YamlCredentialStore(
            resolved.credential_store_for(kind),
            timeout_seconds=resolved.oauth_refresh_timeout_seconds,
        ),
        upstream=upstream
        or HttpUpstreamCaller(
            config.ordered_endpoints(),
            timeout_seconds=resolved.upstream_timeout_seconds,
            connect_timeout_seconds=resolved.upstream_connect_timeout_seconds,
        ),
        settings=resolved,
        config_file=config_file,
        state_storage=ProxyStateStorage(resolved.state_dir_for(kind)),
    )
