from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pool_router.account_pool import Account, Outcome
from pool_router.config import ProxyConfig
from pool_router.credentials import CredentialRecord, CredentialStore
from pool_router.errors import (
    InternalError,
    NoAccountAvailable,
    ProxyError,
    QuotaExceeded,
    UpstreamFatalError,
    UpstreamTransientError,
    truncate_error,
)
from pool_router.events import EventChannel, RequestCompletedEvent, RequestStartedEvent
from pool_router.gateway.responses import continuation_body, new_request_id, strip_tools
from pool_router.gateway.upstream import UpstreamCaller, UpstreamErrorKind, UpstreamResult
from pool_router.model_mapping import ModelMappingRouter
from pool_router.stats import RequestLogEntry
from pool_router.store import ProxyStore
from pool_router.token_supervisor import TokenLifecycleSupervisor

logger = logging.getLogger("uvicorn.error")

_OUTCOME_BY_KIND = {
    UpstreamErrorKind.TRANSIENT: Outcome.TRANSIENT,
    UpstreamErrorKind.QUOTA: Outcome.QUOTA,
    UpstreamErrorKind.AUTH: Outcome.AUTH,
    UpstreamErrorKind.FATAL: Outcome.FATAL,
}


class DispatchState(str, Enum):
    AUTHENTICATING = "authenticating"
    RESOLVING_MODEL = "resolving_model"
    SELECTING_ACCOUNT = "selecting_account"
    CALLING_UPSTREAM = "calling_upstream"
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    FATAL_FAILURE = "fatal_failure"


@dataclass(slots=True)
class DispatchRequest:
    path: str
    model: str
    body: dict[str, Any]
    presented_key: str | None = None
    method: str = "POST"
    request_id: str = field(default_factory=lambda: new_request_id("req_"))


@dataclass(slots=True)
class DispatchOutcome:
    request_id: str
    state: DispatchState
    model: str
    attempts: int = 0
    result: UpstreamResult | None = None
    error: ProxyError | None = None
    account_id: str | None = None
    api_key_id: str | None = None
    entry: RequestLogEntry | None = None

    @property
    def success(self) -> bool:
        return self.error is None and self.result is not None


@dataclass(slots=True)
class _DispatchContext:
    request: DispatchRequest
    config: ProxyConfig
    started_at: float
    api_key_id: str | None = None
    state: DispatchState = DispatchState.AUTHENTICATING
    model: str = ""
    attempts: int = 0
    account: Account | None = None
    outcome: Outcome | None = None
    result: UpstreamResult | None = None
    error: ProxyError | None = None


class RequestDispatcher:
    """Runs one client request against the account pool with retry and failover."""

    def __init__(
        self,
        *,
        kind: str,
        store: ProxyStore,
        router: ModelMappingRouter,
        credentials: CredentialStore,
        upstream: UpstreamCaller,
        config_provider: Callable[[], ProxyConfig],
        supervisor: TokenLifecycleSupervisor | None = None,
        events: EventChannel | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._kind = kind
        self._store = store
        self._router = router
        self._credentials = credentials
        self._upstream = upstream
        self._config_provider = config_provider
        self._supervisor = supervisor
        self._events = events
        self._clock = clock
        self._sleep = sleep

    async def dispatch(self, request: DispatchRequest) -> DispatchOutcome:
        context = _DispatchContext(
            request=request,
            config=self._config_provider(),
            started_at=self._clock(),
            model=request.model,
        )
        perf_started = time.perf_counter()

        try:
            auth = await self._store.authenticate(request.presented_key)
            context.api_key_id = auth.api_key_id
            await self._store.enforce_quota(auth.api_key_id)
        except ProxyError as exc:
            logger.info(
                "dispatch_rejected request_id=%s kind=%s path=%s status=%d reason=%s",
                request.request_id,
                self._kind,
                request.path,
                exc.status_code,
                exc.message,
            )
            return DispatchOutcome(
                request_id=request.request_id,
                state=DispatchState.FATAL_FAILURE,
                model=request.model,
                error=exc,
                api_key_id=context.api_key_id,
            )

        if self._events is not None:
            self._events.publish(
                RequestStartedEvent(
                    kind=self._kind,
                    request_id=request.request_id,
                    path=request.path,
                    model=request.model,
                )
            )

        try:
            await self._run(context)
        except Exception as exc:
            logger.exception(
                "dispatch_internal_error request_id=%s kind=%s state=%s",
                request.request_id,
                self._kind,
                context.state.value,
            )
            context.state = DispatchState.FATAL_FAILURE
            context.result = None
            context.error = InternalError(f"Internal proxy error: {exc}")
            context.outcome = Outcome.FATAL if context.account is not None else None

        return await self._commit(context, perf_started)

    async def _run(self, context: _DispatchContext) -> None:
        config = context.config
        request = context.request

        context.state = DispatchState.RESOLVING_MODEL
        context.model = self._router.resolve(request.model, context.api_key_id)[0]
        attempted_models = [context.model]

        candidate_ids: tuple[str, ...] = ()
        if not config.enable_multi_account:
            designated = await self._store.designated_account_id(config.selected_account_ids)
            if designated is None:
                context.state = DispatchState.FATAL_FAILURE
                context.error = NoAccountAvailable("No upstream account is configured.")
                return
            candidate_ids = (designated,)

        body = strip_tools(request.body) if config.disable_tools else request.body
        max_attempts = config.effective_max_attempts
        excluded: list[str] = []
        last_error: ProxyError | None = None

        for attempt in range(1, max_attempts + 1):
            context.attempts = attempt
            context.state = DispatchState.SELECTING_ACCOUNT
            account = await self._store.select_account(
                candidate_ids, self._clock(), exclude=excluded
            )
            if account is None:
                # The failing account's outcome was already reported.
                context.outcome = None
                alternative = self._router.resolve_alternative(
                    request.model, context.api_key_id, attempted_models
                )
                if attempt < max_attempts and alternative not in attempted_models:
                    context.state = DispatchState.RETRYABLE_FAILURE
                    context.model = alternative
                    attempted_models.append(alternative)
                    excluded.clear()
                    await self._retry_delay(config, attempt)
                    continue
                context.state = DispatchState.FATAL_FAILURE
                if last_error is not None:
                    context.error = last_error
                else:
                    context.account = None
                    context.error = NoAccountAvailable(
                        f"No available account for model '{context.model}'."
                    )
                return

            context.account = account
            context.state = DispatchState.CALLING_UPSTREAM
            result = await self._call_account(account, context.model, body)

            if result.ok:
                context.result = await self._auto_continue(
                    config, account, context.model, body, result
                )
                context.error = None
                context.outcome = Outcome.SUCCESS
                context.state = DispatchState.SUCCESS
                return

            kind = result.error_kind or UpstreamErrorKind.TRANSIENT
            context.outcome = _OUTCOME_BY_KIND[kind]
            context.error = last_error = _error_for(result, kind)
            retryable = kind in (UpstreamErrorKind.TRANSIENT, UpstreamErrorKind.AUTH) or (
                kind == UpstreamErrorKind.QUOTA and config.auto_switch_on_quota_exhausted
            )
            if not retryable or attempt >= max_attempts:
                context.state = DispatchState.FATAL_FAILURE
                return

            context.state = DispatchState.RETRYABLE_FAILURE
            logger.info(
                "dispatch_retry request_id=%s kind=%s account=%s model=%s attempt=%d/%d error_kind=%s",
                request.request_id,
                self._kind,
                account.id,
                context.model,
                attempt,
                max_attempts,
                kind.value,
            )
            await self._store.report_outcome(
                account.id, context.outcome, self._clock(), result.error_message
            )
            # A designated single account is retried in place.
            if config.enable_multi_account:
                excluded.append(account.id)
            if kind == UpstreamErrorKind.QUOTA:
                alternative = self._router.resolve_alternative(
                    request.model, context.api_key_id, attempted_models
                )
                if alternative not in attempted_models:
                    context.model = alternative
                    attempted_models.append(alternative)
            await self._retry_delay(config, attempt)

    async def _call_account(
        self,
        account: Account,
        model: str,
        body: dict[str, Any],
    ) -> UpstreamResult:
        credentials = await self._credentials.get(account.id)
        if credentials is None:
            return UpstreamResult.failure(
                UpstreamErrorKind.AUTH,
                f"Credentials for account '{account.id}' are missing.",
                status_code=401,
            )
        result = await self._upstream.call(credentials, model, body)
        if result.error_kind != UpstreamErrorKind.AUTH or self._supervisor is None:
            return result

        refreshed = await self._supervisor.refresh_account(account.id)
        if refreshed is None:
            return result
        logger.info("dispatch_auth_refreshed account=%s model=%s", account.id, model)
        return await self._upstream.call(refreshed, model, body)

    async def _auto_continue(
        self,
        config: ProxyConfig,
        account: Account,
        model: str,
        body: dict[str, Any],
        result: UpstreamResult,
    ) -> UpstreamResult:
        rounds = 0
        credentials: CredentialRecord | None = None
        while result.truncated and rounds < config.auto_continue_rounds:
            rounds += 1
            if credentials is None:
                credentials = await self._credentials.get(account.id)
                if credentials is None:
                    break
            continued = await self._upstream.call(
                credentials, model, continuation_body(body, result.content)
            )
            if not continued.ok:
                logger.warning(
                    "dispatch_continue_failed account=%s model=%s round=%d error=%s",
                    account.id,
                    model,
                    rounds,
                    continued.error_message,
                )
                break
            result = UpstreamResult(
                content=result.content + continued.content,
                reasoning=result.reasoning + continued.reasoning,
                tool_calls=result.tool_calls + continued.tool_calls,
                input_tokens=result.input_tokens + continued.input_tokens,
                output_tokens=result.output_tokens + continued.output_tokens,
                credits=result.credits + continued.credits,
                status_code=result.status_code,
                truncated=continued.truncated,
                endpoint=result.endpoint,
            )
        return result

    async def _retry_delay(self, config: ProxyConfig, attempt: int) -> None:
        delay = config.retry_delay_ms * attempt / 1000.0
        if delay > 0:
            await self._sleep(delay)

    async def _commit(self, context: _DispatchContext, perf_started: float) -> DispatchOutcome:
        request = context.request
        result = context.result
        error = context.error
        account = context.account
        success = error is None and result is not None
        status = result.status_code if success and result is not None else (
            error.status_code if error is not None else 500
        )
        entry = RequestLogEntry(
            timestamp=int(context.started_at),
            path=request.path,
            method=request.method,
            model=context.model,
            account_id=account.id if account is not None else None,
            account_email=(account.email or None) if account is not None else None,
            api_key_id=context.api_key_id,
            input_tokens=result.input_tokens if success and result is not None else 0,
            output_tokens=result.output_tokens if success and result is not None else 0,
            credits=result.credits if success and result is not None else 0.0,
            response_time_ms=int((time.perf_counter() - perf_started) * 1000.0),
            status=status,
            success=success,
            error=None if success or error is None else truncate_error(error.message),
        )
        await self._store.commit_request(entry, outcome=context.outcome, now=self._clock())
        if self._events is not None:
            self._events.publish(
                RequestCompletedEvent(kind=self._kind, entry=entry, request_id=request.request_id)
            )
        logger.info(
            "dispatch_complete request_id=%s kind=%s model=%s account=%s status=%d attempts=%d latency_ms=%d",
            request.request_id,
            self._kind,
            context.model,
            entry.account_id,
            status,
            context.attempts,
            entry.response_time_ms,
        )
        return DispatchOutcome(
            request_id=request.request_id,
            state=context.state,
            model=context.model,
            attempts=context.attempts,
            result=result if success else None,
            error=None if success else error,
            account_id=entry.account_id,
            api_key_id=context.api_key_id,
            entry=entry,
        )


def _error_for(result: UpstreamResult, kind: UpstreamErrorKind) -> ProxyError:
    message = result.error_message or f"Upstream returned HTTP {result.status_code}."
    if kind == UpstreamErrorKind.QUOTA:
        return QuotaExceeded(message)
    if kind == UpstreamErrorKind.FATAL:
        return UpstreamFatalError(message, status_code=result.status_code)
    if kind == UpstreamErrorKind.AUTH:
        return UpstreamTransientError(f"Upstream authentication failed: {message}")
    status_code = result.status_code if result.status_code >= 500 else 502
    return UpstreamTransientError(message, status_code=status_code)
