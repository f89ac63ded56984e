from __future__ import annotations

import asyncio
import dataclasses
import random
from dataclasses import dataclass, field

import pytest

from pool_router.account_pool import AccountStatus, Outcome
from pool_router.config import ApiKeyConfig, ApiKeyUsage, ModelMappingRule, ProxyConfig
from pool_router.credentials import CredentialRecord, StaticCredentialStore
from pool_router.dispatcher import DispatchRequest, DispatchState, RequestDispatcher
from pool_router.errors import (
    AuthError,
    InternalError,
    NoAccountAvailable,
    QuotaExceeded,
    UpstreamFatalError,
    UpstreamTransientError,
)
from pool_router.events import EventChannel, RequestCompletedEvent, RequestStartedEvent
from pool_router.gateway.responses import CONTINUE_PROMPT
from pool_router.gateway.upstream import UpstreamErrorKind
from pool_router.model_mapping import ModelMappingRouter
from pool_router.store import ProxyStore
from pool_router.token_supervisor import TokenLifecycleSupervisor
from tests.service_test_utils import FakeUpstream, Responder, failed_result, make_record, ok_result

NOW = 1_767_225_600.0
BODY = {"messages": [{"role": "user", "content": "hi"}]}


@dataclass
class Harness:
    store: ProxyStore
    credentials: StaticCredentialStore
    upstream: FakeUpstream
    events: EventChannel
    dispatcher: RequestDispatcher
    sleeps: list[float] = field(default_factory=list)


def _harness(
    *,
    config: ProxyConfig | None = None,
    records: list[CredentialRecord] | None = None,
    responder: Responder | None = None,
    refresher=None,
) -> Harness:
    config = config or ProxyConfig(retry_delay_ms=0)
    store = ProxyStore(config)
    credentials = StaticCredentialStore(
        records if records is not None else [make_record("acct-a")], refresher=refresher
    )
    upstream = FakeUpstream(responder)
    events = EventChannel(queue_size=32)
    sleeps: list[float] = []

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    supervisor = TokenLifecycleSupervisor(
        kind="kiro", store=store, credentials=credentials, clock=lambda: NOW
    )
    dispatcher = RequestDispatcher(
        kind="kiro",
        store=store,
        router=ModelMappingRouter(config.model_mappings, rng=random.Random(5)),
        credentials=credentials,
        upstream=upstream,
        config_provider=lambda: config,
        supervisor=supervisor,
        events=events,
        clock=lambda: NOW,
        sleep=fake_sleep,
    )
    return Harness(store, credentials, upstream, events, dispatcher, sleeps)


async def _prepare(harness: Harness) -> None:
    await harness.store.sync_accounts(await harness.credentials.list_accounts())


def _request(model: str = "claude-sonnet-4", *, key: str | None = None, body=None) -> DispatchRequest:
    return DispatchRequest(
        path="/v1/chat/completions",
        model=model,
        body=dict(body or BODY),
        presented_key=key,
    )


def _fail_for(account_ids: set[str], kind: UpstreamErrorKind, status_code: int) -> Responder:
    def responder(credentials, model, body):
        if credentials.id in account_ids:
            return failed_result(kind, status_code, f"{credentials.id} failed")
        return ok_result()

    return responder


def test_successful_dispatch_commits_usage_stats_and_log() -> None:
    harness = _harness()

    async def scenario():
        await _prepare(harness)
        outcome = await harness.dispatcher.dispatch(_request())
        return outcome, await harness.store.get_logs(), await harness.store.get_account("acct-a")

    outcome, logs, account = asyncio.run(scenario())

    assert outcome.success
    assert outcome.state == DispatchState.SUCCESS
    assert outcome.attempts == 1
    assert outcome.result.content == "hello"
    assert outcome.account_id == "acct-a"
    assert len(logs) == 1
    assert logs[0]["success"] is True
    assert logs[0]["status"] == 200
    assert logs[0]["inputTokens"] == 10
    assert logs[0]["accountEmail"] == "acct-a@example.com"
    assert account.request_count == 1
    assert harness.sleeps == []


def test_failure_on_a_then_success_on_cooling_b_logs_single_entry() -> None:
    config = ProxyConfig(max_retries=2, retry_delay_ms=0)
    harness = _harness(
        config=config,
        records=[make_record("A"), make_record("B")],
        responder=_fail_for({"A"}, UpstreamErrorKind.TRANSIENT, 503),
    )

    async def scenario():
        await _prepare(harness)
        # B cools down until NOW + 60.
        await harness.store.report_outcome("B", Outcome.QUOTA, NOW - 240.0, "quota")
        outcome = await harness.dispatcher.dispatch(_request())
        return (
            outcome,
            await harness.store.get_logs(),
            await harness.store.get_account("A"),
        )

    outcome, logs, account_a = asyncio.run(scenario())

    assert outcome.success
    assert outcome.account_id == "B"
    assert outcome.attempts == 2
    assert [call[0] for call in harness.upstream.calls] == ["A", "B"]
    assert len(logs) == 1
    assert logs[0]["accountId"] == "B"
    assert logs[0]["success"] is True
    assert account_a.status == AccountStatus.COOLDOWN
    assert account_a.cooldown_until == NOW + 15.0
    assert account_a.last_error == "A failed"


def test_transient_exhaustion_returns_last_upstream_error() -> None:
    config = ProxyConfig(max_retries=3, retry_delay_ms=100)
    harness = _harness(
        config=config,
        records=[make_record("a"), make_record("b")],
        responder=_fail_for({"a", "b"}, UpstreamErrorKind.TRANSIENT, 503),
    )

    async def scenario():
        await _prepare(harness)
        outcome = await harness.dispatcher.dispatch(_request())
        return outcome, await harness.store.get_logs(), await harness.store.get_account("b")

    outcome, logs, account_b = asyncio.run(scenario())

    assert isinstance(outcome.error, UpstreamTransientError)
    assert outcome.error.status_code == 503
    assert outcome.error.message == "b failed"
    assert outcome.state == DispatchState.FATAL_FAILURE
    assert outcome.attempts == 3
    assert len(harness.upstream.calls) == 2
    assert harness.sleeps == [pytest.approx(0.1), pytest.approx(0.2)]
    assert len(logs) == 1
    assert logs[0]["success"] is False
    assert logs[0]["status"] == 503
    assert logs[0]["accountId"] == "b"
    assert account_b.error_count == 1


def test_quota_without_auto_switch_is_terminal() -> None:
    harness = _harness(
        records=[make_record("a"), make_record("b")],
        responder=_fail_for({"a"}, UpstreamErrorKind.QUOTA, 429),
    )

    async def scenario():
        await _prepare(harness)
        outcome = await harness.dispatcher.dispatch(_request())
        return outcome, await harness.store.get_account("a")

    outcome, account = asyncio.run(scenario())

    assert isinstance(outcome.error, QuotaExceeded)
    assert outcome.error.status_code == 429
    assert len(harness.upstream.calls) == 1
    assert account.status == AccountStatus.COOLDOWN
    assert account.cooldown_until == NOW + 300.0


def test_quota_with_auto_switch_rotates_account_and_model() -> None:
    rule = ModelMappingRule(
        id="lb",
        source_model="gpt-4",
        target_models=["model-x", "model-y"],
        mapping_type="loadbalance",
    )
    config = ProxyConfig(
        retry_delay_ms=0, auto_switch_on_quota_exhausted=True, model_mappings=[rule]
    )
    harness = _harness(
        config=config,
        records=[make_record("a"), make_record("b")],
        responder=_fail_for({"a"}, UpstreamErrorKind.QUOTA, 429),
    )

    async def scenario():
        await _prepare(harness)
        return await harness.dispatcher.dispatch(_request("gpt-4"))

    outcome = asyncio.run(scenario())

    assert outcome.success
    first, second = harness.upstream.calls
    assert (first[0], second[0]) == ("a", "b")
    assert {first[1], second[1]} == {"model-x", "model-y"}
    assert outcome.model == second[1]


def test_fatal_upstream_error_passes_through_without_retry() -> None:
    harness = _harness(
        records=[make_record("a"), make_record("b")],
        responder=_fail_for({"a"}, UpstreamErrorKind.FATAL, 422),
    )

    async def scenario():
        await _prepare(harness)
        outcome = await harness.dispatcher.dispatch(_request())
        return outcome, await harness.store.get_account("a")

    outcome, account = asyncio.run(scenario())

    assert isinstance(outcome.error, UpstreamFatalError)
    assert outcome.error.status_code == 422
    assert len(harness.upstream.calls) == 1
    assert harness.sleeps == []
    assert account.cooldown_until is None
    assert account.error_count == 1
    assert account.last_error == "a failed"


def test_auth_failure_refreshes_credentials_and_retries_same_account() -> None:
    def refresher(record: CredentialRecord) -> CredentialRecord:
        return dataclasses.replace(record, access_token="fresh-token")

    def responder(credentials, model, body):
        if credentials.access_token == "fresh-token":
            return ok_result()
        return failed_result(UpstreamErrorKind.AUTH, 401, "expired token")

    harness = _harness(responder=responder, refresher=refresher)

    async def scenario():
        await _prepare(harness)
        return await harness.dispatcher.dispatch(_request())

    outcome = asyncio.run(scenario())

    assert outcome.success
    assert outcome.attempts == 1
    assert harness.upstream.tokens_seen == ["token-acct-a", "fresh-token"]
    assert harness.credentials.refresh_calls == ["acct-a"]


def test_failed_refresh_moves_on_to_another_account() -> None:
    harness = _harness(
        records=[make_record("a"), make_record("b")],
        responder=_fail_for({"a"}, UpstreamErrorKind.AUTH, 401),
    )

    async def scenario():
        await _prepare(harness)
        outcome = await harness.dispatcher.dispatch(_request())
        return outcome, await harness.store.get_account("a")

    outcome, account = asyncio.run(scenario())

    assert outcome.success
    assert outcome.account_id == "b"
    assert harness.credentials.refresh_calls == ["a"]
    assert account.status == AccountStatus.ERROR
    assert account.cooldown_until == NOW + 60.0


def test_upstream_auth_exhaustion_maps_to_bad_gateway() -> None:
    harness = _harness(
        config=ProxyConfig(max_retries=1, retry_delay_ms=0),
        responder=_fail_for({"acct-a"}, UpstreamErrorKind.AUTH, 403),
    )

    async def scenario():
        await _prepare(harness)
        return await harness.dispatcher.dispatch(_request())

    outcome = asyncio.run(scenario())

    assert isinstance(outcome.error, UpstreamTransientError)
    assert outcome.error.status_code == 502
    assert "authentication failed" in outcome.error.message


def test_single_account_mode_routes_everything_to_designated_account() -> None:
    config = ProxyConfig(retry_delay_ms=0, enable_multi_account=False, selected_account_ids=["b"])
    harness = _harness(config=config, records=[make_record("a"), make_record("b")])

    async def scenario():
        await _prepare(harness)
        return [await harness.dispatcher.dispatch(_request()) for _ in range(3)]

    outcomes = asyncio.run(scenario())

    assert [outcome.account_id for outcome in outcomes] == ["b", "b", "b"]
    assert {call[0] for call in harness.upstream.calls} == {"b"}


def test_single_account_mode_retries_in_place() -> None:
    calls = {"count": 0}

    def responder(credentials, model, body):
        calls["count"] += 1
        if calls["count"] == 1:
            return failed_result(UpstreamErrorKind.TRANSIENT, 500, "flaky")
        return ok_result()

    config = ProxyConfig(retry_delay_ms=0, enable_multi_account=False)
    harness = _harness(
        config=config, records=[make_record("a"), make_record("b")], responder=responder
    )

    async def scenario():
        await _prepare(harness)
        return await harness.dispatcher.dispatch(_request())

    outcome = asyncio.run(scenario())

    assert outcome.success
    assert [call[0] for call in harness.upstream.calls] == ["a", "a"]


def test_empty_pool_returns_no_account_available() -> None:
    harness = _harness(records=[])

    async def scenario():
        await _prepare(harness)
        outcome = await harness.dispatcher.dispatch(_request())
        return outcome, await harness.store.get_logs()

    outcome, logs = asyncio.run(scenario())

    assert isinstance(outcome.error, NoAccountAvailable)
    assert outcome.error.status_code == 503
    assert harness.upstream.calls == []
    assert logs[0]["success"] is False
    assert logs[0]["accountId"] is None
    assert logs[0]["status"] == 503


def test_quota_exhausted_key_is_rejected_before_account_selection() -> None:
    key = ApiKeyConfig(
        id="k1",
        key="sk-limited-123456",
        credits_limit=100.0,
        usage=ApiKeyUsage(total_requests=4, total_credits=100.0),
    )
    harness = _harness(config=ProxyConfig(auth_enabled=True, api_keys=[key]))
    subscription = harness.events.subscribe()

    async def scenario():
        await _prepare(harness)
        outcome = await harness.dispatcher.dispatch(_request(key="sk-limited-123456"))
        return outcome, await harness.store.get_logs(), await harness.store.get_account("acct-a")

    outcome, logs, account = asyncio.run(scenario())

    assert isinstance(outcome.error, QuotaExceeded)
    assert outcome.api_key_id == "k1"
    assert harness.upstream.calls == []
    assert logs == []
    assert account.last_used == 0.0
    assert subscription.queue_depth == 0


def test_invalid_key_is_rejected_without_log_entry() -> None:
    harness = _harness(config=ProxyConfig(auth_enabled=True, api_key="legacy-secret"))

    async def scenario():
        await _prepare(harness)
        outcome = await harness.dispatcher.dispatch(_request(key="wrong"))
        return outcome, await harness.store.get_logs()

    outcome, logs = asyncio.run(scenario())

    assert isinstance(outcome.error, AuthError)
    assert outcome.error.status_code == 401
    assert logs == []


def test_deleted_key_fails_auth_but_old_logs_keep_its_id() -> None:
    key = ApiKeyConfig(id="k1", key="sk-deletable-key")
    harness = _harness(config=ProxyConfig(auth_enabled=True, retry_delay_ms=0, api_keys=[key]))

    async def scenario():
        await _prepare(harness)
        first = await harness.dispatcher.dispatch(_request(key="sk-deletable-key"))
        usage = (await harness.store.api_key_views())[0]["usage"]
        await harness.store.delete_api_key("k1")
        second = await harness.dispatcher.dispatch(_request(key="sk-deletable-key"))
        return first, usage, second, await harness.store.get_logs()

    first, usage, second, logs = asyncio.run(scenario())

    assert first.success
    assert usage["totalRequests"] == 1
    assert usage["totalCredits"] == pytest.approx(1.0)
    assert isinstance(second.error, AuthError)
    assert len(logs) == 1
    assert logs[0]["apiKeyId"] == "k1"


def test_truncated_result_is_continued_and_merged() -> None:
    def responder(credentials, model, body):
        if body["messages"][-1]["content"] == CONTINUE_PROMPT:
            return ok_result(content=" part two", input_tokens=20, output_tokens=7, credits=0.5)
        return ok_result(content="part one", truncated=True)

    harness = _harness(
        config=ProxyConfig(retry_delay_ms=0, auto_continue_rounds=2), responder=responder
    )

    async def scenario():
        await _prepare(harness)
        return await harness.dispatcher.dispatch(_request())

    outcome = asyncio.run(scenario())

    assert outcome.success
    assert outcome.result.content == "part one part two"
    assert outcome.result.truncated is False
    assert outcome.result.input_tokens == 30
    assert outcome.result.output_tokens == 12
    assert outcome.result.credits == pytest.approx(1.5)
    assert len(harness.upstream.calls) == 2
    continued_messages = harness.upstream.calls[1][2]["messages"]
    assert continued_messages[-2] == {"role": "assistant", "content": "part one"}


def test_truncated_result_is_returned_as_is_when_continuation_disabled() -> None:
    harness = _harness(responder=lambda credentials, model, body: ok_result(truncated=True))

    async def scenario():
        await _prepare(harness)
        return await harness.dispatcher.dispatch(_request())

    outcome = asyncio.run(scenario())

    assert outcome.success
    assert outcome.result.truncated is True
    assert len(harness.upstream.calls) == 1


def test_disable_tools_strips_tool_fields_from_upstream_body() -> None:
    harness = _harness(config=ProxyConfig(retry_delay_ms=0, disable_tools=True))
    body = {
        **BODY,
        "tools": [{"type": "function", "function": {"name": "lookup"}}],
        "tool_choice": "auto",
        "temperature": 0.2,
    }

    async def scenario():
        await _prepare(harness)
        return await harness.dispatcher.dispatch(_request(body=body))

    asyncio.run(scenario())

    sent = harness.upstream.calls[0][2]
    assert "tools" not in sent
    assert "tool_choice" not in sent
    assert sent["temperature"] == 0.2


def test_unexpected_exception_becomes_internal_error_and_is_logged() -> None:
    def responder(credentials, model, body):
        raise RuntimeError("caller exploded")

    harness = _harness(responder=responder)

    async def scenario():
        await _prepare(harness)
        outcome = await harness.dispatcher.dispatch(_request())
        return outcome, await harness.store.get_logs(), await harness.store.get_account("acct-a")

    outcome, logs, account = asyncio.run(scenario())

    assert isinstance(outcome.error, InternalError)
    assert outcome.error.status_code == 500
    assert logs[0]["success"] is False
    assert logs[0]["status"] == 500
    assert "caller exploded" in logs[0]["error"]
    assert account.error_count == 1
    assert account.cooldown_until is None


def test_dispatch_publishes_started_and_completed_events() -> None:
    harness = _harness()
    subscription = harness.events.subscribe()

    async def scenario():
        await _prepare(harness)
        outcome = await harness.dispatcher.dispatch(_request())
        return outcome, await subscription.get(), await subscription.get()

    outcome, started, completed = asyncio.run(scenario())

    assert isinstance(started, RequestStartedEvent)
    assert started.request_id == outcome.request_id
    assert isinstance(completed, RequestCompletedEvent)
    assert completed.entry == outcome.entry
    assert completed.to_payload()["entry"]["success"] is True


def test_concurrent_dispatches_spread_over_accounts() -> None:
    harness = _harness(records=[make_record("a"), make_record("b"), make_record("c")])

    async def scenario():
        await _prepare(harness)
        return await asyncio.gather(*(harness.dispatcher.dispatch(_request()) for _ in range(3)))

    outcomes = asyncio.run(scenario())

    assert sorted(outcome.account_id for outcome in outcomes) == ["a", "b", "c"]
