from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import httpx

from pool_router.credentials import CredentialRecord
from pool_router.errors import UpstreamTransientError, truncate_error

logger = logging.getLogger("uvicorn.error")


class UpstreamErrorKind(str, Enum):
    TRANSIENT = "transient"
    QUOTA = "quota"
    AUTH = "auth"
    FATAL = "fatal"


@dataclass(slots=True)
class UpstreamResult:
    content: str = ""
    reasoning: str = ""
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    credits: float = 0.0
    status_code: int = 200
    error_kind: UpstreamErrorKind | None = None
    error_message: str | None = None
    truncated: bool = False
    endpoint: str | None = None

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @classmethod
    def failure(
        cls,
        kind: UpstreamErrorKind,
        message: str,
        *,
        status_code: int,
        endpoint: str | None = None,
    ) -> UpstreamResult:
        return cls(
            status_code=status_code,
            error_kind=kind,
            error_message=truncate_error(message),
            endpoint=endpoint,
        )


class UpstreamCaller(Protocol):
    async def call(
        self,
        credentials: CredentialRecord,
        model: str,
        body: dict[str, Any],
    ) -> UpstreamResult: ...

    async def list_models(self, credentials: CredentialRecord) -> list[str]: ...


def classify_status(status_code: int) -> UpstreamErrorKind | None:
    if status_code < 400:
        return None
    if status_code == 429:
        return UpstreamErrorKind.QUOTA
    if status_code in (401, 403):
        return UpstreamErrorKind.AUTH
    if status_code >= 500 or status_code in (408, 425):
        return UpstreamErrorKind.TRANSIENT
    return UpstreamErrorKind.FATAL


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_message = str(exc).strip() or repr(exc)
    return {
        "error": error_message,
        "error_type": exc.__class__.__name__.strip() or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }


def _error_message_from_response(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return text or f"Upstream returned HTTP {response.status_code}."
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error.strip():
            return error
        if body.get("message"):
            return str(body["message"])
    return f"Upstream returned HTTP {response.status_code}."


def _coerce_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return max(0, int(value))
    return 0


def parse_chat_completion(body: dict[str, Any]) -> UpstreamResult:
    choices = body.get("choices")
    first = choices[0] if isinstance(choices, list) and choices else {}
    message = first.get("message") if isinstance(first, dict) else None
    if not isinstance(message, dict):
        message = {}
    usage = body.get("usage") if isinstance(body.get("usage"), dict) else {}
    tool_calls = message.get("tool_calls")
    credits = usage.get("credits", body.get("credits", 0.0))
    return UpstreamResult(
        content=str(message.get("content") or ""),
        reasoning=str(message.get("reasoning_content") or message.get("reasoning") or ""),
        tool_calls=[item for item in tool_calls if isinstance(item, dict)]
        if isinstance(tool_calls, list)
        else [],
        input_tokens=_coerce_int(usage.get("prompt_tokens", usage.get("input_tokens"))),
        output_tokens=_coerce_int(
            usage.get("completion_tokens", usage.get("output_tokens"))
        ),
        credits=float(credits) if isinstance(credits, (int, float)) else 0.0,
        truncated=(first.get("finish_reason") if isinstance(first, dict) else None)
        == "length",
    )


class HttpUpstreamCaller:
    """OpenAI-compatible upstream over httpx; endpoints are tried in order."""

    def __init__(
        self,
        endpoints: Sequence[tuple[str, str]] = (),
        *,
        timeout_seconds: float = 120.0,
        connect_timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._endpoints: list[tuple[str, str]] = list(endpoints)
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=max(0.1, float(timeout_seconds)),
                connect=max(0.1, float(connect_timeout_seconds)),
            ),
            limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
        )

    def set_endpoints(self, endpoints: Sequence[tuple[str, str]]) -> None:
        self._endpoints = list(endpoints)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    @staticmethod
    def _headers(credentials: CredentialRecord) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {credentials.access_token}",
            "Accept": "application/json",
        }
        if credentials.profile_arn:
            headers["X-Profile-Arn"] = credentials.profile_arn
        return headers

    async def call(
        self,
        credentials: CredentialRecord,
        model: str,
        body: dict[str, Any],
    ) -> UpstreamResult:
        if not self._endpoints:
            return UpstreamResult.failure(
                UpstreamErrorKind.TRANSIENT,
                "No upstream endpoints configured.",
                status_code=502,
            )

        payload = dict(body)
        payload["model"] = model
        payload["stream"] = False
        last: UpstreamResult | None = None
        for name, base_url in self._endpoints:
            started = time.perf_counter()
            try:
                response = await self.client.post(
                    f"{base_url}/chat/completions",
                    json=payload,
                    headers=self._headers(credentials),
                )
            except httpx.RequestError as exc:
                details = _request_error_details(exc)
                logger.warning(
                    "upstream_request_error endpoint=%s account=%s error_type=%s error=%s",
                    name,
                    credentials.id,
                    details["error_type"],
                    details["error"],
                )
                last = UpstreamResult.failure(
                    UpstreamErrorKind.TRANSIENT,
                    f"Could not reach upstream ({details['error_type']}): {details['error']}",
                    status_code=504 if details["is_timeout"] else 502,
                    endpoint=name,
                )
                continue

            logger.info(
                "upstream_response endpoint=%s account=%s model=%s status=%d latency_ms=%.2f",
                name,
                credentials.id,
                model,
                response.status_code,
                (time.perf_counter() - started) * 1000.0,
            )
            kind = classify_status(response.status_code)
            if kind is None:
                try:
                    parsed = response.json()
                except ValueError:
                    last = UpstreamResult.failure(
                        UpstreamErrorKind.TRANSIENT,
                        "Upstream returned a non-JSON response.",
                        status_code=502,
                        endpoint=name,
                    )
                    continue
                if not isinstance(parsed, dict):
                    parsed = {}
                result = parse_chat_completion(parsed)
                result.status_code = response.status_code
                result.endpoint = name
                return result

            last = UpstreamResult.failure(
                kind,
                _error_message_from_response(response),
                status_code=response.status_code,
                endpoint=name,
            )
            # Only server-side failures move on to the next endpoint.
            if kind != UpstreamErrorKind.TRANSIENT:
                return last

        if last is None:
            return UpstreamResult.failure(
                UpstreamErrorKind.TRANSIENT,
                "No upstream endpoint answered.",
                status_code=502,
            )
        return last

    async def list_models(self, credentials: CredentialRecord) -> list[str]:
        errors: list[str] = []
        for name, base_url in self._endpoints:
            try:
                response = await self.client.get(
                    f"{base_url}/models", headers=self._headers(credentials)
                )
            except httpx.RequestError as exc:
                errors.append(f"{name}: {_request_error_details(exc)['error']}")
                continue
            if response.status_code >= 400:
                errors.append(f"{name}: HTTP {response.status_code}")
                continue
            try:
                body = response.json()
            except ValueError:
                errors.append(f"{name}: invalid JSON")
                continue
            data = body.get("data") if isinstance(body, dict) else None
            if not isinstance(data, list):
                errors.append(f"{name}: missing data")
                continue
            return [
                str(item["id"])
                for item in data
                if isinstance(item, dict) and item.get("id")
            ]
        raise UpstreamTransientError(
            "Could not list upstream models: " + ("; ".join(errors) or "no endpoints")
        )
