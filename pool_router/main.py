from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from pool_router.config import ProxyConfigFile
from pool_router.dispatcher import DispatchRequest
from pool_router.errors import (
    ConfigError,
    CredentialError,
    InternalError,
    ProxyError,
    ProxyStartError,
    ValidationError,
)
from pool_router.gateway.auth import AuthResult, extract_presented_key, key_preview
from pool_router.gateway.responses import (
    chat_body_from_claude,
    chat_body_from_openai,
    claude_message,
    claude_stream,
    estimate_tokens,
    new_request_id,
    openai_completion,
    openai_stream,
    requested_model,
)
from pool_router.service import ProxyService, build_service
from pool_router.settings import Settings, get_settings

logger = logging.getLogger("uvicorn.error")

CLAUDE_PATHS = frozenset(
    {
        "/v1/messages",
        "/messages",
        "/anthropic/v1/messages",
        "/v1/messages/count_tokens",
        "/messages/count_tokens",
    }
)


def _is_claude_path(path: str) -> bool:
    return path in CLAUDE_PATHS


def error_response(path: str, exc: ProxyError) -> JSONResponse:
    payload = exc.to_claude_payload() if _is_claude_path(path) else exc.to_openai_payload()
    return JSONResponse(status_code=exc.status_code, content=payload)


async def _json_object(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise ValidationError(f"Expected JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Expected a JSON object request body.")
    return payload


def _redacted_config(service: ProxyService, api_keys: list[dict[str, Any]]) -> dict[str, Any]:
    payload = service.config.to_payload()
    payload["apiKeys"] = api_keys
    if payload.get("apiKey"):
        payload["apiKey"] = key_preview(payload["apiKey"])
    return payload


def create_app(service: ProxyService) -> FastAPI:
    app = FastAPI(
        title=f"pool-router ({service.kind})",
        description="OpenAI/Claude-compatible endpoint backed by an upstream account pool.",
        version="0.1.0",
    )
    app.state.service = service

    async def require_auth(request: Request) -> AuthResult:
        return await service.store.authenticate(extract_presented_key(request.headers))

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
        return error_response(request.url.path, exc)

    @app.exception_handler(ConfigError)
    async def config_error_handler(request: Request, exc: ConfigError) -> JSONResponse:
        return error_response(request.url.path, ValidationError(str(exc)))

    @app.exception_handler(CredentialError)
    async def credential_error_handler(request: Request, exc: CredentialError) -> JSONResponse:
        return error_response(request.url.path, InternalError(str(exc)))

    @app.exception_handler(ProxyStartError)
    async def start_error_handler(request: Request, exc: ProxyStartError) -> JSONResponse:
        return error_response(request.url.path, InternalError(str(exc)))

    async def health_payload() -> dict[str, Any]:
        return {"status": "ok", "kind": service.kind, **(await service.status())}

    @app.get("/")
    async def root() -> dict[str, Any]:
        return await health_payload()

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return await health_payload()

    async def list_models() -> dict[str, Any]:
        models = await service.get_models()
        return {
            "object": "list",
            "data": [
                {"id": model, "object": "model", "created": 0, "owned_by": service.kind}
                for model in models
            ],
        }

    app.add_api_route(
        "/v1/models", list_models, methods=["GET"], dependencies=[Depends(require_auth)]
    )
    app.add_api_route(
        "/models", list_models, methods=["GET"], dependencies=[Depends(require_auth)]
    )

    async def chat_completions(request: Request) -> Response:
        payload = await _json_object(request)
        model = requested_model(payload)
        outcome = await service.dispatch(
            DispatchRequest(
                path=request.url.path,
                model=model,
                body=chat_body_from_openai(payload),
                presented_key=extract_presented_key(request.headers),
                request_id=new_request_id("chatcmpl-"),
            )
        )
        if outcome.error is not None or outcome.result is None:
            return error_response(request.url.path, outcome.error or InternalError("No result."))
        thinking_format = service.config.thinking_output_format
        if payload.get("stream"):
            return StreamingResponse(
                openai_stream(
                    outcome.result,
                    model=model,
                    request_id=outcome.request_id,
                    thinking_format=thinking_format,
                ),
                media_type="text/event-stream",
            )
        return JSONResponse(
            openai_completion(
                outcome.result,
                model=model,
                request_id=outcome.request_id,
                thinking_format=thinking_format,
            )
        )

    for path in ("/v1/chat/completions", "/chat/completions"):
        app.add_api_route(
            path, chat_completions, methods=["POST"], dependencies=[Depends(require_auth)]
        )

    async def claude_messages(request: Request) -> Response:
        payload = await _json_object(request)
        model = requested_model(payload)
        outcome = await service.dispatch(
            DispatchRequest(
                path=request.url.path,
                model=model,
                body=chat_body_from_claude(payload),
                presented_key=extract_presented_key(request.headers),
                request_id=new_request_id("msg_"),
            )
        )
        if outcome.error is not None or outcome.result is None:
            return error_response(request.url.path, outcome.error or InternalError("No result."))
        thinking_format = service.config.thinking_output_format
        if payload.get("stream"):
            return StreamingResponse(
                claude_stream(
                    outcome.result,
                    model=model,
                    message_id=outcome.request_id,
                    thinking_format=thinking_format,
                ),
                media_type="text/event-stream",
            )
        return JSONResponse(
            claude_message(
                outcome.result,
                model=model,
                message_id=outcome.request_id,
                thinking_format=thinking_format,
            )
        )

    for path in ("/v1/messages", "/messages", "/anthropic/v1/messages"):
        app.add_api_route(
            path, claude_messages, methods=["POST"], dependencies=[Depends(require_auth)]
        )

    async def count_tokens(request: Request) -> dict[str, int]:
        payload = await _json_object(request)
        counted = {key: payload[key] for key in ("system", "messages", "tools") if key in payload}
        return {"input_tokens": estimate_tokens(counted)}

    for path in ("/v1/messages/count_tokens", "/messages/count_tokens"):
        app.add_api_route(
            path, count_tokens, methods=["POST"], dependencies=[Depends(require_auth)]
        )

    @app.post("/api/event_logging/batch", dependencies=[Depends(require_auth)])
    async def event_logging_batch() -> dict[str, bool]:
        return {"success": True}

    @app.get("/admin/stats", dependencies=[Depends(require_auth)])
    async def admin_stats() -> dict[str, Any]:
        return await service.get_stats()

    @app.post("/admin/stats/reset", dependencies=[Depends(require_auth)])
    async def admin_reset_stats() -> dict[str, bool]:
        await service.reset_stats()
        return {"success": True}

    @app.get("/admin/accounts", dependencies=[Depends(require_auth)])
    async def admin_accounts() -> dict[str, Any]:
        return {"accounts": await service.get_accounts()}

    @app.post("/admin/accounts/sync", dependencies=[Depends(require_auth)])
    async def admin_sync_accounts() -> dict[str, Any]:
        count = await service.sync_accounts()
        return {"count": count, "accounts": await service.get_accounts()}

    @app.get("/admin/logs", dependencies=[Depends(require_auth)])
    async def admin_logs(limit: int = 200) -> dict[str, Any]:
        return {"logs": await service.get_logs(max(0, limit))}

    @app.delete("/admin/logs", dependencies=[Depends(require_auth)])
    async def admin_clear_logs() -> dict[str, bool]:
        await service.clear_logs()
        return {"success": True}

    @app.get("/admin/config", dependencies=[Depends(require_auth)])
    async def admin_get_config() -> dict[str, Any]:
        return _redacted_config(service, await service.get_api_keys())

    @app.post("/admin/config", dependencies=[Depends(require_auth)])
    async def admin_update_config(request: Request) -> dict[str, Any]:
        changes = await _json_object(request)
        # Keys are managed through /admin/api-keys; views carry no raw key.
        changes.pop("apiKeys", None)
        changes.pop("api_keys", None)
        status = await service.update_config_from_payload(changes, defer_restart=True)
        return {
            "status": status,
            "config": _redacted_config(service, await service.get_api_keys()),
        }

    @app.get("/admin/api-keys", dependencies=[Depends(require_auth)])
    async def admin_list_api_keys() -> dict[str, Any]:
        return {"apiKeys": await service.get_api_keys()}

    @app.post("/admin/api-keys", dependencies=[Depends(require_auth)])
    async def admin_add_api_key(request: Request) -> JSONResponse:
        payload = await _json_object(request)
        view = await service.add_api_key(
            key=str(payload.get("key") or ""),
            name=str(payload.get("name") or ""),
            enabled=bool(payload.get("enabled", True)),
            credits_limit=_optional_float(payload.get("creditsLimit")),
        )
        return JSONResponse(status_code=201, content=view)

    @app.patch("/admin/api-keys/{key_id}", dependencies=[Depends(require_auth)])
    async def admin_update_api_key(key_id: str, request: Request) -> dict[str, Any]:
        payload = await _json_object(request)
        if "creditsLimit" in payload:
            payload["creditsLimit"] = _optional_float(payload["creditsLimit"])
        return await service.update_api_key(key_id, payload)

    @app.delete("/admin/api-keys/{key_id}", dependencies=[Depends(require_auth)])
    async def admin_delete_api_key(key_id: str) -> dict[str, bool]:
        await service.delete_api_key(key_id)
        return {"success": True}

    @app.post("/admin/api-keys/{key_id}/reset-usage", dependencies=[Depends(require_auth)])
    async def admin_reset_api_key_usage(key_id: str) -> dict[str, Any]:
        return await service.reset_api_key_usage(key_id)

    @app.get("/admin/model-mappings", dependencies=[Depends(require_auth)])
    async def admin_model_mappings() -> dict[str, Any]:
        return {"mappings": service.get_model_mappings()}

    @app.put("/admin/model-mappings", dependencies=[Depends(require_auth)])
    async def admin_save_model_mappings(request: Request) -> dict[str, Any]:
        try:
            payload = await request.json()
        except ValueError as exc:
            raise ValidationError(f"Expected JSON body: {exc}") from exc
        raw_rules = payload.get("mappings") if isinstance(payload, dict) else payload
        if not isinstance(raw_rules, list):
            raise ValidationError("Expected a list of model mappings.")
        return {"mappings": await service.save_model_mappings(raw_rules)}

    return app


def _optional_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Expected a number, got {value!r}.") from exc


async def serve(settings: Settings) -> None:
    config_file = ProxyConfigFile(settings.proxy_config_path)
    configs = config_file.load_all()
    explicit = settings.proxy_kinds_list
    kinds = explicit or list(configs)
    services = [build_service(kind, settings=settings, config_file=config_file) for kind in kinds]

    for service in services:
        try:
            if explicit:
                await service.start()
            else:
                await service.maybe_auto_start()
        except ProxyStartError:
            continue

    if not any(service.running for service in services):
        logger.warning(
            "no_proxy_running config=%s kinds=%s",
            settings.proxy_config_path,
            ",".join(kinds) or "-",
        )
        for service in services:
            await service.close()
        return

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signum, stop_event.set)
    await stop_event.wait()

    for service in services:
        await service.close()


def run() -> None:
    asyncio.run(serve(get_settings()))


if __name__ == "__main__":
    run()
