from __future__ import annotations

import json
import math
import time
from collections.abc import Iterator
from typing import Any
from uuid import uuid4

from pool_router.errors import ValidationError
from pool_router.gateway.upstream import UpstreamResult

CONTINUE_PROMPT = (
    "Continue exactly where your previous response stopped. "
    "Do not repeat anything you already wrote."
)

_PASSTHROUGH_CHAT_FIELDS = (
    "max_tokens",
    "max_completion_tokens",
    "temperature",
    "top_p",
    "stop",
    "tools",
    "tool_choice",
    "response_format",
    "reasoning_effort",
)


def new_request_id(prefix: str) -> str:
    return f"{prefix}{uuid4().hex[:24]}"


def requested_model(payload: dict[str, Any]) -> str:
    model = payload.get("model")
    if not isinstance(model, str) or not model.strip():
        raise ValidationError("Request body must include a 'model' string.")
    return model.strip()


def chat_body_from_openai(payload: dict[str, Any]) -> dict[str, Any]:
    messages = payload.get("messages")
    if not isinstance(messages, list) or not messages:
        raise ValidationError("Request body must include a non-empty 'messages' list.")
    body: dict[str, Any] = {"messages": [dict(item) for item in messages if isinstance(item, dict)]}
    for key in _PASSTHROUGH_CHAT_FIELDS:
        if key in payload:
            body[key] = payload[key]
    return body


def _claude_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(str(block.get("text") or ""))
    return "\n".join(part for part in parts if part)


def _claude_message_to_chat(message: dict[str, Any]) -> list[dict[str, Any]]:
    role = str(message.get("role") or "user")
    content = message.get("content")
    if not isinstance(content, list):
        return [{"role": role, "content": _claude_text(content)}]

    converted: list[dict[str, Any]] = []
    tool_calls: list[dict[str, Any]] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "tool_use":
            tool_calls.append(
                {
                    "id": str(block.get("id") or new_request_id("call_")),
                    "type": "function",
                    "function": {
                        "name": str(block.get("name") or ""),
                        "arguments": json.dumps(block.get("input") or {}),
                    },
                }
            )
        elif block.get("type") == "tool_result":
            converted.append(
                {
                    "role": "tool",
                    "tool_call_id": str(block.get("tool_use_id") or ""),
                    "content": _claude_text(block.get("content")),
                }
            )

    text = _claude_text(content)
    if text or tool_calls:
        entry: dict[str, Any] = {"role": role, "content": text}
        if tool_calls:
            entry["tool_calls"] = tool_calls
        converted.insert(0, entry)
    return converted


def chat_body_from_claude(payload: dict[str, Any]) -> dict[str, Any]:
    messages = payload.get("messages")
    if not isinstance(messages, list) or not messages:
        raise ValidationError("Request body must include a non-empty 'messages' list.")

    chat_messages: list[dict[str, Any]] = []
    system = _claude_text(payload.get("system"))
    if system:
        chat_messages.append({"role": "system", "content": system})
    for message in messages:
        if isinstance(message, dict):
            chat_messages.extend(_claude_message_to_chat(message))

    body: dict[str, Any] = {"messages": chat_messages}
    for key in ("max_tokens", "temperature", "top_p"):
        if key in payload:
            body[key] = payload[key]
    if payload.get("stop_sequences"):
        body["stop"] = payload["stop_sequences"]
    tools = payload.get("tools")
    if isinstance(tools, list) and tools:
        body["tools"] = [
            {
                "type": "function",
                "function": {
                    "name": str(tool.get("name") or ""),
                    "description": str(tool.get("description") or ""),
                    "parameters": tool.get("input_schema") or {"type": "object"},
                },
            }
            for tool in tools
            if isinstance(tool, dict)
        ]
    return body


def strip_tools(body: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in body.items() if key not in ("tools", "tool_choice")}


def continuation_body(body: dict[str, Any], partial_content: str) -> dict[str, Any]:
    messages = list(body.get("messages") or [])
    messages.append({"role": "assistant", "content": partial_content})
    messages.append({"role": "user", "content": CONTINUE_PROMPT})
    continued = dict(body)
    continued["messages"] = messages
    return continued


def estimate_tokens(payload: Any) -> int:
    text = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return math.ceil(len(text) / 4)


def _render_reasoning(result: UpstreamResult, thinking_format: str) -> tuple[str, str | None]:
    """Content and optional ``reasoning_content`` for OpenAI-shaped output."""
    if not result.reasoning:
        return result.content, None
    if thinking_format == "thinking":
        return f"<thinking>{result.reasoning}</thinking>{result.content}", None
    if thinking_format == "think":
        return f"<think>{result.reasoning}</think>{result.content}", None
    return result.content, result.reasoning


def _openai_finish_reason(result: UpstreamResult) -> str:
    if result.tool_calls:
        return "tool_calls"
    return "length" if result.truncated else "stop"


def _openai_usage(result: UpstreamResult) -> dict[str, Any]:
    return {
        "prompt_tokens": result.input_tokens,
        "completion_tokens": result.output_tokens,
        "total_tokens": result.input_tokens + result.output_tokens,
    }


def openai_completion(
    result: UpstreamResult,
    *,
    model: str,
    request_id: str,
    thinking_format: str,
    created: int | None = None,
) -> dict[str, Any]:
    content, reasoning = _render_reasoning(result, thinking_format)
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if reasoning is not None:
        message["reasoning_content"] = reasoning
    if result.tool_calls:
        message["tool_calls"] = result.tool_calls
    return {
        "id": request_id,
        "object": "chat.completion",
        "created": created if created is not None else int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": message,
                "finish_reason": _openai_finish_reason(result),
            }
        ],
        "usage": _openai_usage(result),
    }


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def openai_stream(
    result: UpstreamResult,
    *,
    model: str,
    request_id: str,
    thinking_format: str,
    created: int | None = None,
) -> Iterator[str]:
    timestamp = created if created is not None else int(time.time())

    def chunk(delta: dict[str, Any], finish_reason: str | None = None) -> dict[str, Any]:
        return {
            "id": request_id,
            "object": "chat.completion.chunk",
            "created": timestamp,
            "model": model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }

    content, reasoning = _render_reasoning(result, thinking_format)
    yield _sse(chunk({"role": "assistant", "content": ""}))
    if reasoning:
        yield _sse(chunk({"reasoning_content": reasoning}))
    if content:
        yield _sse(chunk({"content": content}))
    for index, tool_call in enumerate(result.tool_calls):
        yield _sse(chunk({"tool_calls": [{"index": index, **tool_call}]}))
    final = chunk({}, _openai_finish_reason(result))
    final["usage"] = _openai_usage(result)
    yield _sse(final)
    yield "data: [DONE]\n\n"


def _claude_stop_reason(result: UpstreamResult) -> str:
    if result.tool_calls:
        return "tool_use"
    return "max_tokens" if result.truncated else "end_turn"


def _claude_content_blocks(
    result: UpstreamResult, thinking_format: str
) -> list[dict[str, Any]]:
    blocks: list[dict[str, Any]] = []
    text = result.content
    if result.reasoning:
        if thinking_format == "thinking":
            text = f"<thinking>{result.reasoning}</thinking>{text}"
        elif thinking_format == "think":
            text = f"<think>{result.reasoning}</think>{text}"
        else:
            blocks.append({"type": "thinking", "thinking": result.reasoning})
    if text or not result.tool_calls:
        blocks.append({"type": "text", "text": text})
    for tool_call in result.tool_calls:
        function = tool_call.get("function") or {}
        try:
            tool_input = json.loads(function.get("arguments") or "{}")
        except (TypeError, ValueError):
            tool_input = {}
        blocks.append(
            {
                "type": "tool_use",
                "id": str(tool_call.get("id") or new_request_id("toolu_")),
                "name": str(function.get("name") or ""),
                "input": tool_input,
            }
        )
    return blocks


def claude_message(
    result: UpstreamResult,
    *,
    model: str,
    message_id: str,
    thinking_format: str,
) -> dict[str, Any]:
    return {
        "id": message_id,
        "type": "message",
        "role": "assistant",
        "model": model,
        "content": _claude_content_blocks(result, thinking_format),
        "stop_reason": _claude_stop_reason(result),
        "stop_sequence": None,
        "usage": {
            "input_tokens": result.input_tokens,
            "output_tokens": result.output_tokens,
        },
    }


def _claude_event(event: str, payload: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps({'type': event, **payload}, ensure_ascii=False)}\n\n"


def claude_stream(
    result: UpstreamResult,
    *,
    model: str,
    message_id: str,
    thinking_format: str,
) -> Iterator[str]:
    yield _claude_event(
        "message_start",
        {
            "message": {
                "id": message_id,
                "type": "message",
                "role": "assistant",
                "model": model,
                "content": [],
                "stop_reason": None,
                "stop_sequence": None,
                "usage": {"input_tokens": result.input_tokens, "output_tokens": 0},
            }
        },
    )
    for index, block in enumerate(_claude_content_blocks(result, thinking_format)):
        if block["type"] == "text":
            start = {"type": "text", "text": ""}
            delta = {"type": "text_delta", "text": block["text"]}
        elif block["type"] == "thinking":
            start = {"type": "thinking", "thinking": ""}
            delta = {"type": "thinking_delta", "thinking": block["thinking"]}
        else:
            start = {**block, "input": {}}
            delta = {"type": "input_json_delta", "partial_json": json.dumps(block["input"])}
        yield _claude_event("content_block_start", {"index": index, "content_block": start})
        yield _claude_event("content_block_delta", {"index": index, "delta": delta})
        yield _claude_event("content_block_stop", {"index": index})
    yield _claude_event(
        "message_delta",
        {
            "delta": {"stop_reason": _claude_stop_reason(result), "stop_sequence": None},
            "usage": {"output_tokens": result.output_tokens},
        },
    )
    yield _claude_event("message_stop", {})
