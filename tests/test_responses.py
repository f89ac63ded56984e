from __future__ import annotations

import json

import pytest

from pool_router.errors import ValidationError
from pool_router.gateway.responses import (
    CONTINUE_PROMPT,
    chat_body_from_claude,
    chat_body_from_openai,
    claude_message,
    claude_stream,
    continuation_body,
    estimate_tokens,
    openai_completion,
    openai_stream,
    requested_model,
    strip_tools,
)
from pool_router.gateway.upstream import UpstreamResult


def _sse_payloads(chunks: list[str]) -> list[dict]:
    payloads = []
    for chunk in chunks:
        for line in chunk.splitlines():
            if line.startswith("data: ") and line != "data: [DONE]":
                payloads.append(json.loads(line[len("data: ") :]))
    return payloads


def test_requested_model_is_required() -> None:
    assert requested_model({"model": " gpt-4 "}) == "gpt-4"
    with pytest.raises(ValidationError):
        requested_model({"messages": []})


def test_openai_body_keeps_known_fields_and_requires_messages() -> None:
    body = chat_body_from_openai(
        {
            "model": "gpt-4",
            "messages": [{"role": "user", "content": "hi"}],
            "temperature": 0.1,
            "stream": True,
            "user": "someone",
        }
    )

    assert body == {"messages": [{"role": "user", "content": "hi"}], "temperature": 0.1}
    with pytest.raises(ValidationError):
        chat_body_from_openai({"messages": []})


def test_claude_body_converts_system_tools_and_tool_blocks() -> None:
    body = chat_body_from_claude(
        {
            "system": [{"type": "text", "text": "be brief"}],
            "max_tokens": 256,
            "stop_sequences": ["END"],
            "tools": [{"name": "lookup", "description": "find", "input_schema": {"type": "object"}}],
            "messages": [
                {"role": "user", "content": "what is 2+2?"},
                {
                    "role": "assistant",
                    "content": [
                        {"type": "text", "text": "calling"},
                        {"type": "tool_use", "id": "toolu_1", "name": "lookup", "input": {"q": "2+2"}},
                    ],
                },
                {
                    "role": "user",
                    "content": [{"type": "tool_result", "tool_use_id": "toolu_1", "content": "4"}],
                },
            ],
        }
    )

    messages = body["messages"]
    assert messages[0] == {"role": "system", "content": "be brief"}
    assert messages[1] == {"role": "user", "content": "what is 2+2?"}
    assert messages[2]["content"] == "calling"
    assert messages[2]["tool_calls"][0]["function"] == {"name": "lookup", "arguments": '{"q": "2+2"}'}
    assert messages[3] == {"role": "tool", "tool_call_id": "toolu_1", "content": "4"}
    assert body["max_tokens"] == 256
    assert body["stop"] == ["END"]
    assert body["tools"][0]["function"]["name"] == "lookup"


def test_strip_tools_and_continuation_body_do_not_mutate_input() -> None:
    body = {"messages": [{"role": "user", "content": "hi"}], "tools": [1], "tool_choice": "auto"}

    stripped = strip_tools(body)
    continued = continuation_body(body, "partial")

    assert stripped == {"messages": [{"role": "user", "content": "hi"}]}
    assert continued["messages"][-2:] == [
        {"role": "assistant", "content": "partial"},
        {"role": "user", "content": CONTINUE_PROMPT},
    ]
    assert len(body["messages"]) == 1
    assert "tools" in body


def test_estimate_tokens_uses_four_chars_per_token() -> None:
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
    assert estimate_tokens({"a": 1}) == 2


@pytest.mark.parametrize(
    ("thinking_format", "content", "reasoning_field"),
    [
        ("reasoning_content", "answer", "plan"),
        ("thinking", "<thinking>plan</thinking>answer", None),
        ("think", "<think>plan</think>answer", None),
    ],
)
def test_openai_completion_renders_reasoning_by_format(thinking_format, content, reasoning_field) -> None:
    result = UpstreamResult(content="answer", reasoning="plan", input_tokens=3, output_tokens=2)

    payload = openai_completion(
        result, model="gpt-4", request_id="chatcmpl-1", thinking_format=thinking_format, created=1
    )

    message = payload["choices"][0]["message"]
    assert message["content"] == content
    assert message.get("reasoning_content") == reasoning_field
    assert payload["choices"][0]["finish_reason"] == "stop"
    assert payload["usage"] == {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}


def test_openai_finish_reason_reflects_truncation_and_tools() -> None:
    truncated = openai_completion(
        UpstreamResult(content="x", truncated=True),
        model="m",
        request_id="r",
        thinking_format="reasoning_content",
    )
    tools = openai_completion(
        UpstreamResult(tool_calls=[{"id": "call_1", "type": "function", "function": {"name": "f"}}]),
        model="m",
        request_id="r",
        thinking_format="reasoning_content",
    )

    assert truncated["choices"][0]["finish_reason"] == "length"
    assert tools["choices"][0]["finish_reason"] == "tool_calls"
    assert tools["choices"][0]["message"]["tool_calls"][0]["id"] == "call_1"


def test_openai_stream_emits_role_content_usage_and_done() -> None:
    chunks = list(
        openai_stream(
            UpstreamResult(content="hello", reasoning="plan", input_tokens=4, output_tokens=1),
            model="gpt-4",
            request_id="chatcmpl-9",
            thinking_format="reasoning_content",
            created=5,
        )
    )

    payloads = _sse_payloads(chunks)
    assert chunks[-1] == "data: [DONE]\n\n"
    assert payloads[0]["choices"][0]["delta"] == {"role": "assistant", "content": ""}
    assert payloads[1]["choices"][0]["delta"] == {"reasoning_content": "plan"}
    assert payloads[2]["choices"][0]["delta"] == {"content": "hello"}
    assert payloads[-1]["choices"][0]["finish_reason"] == "stop"
    assert payloads[-1]["usage"]["total_tokens"] == 5
    assert {payload["id"] for payload in payloads} == {"chatcmpl-9"}


def test_claude_message_uses_thinking_block_and_tool_use() -> None:
    result = UpstreamResult(
        content="answer",
        reasoning="plan",
        tool_calls=[{"id": "call_1", "function": {"name": "lookup", "arguments": '{"q": 1}'}}],
        input_tokens=7,
        output_tokens=2,
    )

    payload = claude_message(result, model="claude", message_id="msg_1", thinking_format="reasoning_content")

    assert [block["type"] for block in payload["content"]] == ["thinking", "text", "tool_use"]
    assert payload["content"][2]["input"] == {"q": 1}
    assert payload["stop_reason"] == "tool_use"
    assert payload["usage"] == {"input_tokens": 7, "output_tokens": 2}


def test_claude_message_inlines_tagged_thinking_and_max_tokens_stop() -> None:
    payload = claude_message(
        UpstreamResult(content="answer", reasoning="plan", truncated=True),
        model="claude",
        message_id="msg_1",
        thinking_format="think",
    )

    assert payload["content"] == [{"type": "text", "text": "<think>plan</think>answer"}]
    assert payload["stop_reason"] == "max_tokens"


def test_claude_stream_event_sequence() -> None:
    chunks = list(
        claude_stream(
            UpstreamResult(content="hello", output_tokens=3),
            model="claude",
            message_id="msg_2",
            thinking_format="reasoning_content",
        )
    )

    events = [chunk.split("\n", 1)[0].removeprefix("event: ") for chunk in chunks]
    assert events == [
        "message_start",
        "content_block_start",
        "content_block_delta",
        "content_block_stop",
        "message_delta",
        "message_stop",
    ]
    payloads = _sse_payloads(chunks)
    assert payloads[2]["delta"] == {"type": "text_delta", "text": "hello"}
    assert payloads[4]["delta"]["stop_reason"] == "end_turn"
    assert payloads[4]["usage"] == {"output_tokens": 3}
