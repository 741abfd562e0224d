from __future__ import annotations

import json

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from localdesk.engine.errors import ConfigurationError, ModelClientError
from localdesk.engine.ports import (
    CompletionRequest,
    FinishReason,
    TextDelta,
    ToolCallDelta,
    Usage,
)
from localdesk.engine.providers.openai_compat import (
    OpenAICompatibleClient,
    StreamDone,
    parse_chunk,
    parse_sse_line,
)


def _sse(*chunks: dict) -> str:
    lines = [f"data: {json.dumps(chunk)}\n\n" for chunk in chunks]
    return "".join(lines) + "data: [DONE]\n\n"


def test_parse_text_and_finish():
    events = parse_chunk({"choices": [{"delta": {"content": "Hi"}, "finish_reason": "stop"}]})
    assert events == [TextDelta(text="Hi"), FinishReason(reason="stop")]


def test_parse_tool_call_fragment():
    events = parse_chunk({"choices": [{"delta": {"tool_calls": [{
        "index": 1,
        "id": "call_x",
        "function": {"name": "read_file", "arguments": '{"pa'},
    }]}}]})
    assert events == [ToolCallDelta(
        index=1, id="call_x", name="read_file", arguments_fragment='{"pa',
    )]


def test_parse_usage_only_chunk():
    events = parse_chunk({"choices": [], "usage": {"prompt_tokens": 7, "completion_tokens": 3}})
    assert events == [Usage(prompt_tokens=7, completion_tokens=3)]


def test_error_field_raises():
    with pytest.raises(ModelClientError) as info:
        parse_chunk({"error": {"message": "rate limited"}})
    assert info.value.error == {"message": "rate limited"}


def test_sse_line_handling():
    assert parse_sse_line("") == []
    assert parse_sse_line(": keep-alive") == []
    assert parse_sse_line("event: ping") == []
    with pytest.raises(StreamDone):
        parse_sse_line("data: [DONE]")
    with pytest.raises(ModelClientError):
        parse_sse_line("data: {broken")


def test_check_configuration():
    with pytest.raises(ConfigurationError, match="API key"):
        OpenAICompatibleClient("http://x/v1", "").check_configuration()
    with pytest.raises(ConfigurationError, match="Base URL"):
        OpenAICompatibleClient("", "key").check_configuration()
    OpenAICompatibleClient("http://x/v1", "key").check_configuration()


def test_endpoint_and_payload():
    client = OpenAICompatibleClient("http://host/v1/", "key")
    assert client.endpoint == "http://host/v1/chat/completions"
    assert OpenAICompatibleClient("http://host/v1/chat/completions", "k").endpoint == (
        "http://host/v1/chat/completions"
    )

    payload = client.build_payload(CompletionRequest(
        model="m",
        messages=[{"role": "user", "content": "hi"}],
        tools=[{"type": "function", "function": {"name": "t"}}],
        temperature=None,
    ))
    assert payload["stream"] is True
    assert payload["stream_options"] == {"include_usage": True}
    assert payload["parallel_tool_calls"] is True
    assert "temperature" not in payload


@pytest.mark.asyncio
async def test_stream_completion_against_server():
    received = {}

    async def completions(request):
        received["auth"] = request.headers.get("Authorization")
        received["body"] = await request.json()
        body = _sse(
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
            {"choices": [], "usage": {"prompt_tokens": 4, "completion_tokens": 2}},
        )
        return web.Response(text=body, content_type="text/event-stream")

    app = web.Application()
    app.router.add_post("/v1/chat/completions", completions)

    async with TestServer(app) as server:
        async with OpenAICompatibleClient(str(server.make_url("/v1")), "sk-test") as client:
            request = CompletionRequest(model="m", messages=[{"role": "user", "content": "hi"}])
            events = [event async for event in client.stream_completion(request)]

    assert received["auth"] == "Bearer sk-test"
    assert received["body"]["model"] == "m"
    assert received["body"]["stream"] is True
    assert events == [
        TextDelta(text="Hel"),
        TextDelta(text="lo"),
        FinishReason(reason="stop"),
        Usage(prompt_tokens=4, completion_tokens=2),
    ]


@pytest.mark.asyncio
async def test_http_error_keeps_body():
    async def completions(request):
        return web.json_response({"error": {"message": "model not found"}}, status=400)

    app = web.Application()
    app.router.add_post("/v1/chat/completions", completions)

    async with TestServer(app) as server:
        async with OpenAICompatibleClient(str(server.make_url("/v1")), "k") as client:
            request = CompletionRequest(model="nope", messages=[])
            with pytest.raises(ModelClientError) as info:
                async for _ in client.stream_completion(request):
                    pass

    assert info.value.status == 400
    assert "model not found" in info.value.body
