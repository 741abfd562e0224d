"""Model client for OpenAI-compatible /chat/completions endpoints.

Streams server-sent events over aiohttp and converts each ``data:``
line into ChunkEvents. Works with any server speaking the OpenAI chat
completions dialect (vLLM, llama.cpp server, LM Studio, Ollama, ...).
"""
from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

import aiohttp

from ..errors import ConfigurationError, ModelClientError
from ..ports import (
    ChunkEvent,
    CompletionRequest,
    FinishReason,
    ModelClient,
    TextDelta,
    ToolCallDelta,
    Usage,
)

logger = logging.getLogger(__name__)

SSE_DONE = "[DONE]"


class StreamDone(Exception):
    """Raised by parse_sse_line for the terminating ``[DONE]`` sentinel."""


def parse_chunk(data: dict[str, Any]) -> list[ChunkEvent]:
    """Convert one decoded chat.completion.chunk into ChunkEvents."""
    if data.get("error"):
        raise ModelClientError(
            "Provider returned an error in stream",
            error=data["error"],
        )

    events: list[ChunkEvent] = []
    for choice in data.get("choices") or []:
        delta = choice.get("delta") or {}
        content = delta.get("content")
        if content:
            events.append(TextDelta(text=content))
        for call in delta.get("tool_calls") or []:
            function = call.get("function") or {}
            events.append(ToolCallDelta(
                index=call.get("index", 0),
                id=call.get("id") or None,
                name=function.get("name") or None,
                arguments_fragment=function.get("arguments") or None,
            ))
        if choice.get("finish_reason"):
            events.append(FinishReason(reason=choice["finish_reason"]))

    usage = data.get("usage")
    if usage:
        events.append(Usage(
            prompt_tokens=usage.get("prompt_tokens") or 0,
            completion_tokens=usage.get("completion_tokens") or 0,
        ))
    return events


def parse_sse_line(line: str) -> list[ChunkEvent]:
    """Parse one SSE line. Comments, blank and non-data lines yield nothing.

    Raises StreamDone on ``data: [DONE]`` and ModelClientError when the
    payload is not valid JSON.
    """
    line = line.strip()
    if not line or line.startswith(":") or not line.startswith("data:"):
        return []
    payload = line[len("data:"):].strip()
    if payload == SSE_DONE:
        raise StreamDone()
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ModelClientError(f"Malformed stream chunk: {payload[:200]}") from exc
    if not isinstance(data, dict):
        raise ModelClientError(f"Unexpected stream chunk: {payload[:200]}")
    return parse_chunk(data)


class OpenAICompatibleClient(ModelClient):
    """ModelClient over aiohttp.

    One ClientSession is created lazily and reused across requests;
    call close() (or use ``async with``) when done.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        connect_timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._connect_timeout = connect_timeout
        self._session = session
        self._owns_session = session is None

    @property
    def endpoint(self) -> str:
        if self._base_url.endswith("/chat/completions"):
            return self._base_url
        return f"{self._base_url}/chat/completions"

    def check_configuration(self) -> None:
        if not self._api_key:
            raise ConfigurationError("API key is not configured")
        if not self._base_url:
            raise ConfigurationError("Base URL is not configured")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            # Per-read timeouts are enforced by the runner
            timeout = aiohttp.ClientTimeout(total=None, connect=self._connect_timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> OpenAICompatibleClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def build_payload(self, request: CompletionRequest) -> dict[str, Any]:
        payload = request.to_payload()
        payload["stream"] = True
        payload["stream_options"] = {"include_usage": True}
        return payload

    async def stream_completion(
        self, request: CompletionRequest,
    ) -> AsyncIterator[ChunkEvent]:
        session = await self._get_session()
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "Authorization": f"Bearer {self._api_key}",
        }
        payload = self.build_payload(request)
        logger.debug(
            "POST %s model=%s messages=%d tools=%d",
            self.endpoint, request.model, len(request.messages), len(request.tools),
        )

        try:
            async with session.post(self.endpoint, json=payload, headers=headers) as response:
                if response.status >= 400:
                    body = await response.text()
                    logger.warning(
                        "Model endpoint returned %d: %.500s", response.status, body,
                    )
                    raise ModelClientError(
                        f"HTTP {response.status} {response.reason or ''}".strip(),
                        status=response.status,
                        body=body,
                    )

                # aiohttp's StreamReader iterates complete lines
                async for raw_line in response.content:
                    line = raw_line.decode("utf-8", errors="replace")
                    try:
                        events = parse_sse_line(line)
                    except StreamDone:
                        return
                    for event in events:
                        yield event
        except aiohttp.ClientError as exc:
            raise ModelClientError(f"Connection error: {exc}") from exc
