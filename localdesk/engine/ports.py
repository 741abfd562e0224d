"""Abstract ports the runner drives.

The runner never talks to HTTP, disk, or tool code directly. It is
handed one ModelClient, one ToolExecutor, and one SessionStore at
construction time.
"""
from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from .models import (
    Session,
    SessionHistory,
    ToolResult,
    TranscriptEntry,
)


# ── Model client ────────────────────────────────────────────────────


@dataclass
class TextDelta:
    text: str


@dataclass
class ToolCallDelta:
    """One streamed fragment of a tool call, keyed by its stream index."""
    index: int
    id: str | None = None
    name: str | None = None
    arguments_fragment: str | None = None


@dataclass
class FinishReason:
    reason: str


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0


ChunkEvent = TextDelta | ToolCallDelta | FinishReason | Usage


@dataclass
class CompletionRequest:
    model: str
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]] = field(default_factory=list)
    temperature: float | None = None
    parallel_tool_calls: bool = True

    def to_payload(self) -> dict[str, Any]:
        """OpenAI-style request body (without transport-only keys)."""
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": self.messages,
        }
        if self.tools:
            payload["tools"] = self.tools
            payload["parallel_tool_calls"] = self.parallel_tool_calls
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        return payload


class ModelClient(abc.ABC):
    """Capability to open a streaming chat completion."""

    @abc.abstractmethod
    def stream_completion(
        self, request: CompletionRequest,
    ) -> AsyncIterator[ChunkEvent]:
        """Yield ChunkEvents for one completion.

        Raises ModelClientError on transport/provider failure.
        """

    def check_configuration(self) -> None:
        """Raise ConfigurationError if the client cannot be used.

        Called once before the first model call of a run.
        """


# ── Tool executor ───────────────────────────────────────────────────


class ToolExecutor(abc.ABC):
    """Executes tools by name. Must never raise: failures are values."""

    @abc.abstractmethod
    async def execute(self, name: str, args: dict[str, Any]) -> ToolResult:
        """Run one tool call."""

    def definitions(self) -> list[dict[str, Any]]:
        """Tool schemas in OpenAI function format."""
        return []

    def todo_summary(self) -> str:
        """Text appended to the system prompt describing open todos."""
        return ""


# ── Session store ───────────────────────────────────────────────────


class SessionStore(abc.ABC):
    """Append-only transcript persistence keyed by session id."""

    @abc.abstractmethod
    async def create_session(
        self,
        *,
        title: str,
        model: str,
        working_directory: str | None = None,
        temperature: float | None = None,
    ) -> Session:
        """Create and persist a new idle session."""

    @abc.abstractmethod
    async def get_session(self, session_id: str) -> Session | None:
        """Return session metadata, or None."""

    @abc.abstractmethod
    async def list_sessions(self) -> list[Session]:
        """Return all sessions, newest first."""

    @abc.abstractmethod
    async def append(self, session_id: str, entry: TranscriptEntry) -> None:
        """Append one transcript entry."""

    @abc.abstractmethod
    async def read_history(self, session_id: str) -> SessionHistory:
        """Return the transcript in occurrence order."""

    @abc.abstractmethod
    async def update_session(self, session_id: str, **changes: Any) -> Session | None:
        """Apply a partial update to session metadata."""

    @abc.abstractmethod
    async def add_tokens(
        self, session_id: str, input_tokens: int, output_tokens: int,
    ) -> None:
        """Increment the session's cumulative token counters."""

    @abc.abstractmethod
    async def delete_session(self, session_id: str) -> bool:
        """Delete a session and its transcript. Returns True if found."""
