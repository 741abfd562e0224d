"""Core data models for the agent execution engine.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SessionStatus(str, Enum):
    """Session status as seen by callers and the session store."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class RunState(str, Enum):
    """Per-run runner states. See lifecycle.py for transition rules."""
    INIT = "init"
    STREAMING = "streaming"
    TOOLS_PENDING = "tools_pending"
    AWAITING_PERMISSION = "awaiting_permission"
    EXECUTING_TOOLS = "executing_tools"
    COMPLETED = "completed"
    ERROR = "error"
    ABORTED = "aborted"


class PermissionMode(str, Enum):
    """How tool calls are approved."""
    ASK = "ask"
    DEFAULT = "default"


class TaskMode(str, Enum):
    """Multi-thread task fan-out modes."""
    CONSENSUS = "consensus"
    ROLE_GROUP = "role_group"
    DIFFERENT_TASKS = "different_tasks"


class TaskStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


def _make_id() -> str:
    return str(uuid.uuid4())


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class TokenUsage:
    """Token counts, summed across model calls."""
    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, other: TokenUsage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
        }


@dataclass
class Session:
    """One conversation. Mutated by the runner on status transitions."""
    id: str = field(default_factory=_make_id)
    title: str = ""
    model: str = ""
    working_directory: str | None = None
    temperature: float | None = None
    status: SessionStatus = SessionStatus.IDLE
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
    input_tokens: int = 0
    output_tokens: int = 0
    last_prompt: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "model": self.model,
            "working_directory": self.working_directory,
            "temperature": self.temperature,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "last_prompt": self.last_prompt,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            model=data.get("model", ""),
            working_directory=data.get("working_directory"),
            temperature=data.get("temperature"),
            status=SessionStatus(data.get("status", "idle")),
            created_at=data.get("created_at", 0),
            updated_at=data.get("updated_at", 0),
            input_tokens=data.get("input_tokens", 0),
            output_tokens=data.get("output_tokens", 0),
            last_prompt=data.get("last_prompt"),
        )


# ── Transcript entries ──────────────────────────────────────────────


@dataclass
class UserPromptEntry:
    prompt: str
    type: str = "user_prompt"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "prompt": self.prompt}


@dataclass
class TextEntry:
    text: str
    type: str = "text"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass
class ToolUseEntry:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    type: str = "tool_use"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "id": self.id,
            "name": self.name,
            "input": self.input,
        }


@dataclass
class ToolResultEntry:
    tool_use_id: str
    output: str
    is_error: bool = False
    type: str = "tool_result"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "tool_use_id": self.tool_use_id,
            "output": self.output,
            "is_error": self.is_error,
        }


@dataclass
class ResultEntry:
    """Terminal entry of a run, successful or not."""
    summary: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    duration_ms: int = 0
    is_error: bool = False
    num_turns: int = 0
    type: str = "result"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "subtype": "error" if self.is_error else "success",
            "is_error": self.is_error,
            "summary": self.summary,
            "usage": self.usage.to_dict(),
            "duration_ms": self.duration_ms,
            "num_turns": self.num_turns,
        }


TranscriptEntry = (
    UserPromptEntry | TextEntry | ToolUseEntry | ToolResultEntry | ResultEntry
)


def entry_from_dict(data: dict[str, Any]) -> TranscriptEntry | None:
    """Parse a stored transcript dict. Unknown types return None."""
    kind = data.get("type")
    if kind == "user_prompt":
        return UserPromptEntry(prompt=data.get("prompt", ""))
    if kind == "text":
        return TextEntry(text=data.get("text", ""))
    if kind == "tool_use":
        return ToolUseEntry(
            id=data.get("id", ""),
            name=data.get("name", ""),
            input=data.get("input") or {},
        )
    if kind == "tool_result":
        return ToolResultEntry(
            tool_use_id=data.get("tool_use_id", ""),
            output=data.get("output", ""),
            is_error=bool(data.get("is_error", False)),
        )
    if kind == "result":
        usage = data.get("usage") or {}
        return ResultEntry(
            summary=data.get("summary", ""),
            usage=TokenUsage(
                input_tokens=usage.get("input_tokens", 0),
                output_tokens=usage.get("output_tokens", 0),
            ),
            duration_ms=data.get("duration_ms", 0),
            is_error=bool(data.get("is_error", False)),
            num_turns=data.get("num_turns", 0),
        )
    return None


@dataclass
class SessionHistory:
    """Transcript of one session in occurrence order."""
    session_id: str
    messages: list[TranscriptEntry] = field(default_factory=list)


# ── Tool invocation ─────────────────────────────────────────────────


@dataclass
class ToolInvocation:
    """A finalized tool call emitted by the model.

    ``arguments`` is the raw serialized string exactly as streamed; it
    doubles as the loop-detection signature. ``args`` is the parsed
    object, or None when the string was not valid JSON.
    """
    id: str
    name: str
    arguments: str = ""
    args: dict[str, Any] | None = None

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class ToolResult:
    """Outcome of one executor call. Failures are values, never raised."""
    success: bool
    output: str = ""
    error: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, output: str, **data: Any) -> ToolResult:
        return cls(success=True, output=output, data=data)

    @classmethod
    def fail(cls, error: str) -> ToolResult:
        return cls(success=False, error=error)


@dataclass
class PermissionRequest:
    tool_use_id: str
    tool_name: str
    input: dict[str, Any] = field(default_factory=dict)
    explanation: str | None = None


# ── Run and task results ────────────────────────────────────────────


@dataclass
class RunResult:
    """Final outcome of one runner invocation.

    ``status`` is COMPLETED, ERROR or IDLE (aborted).
    """
    session_id: str
    status: SessionStatus
    text: str = ""
    error: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    duration_ms: int = 0
    iterations: int = 0
    title: str = ""

    @property
    def success(self) -> bool:
        return self.status == SessionStatus.COMPLETED


@dataclass
class RoleConfig:
    """One named perspective in a role group."""
    id: str
    name: str
    prompt: str = ""
    enabled: bool = True
    model: str = ""


@dataclass
class ThreadSpec:
    """One independently specified thread (different_tasks mode)."""
    prompt: str
    model: str = ""


@dataclass
class TaskRequest:
    """Parameters for creating a multi-thread task."""
    title: str
    mode: TaskMode
    prompt: str = ""
    model: str = ""
    quantity: int = 3
    roles: list[RoleConfig] = field(default_factory=list)
    tasks: list[ThreadSpec] = field(default_factory=list)
    working_directory: str | None = None
    share_web_cache: bool = False
    auto_summary: bool = False
    summary_model: str | None = None


@dataclass
class ThreadInfo:
    """Coordinator bookkeeping for one member thread."""
    thread_id: str
    model: str
    prompt: str
    status: SessionStatus = SessionStatus.IDLE
    role: str | None = None
    result: RunResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "thread_id": self.thread_id,
            "model": self.model,
            "status": self.status.value,
            "role": self.role,
        }


@dataclass
class MultiThreadTask:
    id: str = field(default_factory=lambda: f"task-{uuid.uuid4().hex[:12]}")
    title: str = ""
    mode: TaskMode = TaskMode.CONSENSUS
    thread_ids: list[str] = field(default_factory=list)
    summary_thread_id: str | None = None
    status: TaskStatus = TaskStatus.CREATED
    share_web_cache: bool = False
    auto_summary: bool = False
    summary_model: str | None = None
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "mode": self.mode.value,
            "thread_ids": list(self.thread_ids),
            "summary_thread_id": self.summary_thread_id,
            "status": self.status.value,
            "share_web_cache": self.share_web_cache,
            "auto_summary": self.auto_summary,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class TaskOutcome:
    """Per-thread and aggregate view of a task, for display."""
    task_id: str
    status: TaskStatus
    threads: dict[str, SessionStatus] = field(default_factory=dict)
    completed_count: int = 0
    error_count: int = 0
    idle_count: int = 0
    running_count: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    summary_status: SessionStatus | None = None
    summary_text: str | None = None
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.threads)
