"""Event types emitted by the runner and the task coordinator.

Each event corresponds to an engine callback dict (keyed by "event"),
parsed into a typed dataclass for safe consumption by frontends.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class EngineEvent:
    """Base event from the engine."""
    event_type: str = ""


@dataclass
class StreamMessage(EngineEvent):
    """A transcript-shaped message, a raw stream fragment, or a system message."""
    event_type: str = "stream.message"
    session_id: str = ""
    message: dict[str, Any] = field(default_factory=dict)

    @property
    def message_type(self) -> str:
        return self.message.get("type", "")

    @property
    def text_delta(self) -> str | None:
        """Text of a content_block_delta fragment, else None."""
        if self.message_type != "stream_event":
            return None
        inner = self.message.get("event") or {}
        if inner.get("type") != "content_block_delta":
            return None
        return (inner.get("delta") or {}).get("text")


@dataclass
class PermissionRequested(EngineEvent):
    event_type: str = "permission.request"
    session_id: str = ""
    tool_use_id: str = ""
    tool_name: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    explanation: str | None = None


@dataclass
class SessionStatusChanged(EngineEvent):
    event_type: str = "session.status"
    session_id: str = ""
    status: str = ""
    title: str = ""
    error: str | None = None
    duration_ms: int | None = None
    usage: dict[str, int] | None = None


@dataclass
class TodosUpdated(EngineEvent):
    event_type: str = "todos.updated"
    session_id: str = ""
    todos: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class TaskCreated(EngineEvent):
    event_type: str = "task.created"
    task: dict[str, Any] = field(default_factory=dict)
    threads: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class TaskStatusChanged(EngineEvent):
    event_type: str = "task.status"
    task_id: str = ""
    status: str = ""
    completed_count: int = 0
    error_count: int = 0
    idle_count: int = 0
    running_count: int = 0
    total: int = 0


@dataclass
class TaskError(EngineEvent):
    event_type: str = "task.error"
    task_id: str = ""
    message: str = ""


@dataclass
class TaskDeleted(EngineEvent):
    event_type: str = "task.deleted"
    task_id: str = ""


# Map of event type strings to dataclass constructors
_EVENT_MAP: dict[str, type[EngineEvent]] = {
    "stream.message": StreamMessage,
    "permission.request": PermissionRequested,
    "session.status": SessionStatusChanged,
    "todos.updated": TodosUpdated,
    "task.created": TaskCreated,
    "task.status": TaskStatusChanged,
    "task.error": TaskError,
    "task.deleted": TaskDeleted,
}


def event_to_dict(event: EngineEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    # Use "event" key instead of "event_type" for consistency with engine callbacks
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> EngineEvent:
    """Convert an engine callback dict to a typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, EngineEvent)
    # Filter dict keys to only those the dataclass accepts
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)
