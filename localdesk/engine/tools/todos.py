"""Per-session todo list driven by the manage_todos tool."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

TODO_STATUSES = ("pending", "in_progress", "completed", "cancelled")

_STATUS_MARKS = {
    "pending": "[ ]",
    "in_progress": "[~]",
    "completed": "[x]",
    "cancelled": "[-]",
}


@dataclass
class TodoItem:
    id: str
    content: str
    status: str = "pending"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class TodoList:
    """Ordered todo items keyed by id."""

    def __init__(self) -> None:
        self._items: list[TodoItem] = []

    @property
    def items(self) -> list[TodoItem]:
        return list(self._items)

    def to_list(self) -> list[dict[str, Any]]:
        return [item.to_dict() for item in self._items]

    def replace(self, items: list[dict[str, Any]]) -> None:
        parsed: list[TodoItem] = []
        for index, raw in enumerate(items, start=1):
            if not isinstance(raw, dict) or not raw.get("content"):
                raise ValueError(f"Todo #{index} needs a 'content' field")
            status = raw.get("status", "pending")
            if status not in TODO_STATUSES:
                raise ValueError(f"Invalid todo status: {status}")
            parsed.append(TodoItem(
                id=str(raw.get("id") or index),
                content=str(raw["content"]),
                status=status,
            ))
        self._items = parsed

    def update(self, todo_id: str, status: str) -> TodoItem:
        if status not in TODO_STATUSES:
            raise ValueError(f"Invalid todo status: {status}")
        for item in self._items:
            if item.id == str(todo_id):
                item.status = status
                return item
        raise KeyError(f"Todo {todo_id} not found")

    def clear(self) -> None:
        self._items.clear()

    def render(self) -> str:
        if not self._items:
            return "No todos."
        return "\n".join(
            f"{_STATUS_MARKS[item.status]} {item.id}. {item.content}"
            for item in self._items
        )

    def summary(self) -> str:
        """System-prompt section listing open items, or ''."""
        open_items = [
            item for item in self._items
            if item.status in ("pending", "in_progress")
        ]
        if not open_items:
            return ""
        lines = "\n".join(
            f"{_STATUS_MARKS[item.status]} {item.id}. {item.content}"
            for item in open_items
        )
        return f"\nCURRENT TODOS:\n{lines}\n"
