"""Built-in tools available to agent runners."""
from __future__ import annotations

__all__ = [
    "LocalToolExecutor",
    "TOOL_DEFINITIONS",
    "TodoList",
    "WebCache",
]

from localdesk.engine.tools.executor import TOOL_DEFINITIONS, LocalToolExecutor
from localdesk.engine.tools.todos import TodoList
from localdesk.engine.tools.web_cache import WebCache
