"""Exception hierarchy for the agent execution engine.

Specific exceptions for each failure mode. The runner converts all of
them into an ERROR run result; they never escape AgentRunner.run().
"""
from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base exception for all engine errors."""


class ConfigurationError(EngineError):
    """Missing or invalid settings (API key, base URL, model)."""


class ModelClientError(EngineError):
    """Transport or provider failure while streaming a completion.

    ``body`` is the raw error-response body when one was captured,
    ``error`` the structured provider error field, ``status`` the HTTP
    status code.
    """
    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        body: str | None = None,
        error: Any = None,
    ):
        self.status = status
        self.body = body
        self.error = error
        super().__init__(message)


class MaxIterationsError(EngineError):
    """The run exceeded its iteration ceiling."""
    def __init__(self, max_iterations: int):
        self.max_iterations = max_iterations
        super().__init__(
            f"Max iterations reached ({max_iterations})"
        )


class LoopNotResolvedError(EngineError):
    """The model kept repeating a tool call after every corrective hint."""
    def __init__(self, tool_name: str, episodes: int):
        self.tool_name = tool_name
        self.episodes = episodes
        super().__init__(
            f"Loop not resolved: {tool_name} called repeatedly "
            f"(stopped after {episodes} retries)"
        )


class TaskNotFoundError(EngineError):
    """Requested multi-thread task does not exist."""
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")


class TaskConfigurationError(EngineError):
    """Task request is invalid for its mode."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid task: {reason}")
