"""Run and task lifecycle state machines.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

Run state diagram:

    INIT ──> STREAMING ──┬──> COMPLETED
                         │
                         └──> TOOLS_PENDING ──┬──> AWAITING_PERMISSION <──> EXECUTING_TOOLS
                                              │            │                     │
                                              └──> EXECUTING_TOOLS               └──> STREAMING
                                                           └──> STREAMING

    Any non-terminal state ──> ERROR | ABORTED

Task state diagram:

    CREATED ──> RUNNING ──> COMPLETED | ERROR
"""
from __future__ import annotations

from .models import RunState, TaskStatus

_RUN_FAILURE = {RunState.ERROR, RunState.ABORTED}

VALID_RUN_TRANSITIONS: dict[RunState, set[RunState]] = {
    RunState.INIT: {RunState.STREAMING} | _RUN_FAILURE,
    RunState.STREAMING: {
        RunState.TOOLS_PENDING,
        RunState.COMPLETED,
    } | _RUN_FAILURE,
    RunState.TOOLS_PENDING: {
        RunState.AWAITING_PERMISSION,
        RunState.EXECUTING_TOOLS,
    } | _RUN_FAILURE,
    # STREAMING directly when the last pending call was denied
    RunState.AWAITING_PERMISSION: {
        RunState.EXECUTING_TOOLS,
        RunState.STREAMING,
    } | _RUN_FAILURE,
    RunState.EXECUTING_TOOLS: {
        RunState.AWAITING_PERMISSION,
        RunState.STREAMING,
    } | _RUN_FAILURE,
    RunState.COMPLETED: set(),
    RunState.ERROR: set(),
    RunState.ABORTED: set(),
}

TERMINAL_RUN_STATES = frozenset(
    state for state, allowed in VALID_RUN_TRANSITIONS.items() if not allowed
)

VALID_TASK_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.CREATED: {TaskStatus.RUNNING},
    TaskStatus.RUNNING: {TaskStatus.COMPLETED, TaskStatus.ERROR},
    TaskStatus.COMPLETED: set(),
    TaskStatus.ERROR: set(),
}


def validate_run_transition(current: RunState, target: RunState) -> None:
    """Validate a run state transition. Raises ValueError if invalid."""
    allowed = VALID_RUN_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise ValueError(
            f"Invalid run transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


def validate_task_transition(current: TaskStatus, target: TaskStatus) -> None:
    """Validate a task status transition. Raises ValueError if invalid."""
    allowed = VALID_TASK_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise ValueError(
            f"Invalid task transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
