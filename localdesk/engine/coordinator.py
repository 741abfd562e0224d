"""Multi-thread task coordinator: fans one request out to N runners.

A task is created first and started as a separate step. Starting it
spawns one asyncio task per member thread, each driving its own
AgentRunner over its own session. Threads are independent: an error in
one never aborts its siblings. Once no thread is running the aggregate
status is decided by a pluggable policy; if every thread completed and
the task was not stopped, the optional summary thread runs over the
member transcripts.

Task state diagram:

    created ──start──> running ──all threads stopped──> completed | error
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from .config import fire_event
from .errors import TaskConfigurationError, TaskNotFoundError
from .lifecycle import validate_task_transition
from .memory import MemoryStore
from .models import (
    MultiThreadTask,
    RunResult,
    SessionStatus,
    TaskMode,
    TaskOutcome,
    TaskRequest,
    TaskStatus,
    ThreadInfo,
    TokenUsage,
    now_ms,
)
from .prompts import build_summary_prompt, render_transcript
from .roles import DEFAULT_ROLES, enabled_roles, role_prompt
from .runner import AgentRunner
from .tools import LocalToolExecutor, WebCache

if TYPE_CHECKING:
    from .config import EngineConfig, EventCallback
    from .ports import ModelClient, SessionStore, ToolExecutor

logger = logging.getLogger(__name__)

# (error_count, total, threshold) -> aggregate status
StatusPolicy = Callable[[int, int, float], TaskStatus]

# (working_directory, shared web cache or None) -> executor for one thread
ExecutorFactory = Callable[[str | None, WebCache | None], "ToolExecutor"]


def majority_error_policy(
    error_count: int,
    total: int,
    threshold: float = 0.5,
) -> TaskStatus:
    """ERROR when more than ``threshold`` of the threads errored."""
    if total and error_count > total * threshold:
        return TaskStatus.ERROR
    return TaskStatus.COMPLETED


class _TaskState:
    """Coordinator-private bookkeeping for one task."""

    def __init__(
        self,
        task: MultiThreadTask,
        threads: list[ThreadInfo],
        working_directory: str | None = None,
    ) -> None:
        self.task = task
        self.working_directory = working_directory
        self.threads = {thread.thread_id: thread for thread in threads}
        self.web_cache: WebCache | None = None
        self.summary: ThreadInfo | None = None
        self.supervisor: asyncio.Task | None = None
        self.deleted = False
        self.stopped = False

    def counts(self) -> dict[str, int]:
        statuses = [thread.status for thread in self.threads.values()]
        return {
            "completed_count": statuses.count(SessionStatus.COMPLETED),
            "error_count": statuses.count(SessionStatus.ERROR),
            "idle_count": statuses.count(SessionStatus.IDLE),
            "running_count": statuses.count(SessionStatus.RUNNING),
            "total": len(statuses),
        }


class MultiThreadCoordinator:
    """Creates, starts, tracks and aggregates multi-thread tasks."""

    def __init__(
        self,
        session_store: SessionStore,
        model_client: ModelClient,
        config: EngineConfig,
        tool_executor_factory: ExecutorFactory | None = None,
        event_callback: EventCallback | None = None,
        status_policy: StatusPolicy = majority_error_policy,
    ) -> None:
        self._store = session_store
        self._model_client = model_client
        self._config = config
        self._executor_factory = tool_executor_factory or self._default_executor
        self._event_callback = event_callback
        self._status_policy = status_policy
        self._tasks: dict[str, _TaskState] = {}
        # thread/session id -> live runner
        self._runners: dict[str, AgentRunner] = {}

    def _default_executor(
        self,
        working_directory: str | None,
        web_cache: WebCache | None,
    ) -> ToolExecutor:
        memory_store = (
            MemoryStore(self._config.memory_path) if self._config.enable_memory else None
        )
        return LocalToolExecutor(
            working_directory, web_cache=web_cache, memory_store=memory_store,
        )

    # ── Queries ──

    def get_task(self, task_id: str) -> MultiThreadTask | None:
        state = self._tasks.get(task_id)
        return state.task if state else None

    def list_tasks(self) -> list[MultiThreadTask]:
        return sorted(
            (state.task for state in self._tasks.values()),
            key=lambda t: t.created_at,
            reverse=True,
        )

    def get_threads(self, task_id: str) -> list[ThreadInfo]:
        return list(self._require(task_id).threads.values())

    def outcome(self, task_id: str) -> TaskOutcome:
        """Per-thread and aggregate outcome of a task."""
        state = self._require(task_id)
        counts = state.counts()
        usage = TokenUsage()
        errors: dict[str, str] = {}
        for thread in state.threads.values():
            if thread.result is not None:
                usage.add(thread.result.usage)
                if thread.result.error:
                    errors[thread.thread_id] = thread.result.error

        summary_status = None
        summary_text = None
        if state.summary is not None:
            summary_status = state.summary.status
            if state.summary.result is not None:
                usage.add(state.summary.result.usage)
                summary_text = state.summary.result.text or None
                if state.summary.result.error:
                    errors[state.summary.thread_id] = state.summary.result.error

        return TaskOutcome(
            task_id=task_id,
            status=state.task.status,
            threads={tid: t.status for tid, t in state.threads.items()},
            completed_count=counts["completed_count"],
            error_count=counts["error_count"],
            idle_count=counts["idle_count"],
            running_count=counts["running_count"],
            usage=usage,
            summary_status=summary_status,
            summary_text=summary_text,
            errors=errors,
        )

    def _require(self, task_id: str) -> _TaskState:
        state = self._tasks.get(task_id)
        if state is None:
            raise TaskNotFoundError(task_id)
        return state

    # ── Create ──

    async def create_task(self, request: TaskRequest) -> MultiThreadTask:
        """Create a task and one session per member thread.

        Threads are not started; call start_task().
        """
        plans = self._plan_threads(request)
        task = MultiThreadTask(
            title=request.title,
            mode=request.mode,
            share_web_cache=request.share_web_cache,
            auto_summary=request.auto_summary,
            summary_model=request.summary_model,
        )

        threads: list[ThreadInfo] = []
        total = len(plans)
        for index, (model, prompt, role) in enumerate(plans, start=1):
            session = await self._store.create_session(
                title=f"{request.title} [{index}/{total}]",
                model=model,
                working_directory=request.working_directory,
            )
            threads.append(ThreadInfo(
                thread_id=session.id, model=model, prompt=prompt, role=role,
            ))
        task.thread_ids = [thread.thread_id for thread in threads]

        state = _TaskState(task, threads, request.working_directory)
        self._tasks[task.id] = state

        logger.info(
            "Task %s created: mode=%s threads=%d",
            task.id, task.mode.value, total,
        )
        await fire_event(self._event_callback, {
            "event": "task.created",
            "task": task.to_dict(),
            "threads": [thread.to_dict() for thread in threads],
        })
        return task

    def _plan_threads(self, request: TaskRequest) -> list[tuple[str, str, str | None]]:
        """(model, prompt, role id) per member thread."""
        default_model = request.model or self._config.model

        if request.mode == TaskMode.CONSENSUS:
            low, high = self._config.consensus_min, self._config.consensus_max
            if not low <= request.quantity <= high:
                raise TaskConfigurationError(
                    f"consensus quantity must be between {low} and {high}, "
                    f"got {request.quantity}"
                )
            if not request.prompt.strip():
                raise TaskConfigurationError("consensus task needs a prompt")
            return [(default_model, request.prompt, None)] * request.quantity

        if request.mode == TaskMode.ROLE_GROUP:
            if not request.prompt.strip():
                raise TaskConfigurationError("role group task needs a prompt")
            roles = enabled_roles(request.roles or DEFAULT_ROLES)
            if not roles:
                raise TaskConfigurationError("role group has no enabled roles")
            return [
                (role.model or default_model, role_prompt(role, request.prompt), role.id)
                for role in roles
            ]

        if request.mode == TaskMode.DIFFERENT_TASKS:
            if not request.tasks:
                raise TaskConfigurationError("different_tasks needs at least one task")
            plans = []
            for index, spec in enumerate(request.tasks, start=1):
                if not spec.prompt.strip():
                    raise TaskConfigurationError(f"task #{index} has an empty prompt")
                plans.append((spec.model or default_model, spec.prompt, None))
            return plans

        raise TaskConfigurationError(f"unknown mode {request.mode!r}")

    # ── Start / wait ──

    async def start_task(self, task_id: str) -> None:
        """Start every member thread of a created task."""
        state = self._tasks.get(task_id)
        if state is None:
            message = f"Task {task_id} not found"
            logger.warning(message)
            await fire_event(self._event_callback, {
                "event": "task.error",
                "task_id": task_id,
                "message": message,
            })
            raise TaskNotFoundError(task_id)

        task = state.task
        validate_task_transition(task.status, TaskStatus.RUNNING)

        if task.share_web_cache:
            state.web_cache = WebCache()

        # Build every runner before any thread starts
        runners: list[tuple[ThreadInfo, AgentRunner]] = []
        try:
            for thread in state.threads.values():
                runners.append((thread, await self._make_runner(state, thread)))
        except Exception as exc:
            for thread, _ in runners:
                self._runners.pop(thread.thread_id, None)
            state.web_cache = None
            logger.error("Task %s failed to start: %s", task.id, exc)
            await fire_event(self._event_callback, {
                "event": "task.error",
                "task_id": task.id,
                "message": str(exc),
            })
            raise

        task.status = TaskStatus.RUNNING
        task.updated_at = now_ms()
        thread_tasks = []
        for thread, runner in runners:
            thread.status = SessionStatus.RUNNING
            thread_tasks.append(asyncio.create_task(
                self._run_thread(state, thread, runner),
                name=f"thread-{thread.thread_id[:8]}",
            ))

        logger.info("Task %s started (%d threads)", task.id, len(thread_tasks))
        await self._emit_status(state)
        state.supervisor = asyncio.create_task(
            self._supervise(state, thread_tasks),
            name=f"task-{task.id}",
        )

    async def wait_for_task(self, task_id: str) -> TaskOutcome:
        """Wait until a started task resolves and return its outcome."""
        state = self._require(task_id)
        if state.supervisor is not None:
            await asyncio.shield(state.supervisor)
        return self.outcome(task_id)

    async def _make_runner(
        self,
        state: _TaskState,
        thread: ThreadInfo,
        tools_enabled: bool = True,
    ) -> AgentRunner:
        session = await self._store.get_session(thread.thread_id)
        if session is None:
            raise TaskConfigurationError(f"session {thread.thread_id} is missing")
        executor = self._executor_factory(session.working_directory, state.web_cache)
        runner = AgentRunner(
            session=session,
            model_client=self._model_client,
            tool_executor=executor,
            session_store=self._store,
            config=self._config,
            event_callback=self._event_callback,
            tools_enabled=tools_enabled,
        )
        self._runners[thread.thread_id] = runner
        return runner

    async def _run_thread(
        self,
        state: _TaskState,
        thread: ThreadInfo,
        runner: AgentRunner,
    ) -> RunResult:
        try:
            result = await runner.run(thread.prompt)
        except asyncio.CancelledError:
            runner.abort()
            result = RunResult(
                session_id=thread.thread_id,
                status=SessionStatus.IDLE,
                error="Thread was cancelled",
            )
            self._record_result(state, thread, result)
            raise
        except Exception as exc:
            # Runners report failures as results; this guards the sibling threads
            logger.exception("Thread %s crashed", thread.thread_id[:8])
            result = RunResult(
                session_id=thread.thread_id,
                status=SessionStatus.ERROR,
                error=str(exc) or type(exc).__name__,
            )
        self._record_result(state, thread, result)
        logger.info(
            "Task %s: thread %s finished as %s",
            state.task.id, thread.thread_id[:8], result.status.value,
        )
        if thread is not state.summary:
            await self._emit_status(state)
        return result

    def _record_result(self, state: _TaskState, thread: ThreadInfo, result: RunResult) -> None:
        thread.result = result
        thread.status = result.status
        self._runners.pop(thread.thread_id, None)

    async def _supervise(self, state: _TaskState, thread_tasks: list[asyncio.Task]) -> None:
        await asyncio.gather(*thread_tasks, return_exceptions=True)
        if state.deleted:
            return

        task = state.task
        counts = state.counts()
        status = self._status_policy(
            counts["error_count"], counts["total"], self._config.error_threshold,
        )

        # Summaries only aggregate a fully completed, unstopped task
        if (
            task.auto_summary
            and not state.stopped
            and counts["completed_count"] == counts["total"]
        ):
            summary_result = await self._run_summary(state)
            if summary_result is not None and summary_result.status == SessionStatus.ERROR:
                status = TaskStatus.ERROR
            if state.deleted:
                return

        validate_task_transition(task.status, status)
        task.status = status
        task.updated_at = now_ms()
        logger.info(
            "Task %s finished: %s (completed=%d error=%d idle=%d)",
            task.id, status.value,
            counts["completed_count"], counts["error_count"], counts["idle_count"],
        )
        await self._emit_status(state)

    async def _run_summary(self, state: _TaskState) -> RunResult | None:
        task = state.task
        threads = list(state.threads.values())
        transcripts = []
        for thread in threads:
            history = await self._store.read_history(thread.thread_id)
            transcript = render_transcript(history.messages)
            if not transcript and thread.result is not None:
                transcript = thread.result.text or thread.result.error or ""
            transcripts.append((thread.model, transcript))

        model = (
            task.summary_model
            or self._config.summary_model
            or (threads[0].model if threads else self._config.model)
        )
        session = await self._store.create_session(
            title=f"{task.title} - Summary",
            model=model,
            working_directory=state.working_directory,
        )
        summary = ThreadInfo(
            thread_id=session.id,
            model=model,
            prompt=build_summary_prompt(task.title, transcripts),
            status=SessionStatus.RUNNING,
            role="summary",
        )
        state.summary = summary
        task.summary_thread_id = session.id
        logger.info("Task %s: running summary thread %s", task.id, session.id[:8])

        runner = await self._make_runner(state, summary, tools_enabled=False)
        if state.deleted:
            self._runners.pop(summary.thread_id, None)
            return None
        return await self._run_thread(state, summary, runner)

    # ── Stop / delete ──

    def stop_task(self, task_id: str) -> int:
        """Abort every running thread of a task. Returns how many."""
        state = self._require(task_id)
        if state.task.status == TaskStatus.RUNNING:
            state.stopped = True
        stopped = 0
        thread_ids = list(state.threads)
        if state.summary is not None:
            thread_ids.append(state.summary.thread_id)
        for thread_id in thread_ids:
            runner = self._runners.get(thread_id)
            if runner is None:
                continue
            if runner.is_running:
                stopped += 1
            runner.abort()
        logger.info("Task %s: stop requested (%d running)", task_id, stopped)
        return stopped

    async def delete_task(self, task_id: str) -> bool:
        """Forget a task. Running threads are aborted; sessions are kept."""
        state = self._tasks.pop(task_id, None)
        if state is None:
            return False
        state.deleted = True
        thread_ids = list(state.threads)
        if state.summary is not None:
            thread_ids.append(state.summary.thread_id)
        for thread_id in thread_ids:
            runner = self._runners.get(thread_id)
            if runner is not None:
                runner.abort()
        logger.info("Task %s deleted", task_id)
        await fire_event(self._event_callback, {
            "event": "task.deleted",
            "task_id": task_id,
        })
        return True

    # ── Permissions ──

    def resolve_permission(self, session_id: str, tool_use_id: str, approved: bool) -> bool:
        runner = self._runners.get(session_id)
        if runner is None:
            return False
        return runner.resolve_permission(tool_use_id, approved)

    # ── Events ──

    async def _emit_status(self, state: _TaskState) -> None:
        if state.deleted:
            return
        await fire_event(self._event_callback, {
            "event": "task.status",
            "task_id": state.task.id,
            "status": state.task.status.value,
            **state.counts(),
        })
