"""Drives one conversation through the streaming tool-call loop.

One AgentRunner instance executes exactly one run:

    run() ──> INIT ──> STREAMING ──┬──> COMPLETED (no tool calls)
                                   └──> TOOLS_PENDING ──> [AWAITING_PERMISSION]
                                        ──> EXECUTING_TOOLS ──> STREAMING ...

Every run ends in COMPLETED, ERROR or ABORTED, reported to callers as
session status completed, error or idle respectively. run() returns a
RunResult instead of raising; only asyncio.CancelledError propagates.

The runner holds no global state. The model client, tool executor and
session store are injected; the permission gate and loop detector are
private to the instance.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator

from .errors import ConfigurationError, LoopNotResolvedError, MaxIterationsError
from .history import ReplayedHistory, build_history
from .lifecycle import TERMINAL_RUN_STATES, validate_run_transition
from .loop_detector import LoopDetector
from .memory import MemoryStore
from .models import (
    PermissionMode,
    ResultEntry,
    RunResult,
    RunState,
    Session,
    SessionStatus,
    TextEntry,
    TokenUsage,
    ToolInvocation,
    ToolResult,
    ToolResultEntry,
    ToolUseEntry,
    TranscriptEntry,
    UserPromptEntry,
)
from .permission_gate import PermissionGate
from .ports import (
    ChunkEvent,
    CompletionRequest,
    FinishReason,
    TextDelta,
    ToolCallDelta,
    Usage,
)
from .prompts import (
    CANCELLED_RESULT,
    DENIED_RESULT,
    INVALID_ARGUMENTS_RESULT,
    LOOP_BREAK_HINT,
    NO_WORKSPACE,
    build_system_prompt,
    format_error_text,
    format_loop_stopped_text,
)
from .tool_calls import ToolCallAccumulator
from .config import fire_event
from localdesk.shared.durable_write import atomic_write_json

if TYPE_CHECKING:
    from .config import EngineConfig, EventCallback
    from .ports import ModelClient, SessionStore, ToolExecutor

logger = logging.getLogger(__name__)

_STREAM_END = object()


def extract_error_message(exc: BaseException) -> str:
    """Human-readable message for a run-fatal exception.

    Priority: captured raw response body (its ``detail`` or ``error``
    field when JSON), then the structured provider error, then the
    exception text. The HTTP status is prefixed when known and not
    already part of the message.
    """
    status = getattr(exc, "status", None)
    body = getattr(exc, "body", None)
    structured = getattr(exc, "error", None)

    if body:
        try:
            parsed = json.loads(body)
        except (TypeError, ValueError):
            message = str(body)
        else:
            if isinstance(parsed, dict) and parsed.get("detail"):
                message = _stringify(parsed["detail"])
            elif isinstance(parsed, dict) and parsed.get("error"):
                message = _stringify(parsed["error"])
            else:
                message = f"API Error: {json.dumps(parsed, default=str)}"
    elif structured:
        message = _stringify(structured)
    else:
        message = str(exc) or type(exc).__name__

    if status and str(status) not in message:
        message = f"[{status}] {message}"
    return message


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get("message"), str):
        return value["message"]
    return json.dumps(value, default=str)


async def _read_next(stream: AsyncIterator[ChunkEvent]) -> Any:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _STREAM_END


class AgentRunner:
    """Runs one session's tool-using conversation with a model."""

    def __init__(
        self,
        session: Session,
        model_client: ModelClient,
        tool_executor: ToolExecutor,
        session_store: SessionStore,
        config: EngineConfig,
        event_callback: EventCallback | None = None,
        memory_store: MemoryStore | None = None,
        tools_enabled: bool = True,
    ) -> None:
        self._session = session
        self._model_client = model_client
        self._executor = tool_executor
        self._store = session_store
        self._config = config
        self._event_callback = event_callback
        self._tools_enabled = tools_enabled
        if memory_store is None and config.enable_memory:
            memory_store = MemoryStore(config.memory_path)
        self._memory_store = memory_store
        self._permission_mode = config.permission_mode

        self._abort_event = asyncio.Event()
        self._gate = PermissionGate(self._abort_event)
        self._loop_detector = LoopDetector(
            window=config.loop_window,
            threshold=config.loop_threshold,
            max_episodes=config.loop_max_episodes,
        )
        self._state = RunState.INIT
        self._started = False
        self._start_time = 0.0
        self._usage = TokenUsage()
        self._iterations = 0

    @property
    def session_id(self) -> str:
        return self._session.id

    @property
    def session(self) -> Session:
        return self._session

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._started and self._state not in TERMINAL_RUN_STATES

    @property
    def permission_mode(self) -> PermissionMode:
        return self._permission_mode

    @property
    def _aborted(self) -> bool:
        return self._abort_event.is_set()

    # ── Caller controls ──

    def abort(self) -> None:
        """Request cooperative cancellation of the run.

        Pending permission requests resolve as denied immediately; the
        run stops at its next checkpoint with status idle.
        """
        if self._aborted or self._state in TERMINAL_RUN_STATES:
            return
        logger.info("Runner %s: abort requested", self.session_id[:8])
        self._abort_event.set()
        self._gate.cancel_all()

    def resolve_permission(self, tool_use_id: str, approved: bool) -> bool:
        return self._gate.resolve(tool_use_id, approved)

    def set_permission_mode(self, mode: PermissionMode | str) -> None:
        """Switch approval mode. Takes effect from the next tool call."""
        self._permission_mode = PermissionMode(mode)
        logger.info(
            "Runner %s: permission mode -> %s",
            self.session_id[:8],
            self._permission_mode.value,
        )

    # ── Run ──

    async def run(
        self,
        prompt: str = "",
        *,
        resume: bool = True,
        retry: bool = False,
    ) -> RunResult:
        """Execute the run to a terminal state.

        ``resume`` replays the stored transcript into the model context;
        ``retry`` marks a caller-initiated re-run of the last request.
        """
        if self._started:
            raise RuntimeError(f"Runner for session {self.session_id} already ran")
        self._started = True
        self._start_time = time.monotonic()
        logger.info(
            "Runner %s: starting (model=%s resume=%s retry=%s)",
            self.session_id[:8], self._model, resume, retry,
        )

        try:
            self._check_configuration()
        except ConfigurationError as exc:
            logger.error("Runner %s: %s", self.session_id[:8], exc)
            return await self._finish_error(str(exc), persist=False)

        if self._aborted:
            return await self._finish_aborted()

        try:
            await self._set_status(SessionStatus.RUNNING, last_prompt=prompt or None)
            if retry:
                await self._emit_message({
                    "type": "system",
                    "subtype": "notice",
                    "text": "Retrying the last request...",
                })
            text = await self._run_loop(prompt, resume)
            if text is None or self._aborted:
                return await self._finish_aborted()
            return await self._finish_completed(text)
        except asyncio.CancelledError:
            logger.info("Runner %s: task cancelled", self.session_id[:8])
            self.abort()
            await asyncio.shield(self._finish_aborted())
            raise
        except LoopNotResolvedError as exc:
            logger.error("Runner %s: %s", self.session_id[:8], exc)
            return await self._finish_error(
                str(exc),
                chat_text=format_loop_stopped_text(exc.tool_name, exc.episodes),
            )
        except MaxIterationsError as exc:
            logger.error("Runner %s: %s", self.session_id[:8], exc)
            return await self._finish_error(str(exc))
        except Exception as exc:
            logger.exception("Runner %s: run failed", self.session_id[:8])
            return await self._finish_error(extract_error_message(exc))

    @property
    def _model(self) -> str:
        return self._session.model or self._config.model

    @property
    def _temperature(self) -> float | None:
        if not self._config.send_temperature:
            return None
        if self._session.temperature is not None:
            return self._session.temperature
        return self._config.temperature

    def _check_configuration(self) -> None:
        self._model_client.check_configuration()
        if not self._model:
            raise ConfigurationError("Model name is not configured")

    async def _run_loop(self, prompt: str, resume: bool) -> str | None:
        """Iterate model calls until a final answer. None means aborted."""
        stored = await self._store.read_history(self.session_id)
        entries = stored.messages if resume else []
        memory = self._load_memory()
        replay = build_history(
            entries,
            prompt,
            system_prompt=build_system_prompt(
                self._session.working_directory, self._executor.todo_summary(),
            ),
            memory=memory,
        )

        last_stored_prompt = next(
            (e.prompt for e in reversed(stored.messages) if isinstance(e, UserPromptEntry)),
            None,
        )
        if prompt and prompt != last_stored_prompt:
            await self._record(UserPromptEntry(prompt=prompt))

        tools = self._executor.definitions() if self._tools_enabled else []
        await self._emit_message({
            "type": "system",
            "subtype": "init",
            "cwd": self._session.working_directory or NO_WORKSPACE,
            "session_id": self.session_id,
            "tools": [t.get("function", {}).get("name", "") for t in tools],
            "model": self._model,
            "permission_mode": self._permission_mode.value,
            "memory_enabled": self._memory_store is not None,
        })

        messages = replay.messages
        hint_pending = False
        while True:
            if self._aborted:
                return None
            if self._iterations >= self._config.max_iterations:
                raise MaxIterationsError(self._config.max_iterations)
            self._iterations += 1
            logger.debug(
                "Runner %s: iteration %d (%d messages)",
                self.session_id[:8], self._iterations, len(messages),
            )

            await self._transition(RunState.STREAMING)
            streamed = await self._stream_completion(messages, tools)
            if streamed is None:
                return None
            text, calls = streamed
            if not calls:
                return text

            await self._transition(RunState.TOOLS_PENDING)
            verdict = self._loop_detector.observe_batch(
                [(call.name, call.arguments) for call in calls]
            )
            if verdict.fatal:
                raise LoopNotResolvedError(verdict.tool_name or "", verdict.episodes - 1)
            if verdict.looping:
                hint_pending = True

            messages.append({
                "role": "assistant",
                "content": text,
                "tool_calls": [self._wire_call(call) for call in calls],
            })
            if text.strip():
                await self._record(TextEntry(text=text))
            for call in calls:
                await self._record(ToolUseEntry(
                    id=call.id, name=call.name, input=call.args or {},
                ))

            tool_messages, memory_changed = await self._process_calls(calls)
            messages.extend(tool_messages)
            if self._aborted:
                return None

            if hint_pending:
                logger.info("Runner %s: injecting loop-break hint", self.session_id[:8])
                messages.append({"role": "user", "content": LOOP_BREAK_HINT})
                hint_pending = False

            if memory_changed and self._memory_store is not None:
                self._refresh_memory(replay)

    @staticmethod
    def _wire_call(call: ToolInvocation) -> dict[str, Any]:
        wire = call.to_openai()
        if call.args is None:
            # Unparseable arguments are not echoed back to the provider
            wire["function"]["arguments"] = "{}"
        return wire

    # ── Streaming ──

    async def _stream_completion(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> tuple[str, list[ToolInvocation]] | None:
        """One model call. Returns (text, calls), or None if aborted."""
        request = CompletionRequest(
            model=self._model,
            messages=messages,
            tools=tools,
            temperature=self._temperature,
        )
        self._log_request(request)

        text_parts: list[str] = []
        started = False
        accumulator = ToolCallAccumulator(self._iterations)
        finish_reason: str | None = None

        stream = self._model_client.stream_completion(request)
        try:
            while not self._aborted:
                chunk = await self._next_chunk(stream)
                if chunk is None:
                    logger.info("Runner %s: aborted during stream", self.session_id[:8])
                    break
                if chunk is _STREAM_END:
                    break
                if isinstance(chunk, TextDelta):
                    if not chunk.text:
                        continue
                    if not started:
                        started = True
                        await self._emit_stream_event({
                            "type": "content_block_start",
                            "content_block": {"type": "text", "text": ""},
                            "index": 0,
                        })
                    text_parts.append(chunk.text)
                    await self._emit_stream_event({
                        "type": "content_block_delta",
                        "delta": {"type": "text_delta", "text": chunk.text},
                        "index": 0,
                    })
                elif isinstance(chunk, ToolCallDelta):
                    accumulator.add(chunk)
                elif isinstance(chunk, Usage):
                    self._usage.input_tokens += chunk.prompt_tokens
                    self._usage.output_tokens += chunk.completion_tokens
                elif isinstance(chunk, FinishReason):
                    finish_reason = chunk.reason
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if started:
            await self._emit_stream_event({"type": "content_block_stop", "index": 0})
        if self._aborted:
            return None

        calls = accumulator.finalize()
        text = "".join(text_parts)
        logger.debug(
            "Runner %s: stream complete (%d chars, %d tool calls, finish=%s)",
            self.session_id[:8], len(text), len(calls), finish_reason,
        )
        return text, calls

    async def _next_chunk(self, stream: AsyncIterator[ChunkEvent]) -> Any:
        """Next stream item, _STREAM_END, or None when aborted first."""
        read = asyncio.ensure_future(_read_next(stream))
        abort_waiter = asyncio.ensure_future(self._abort_event.wait())
        timeout = self._config.stream_read_timeout_seconds
        try:
            done, _ = await asyncio.wait(
                {read, abort_waiter},
                timeout=timeout if timeout and timeout > 0 else None,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            abort_waiter.cancel()
        if read in done:
            return read.result()

        read.cancel()
        await asyncio.wait({read})
        if not done:
            raise TimeoutError(
                f"No data from model stream for {timeout:.0f}s"
            )
        return None

    # ── Tool processing ──

    async def _process_calls(
        self, calls: list[ToolInvocation],
    ) -> tuple[list[dict[str, Any]], bool]:
        """Approve and execute calls in order.

        Returns the tool-role messages and whether memory changed. On
        abort, every call not yet processed gets a cancelled result.
        """
        tool_messages: list[dict[str, Any]] = []
        memory_changed = False

        for position, call in enumerate(calls):
            if self._aborted:
                await self._cancel_remaining(calls[position:], tool_messages)
                break

            if call.args is None:
                await self._transition(RunState.EXECUTING_TOOLS)
                await self._record_tool_result(
                    call, INVALID_ARGUMENTS_RESULT, True, tool_messages,
                )
                continue

            if self._permission_mode == PermissionMode.ASK:
                await self._transition(RunState.AWAITING_PERMISSION)
                approved = await self._request_permission(call)
                if self._aborted:
                    await self._cancel_remaining(calls[position:], tool_messages)
                    break
                if not approved:
                    logger.warning(
                        "Runner %s: %s denied by user", self.session_id[:8], call.name,
                    )
                    await self._record_tool_result(call, DENIED_RESULT, True, tool_messages)
                    continue

            await self._transition(RunState.EXECUTING_TOOLS)
            result = await self._execute(call)

            if result.success and call.name in self._config.memory_tool_names:
                memory_changed = True
            if result.success and call.name in self._config.todo_tool_names:
                await fire_event(self._event_callback, {
                    "event": "todos.updated",
                    "session_id": self.session_id,
                    "todos": result.data.get("todos", []),
                })

            if result.success:
                output = result.output or "Success"
            else:
                output = f"Error: {result.error}"
            await self._record_tool_result(call, output, not result.success, tool_messages)

        return tool_messages, memory_changed

    async def _request_permission(self, call: ToolInvocation) -> bool:
        args = call.args or {}
        await fire_event(self._event_callback, {
            "event": "permission.request",
            "session_id": self.session_id,
            "tool_use_id": call.id,
            "tool_name": call.name,
            "input": args,
            "explanation": args.get("explanation"),
        })
        return await self._gate.request(call.id, call.name, args)

    async def _execute(self, call: ToolInvocation) -> ToolResult:
        logger.info(
            "Runner %s: executing %s (%s)",
            self.session_id[:8], call.name, call.id[:8],
        )
        try:
            return await self._executor.execute(call.name, call.args or {})
        except Exception as exc:
            # Executors should return failures; keep the run alive if one raises
            logger.exception("Tool executor raised for %s", call.name)
            return ToolResult.fail(str(exc) or type(exc).__name__)

    async def _cancel_remaining(
        self,
        calls: list[ToolInvocation],
        tool_messages: list[dict[str, Any]],
    ) -> None:
        for call in calls:
            await self._record_tool_result(call, CANCELLED_RESULT, True, tool_messages)

    async def _record_tool_result(
        self,
        call: ToolInvocation,
        output: str,
        is_error: bool,
        tool_messages: list[dict[str, Any]],
    ) -> None:
        await self._record(ToolResultEntry(
            tool_use_id=call.id, output=output, is_error=is_error,
        ))
        tool_messages.append({
            "role": "tool",
            "tool_call_id": call.id,
            "name": call.name,
            "content": output,
        })

    # ── Memory ──

    def _load_memory(self) -> str | None:
        if self._memory_store is None:
            return None
        return self._memory_store.load()

    def _refresh_memory(self, replay: ReplayedHistory) -> None:
        memory = self._load_memory()
        if replay.refresh_memory(memory):
            logger.info("Runner %s: memory reloaded into context", self.session_id[:8])

    # ── Terminal states ──

    def _duration_ms(self) -> int:
        return int((time.monotonic() - self._start_time) * 1000)

    async def _finish_completed(self, text: str) -> RunResult:
        duration_ms = self._duration_ms()
        await self._transition(RunState.COMPLETED)
        await self._record(TextEntry(text=text))
        await self._record(ResultEntry(
            summary=text,
            usage=TokenUsage(self._usage.input_tokens, self._usage.output_tokens),
            duration_ms=duration_ms,
            num_turns=self._iterations,
        ))
        await self._store_usage()
        await self._set_status(
            SessionStatus.COMPLETED, duration_ms=duration_ms, include_usage=True,
        )
        logger.info(
            "Runner %s: completed in %d iteration(s), %dms",
            self.session_id[:8], self._iterations, duration_ms,
        )
        return self._result(SessionStatus.COMPLETED, text=text, duration_ms=duration_ms)

    async def _finish_error(
        self,
        message: str,
        *,
        chat_text: str | None = None,
        persist: bool = True,
    ) -> RunResult:
        duration_ms = self._duration_ms()
        if self._state not in TERMINAL_RUN_STATES:
            await self._transition(RunState.ERROR)
        if persist:
            try:
                await self._record(TextEntry(text=chat_text or format_error_text(message)))
                await self._record(ResultEntry(
                    summary=message,
                    usage=TokenUsage(self._usage.input_tokens, self._usage.output_tokens),
                    duration_ms=duration_ms,
                    is_error=True,
                    num_turns=self._iterations,
                ))
                await self._store_usage()
            except Exception:
                logger.exception("Runner %s: failed to persist error", self.session_id[:8])
        await self._set_status(
            SessionStatus.ERROR,
            error=message,
            duration_ms=duration_ms,
            include_usage=persist,
        )
        return self._result(SessionStatus.ERROR, error=message, duration_ms=duration_ms)

    async def _finish_aborted(self) -> RunResult:
        duration_ms = self._duration_ms()
        logger.info("Runner %s: stopped by abort", self.session_id[:8])
        if self._state not in TERMINAL_RUN_STATES:
            await self._transition(RunState.ABORTED)
        await self._store_usage()
        await self._set_status(
            SessionStatus.IDLE, duration_ms=duration_ms, include_usage=True,
        )
        return self._result(SessionStatus.IDLE, duration_ms=duration_ms)

    def _result(self, status: SessionStatus, **fields: Any) -> RunResult:
        return RunResult(
            session_id=self.session_id,
            status=status,
            usage=TokenUsage(self._usage.input_tokens, self._usage.output_tokens),
            iterations=self._iterations,
            title=self._session.title,
            **fields,
        )

    async def _store_usage(self) -> None:
        if not (self._usage.input_tokens or self._usage.output_tokens):
            return
        try:
            await self._store.add_tokens(
                self.session_id, self._usage.input_tokens, self._usage.output_tokens,
            )
        except Exception:
            logger.exception("Runner %s: failed to store token usage", self.session_id[:8])

    # ── State and events ──

    async def _transition(self, new_state: RunState) -> None:
        """Move to a new run state with validation. Same-state is a no-op."""
        if new_state == self._state:
            return
        validate_run_transition(self._state, new_state)
        old = self._state
        self._state = new_state
        logger.debug(
            "Runner %s: %s -> %s",
            self.session_id[:8], old.value, new_state.value,
        )

    async def _set_status(
        self,
        status: SessionStatus,
        *,
        error: str | None = None,
        duration_ms: int | None = None,
        include_usage: bool = False,
        last_prompt: str | None = None,
    ) -> None:
        self._session.status = status
        changes: dict[str, Any] = {"status": status}
        if last_prompt:
            self._session.last_prompt = last_prompt
            changes["last_prompt"] = last_prompt
        try:
            await self._store.update_session(self.session_id, **changes)
        except Exception:
            logger.exception("Runner %s: failed to update session", self.session_id[:8])

        event: dict[str, Any] = {
            "event": "session.status",
            "session_id": self.session_id,
            "status": status.value,
            "title": self._session.title,
        }
        if error is not None:
            event["error"] = error
        if duration_ms is not None:
            event["duration_ms"] = duration_ms
        if include_usage:
            event["usage"] = self._usage.to_dict()
        await fire_event(self._event_callback, event)

    async def _record(self, entry: TranscriptEntry) -> None:
        """Persist a transcript entry, then emit it."""
        await self._store.append(self.session_id, entry)
        await self._emit_message(entry.to_dict())

    async def _emit_message(self, message: dict[str, Any]) -> None:
        await fire_event(self._event_callback, {
            "event": "stream.message",
            "session_id": self.session_id,
            "message": message,
        })

    async def _emit_stream_event(self, stream_event: dict[str, Any]) -> None:
        await self._emit_message({"type": "stream_event", "event": stream_event})

    def _log_request(self, request: CompletionRequest) -> None:
        log_dir = self._config.request_log_dir
        if not log_dir:
            return
        path = Path(log_dir) / (
            f"request-{self.session_id[:8]}-{int(time.time() * 1000)}"
            f"-{self._iterations}.json"
        )
        try:
            atomic_write_json(path, request.to_payload())
        except OSError:
            logger.warning("Could not write request log %s", path, exc_info=True)
