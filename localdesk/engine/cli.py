"""CLI entry point for the agent execution engine.

Usage:
    localdesk run "List the files in this project"
    localdesk run --ask --cwd ./project "Fix the failing test"
    localdesk consensus --threads 3 --summary "Summarize the README"
    localdesk --config localdesk.yaml roles "Plan a login page"
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Callable

from localdesk.adapters.event_bus import EventBus
from localdesk.adapters.events import (
    EngineEvent,
    PermissionRequested,
    SessionStatusChanged,
    StreamMessage,
    TaskStatusChanged,
)

from .config import EngineConfig
from .coordinator import MultiThreadCoordinator
from .errors import EngineError
from .memory import MemoryStore
from .models import (
    PermissionMode,
    RoleConfig,
    SessionStatus,
    TaskMode,
    TaskRequest,
    TaskStatus,
)
from .providers import OpenAICompatibleClient
from .runner import AgentRunner
from .session_store import InMemorySessionStore, JsonSessionStore
from .tools import LocalToolExecutor
from .yaml_config import load_yaml_config

logger = logging.getLogger(__name__)

# (session_id, tool_use_id, approved) -> resolved
Resolver = Callable[[str, str, bool], bool]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="localdesk",
        description="Tool-using agent runner for OpenAI-compatible endpoints",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file (overrides LOCALDESK_* env vars)",
    )
    parser.add_argument(
        "--model",
        default=None,
        help="Model name (default: from config)",
    )
    parser.add_argument(
        "--cwd",
        default=None,
        help="Working directory for file tools (default: none)",
    )
    parser.add_argument(
        "--sessions-dir",
        default=None,
        help="Persist sessions as JSON files here (default: in memory)",
    )
    approval = parser.add_mutually_exclusive_group()
    approval.add_argument(
        "--ask",
        action="store_true",
        help="Ask before every tool call",
    )
    approval.add_argument(
        "--yes", "-y",
        action="store_true",
        help="Run tools without asking",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one agent session")
    run.add_argument("prompt", help="The request for the agent")

    consensus = sub.add_parser("consensus", help="Run N threads on one prompt")
    consensus.add_argument("prompt", help="The request for every thread")
    consensus.add_argument(
        "--threads", "-n",
        type=int,
        default=3,
        help="Number of threads (default: 3)",
    )
    consensus.add_argument(
        "--summary",
        action="store_true",
        help="Summarize all threads when they finish",
    )
    consensus.add_argument(
        "--title",
        default=None,
        help="Task title (default: start of the prompt)",
    )
    roles = sub.add_parser("roles", help="Run one thread per enabled role")
    roles.add_argument("prompt", help="The task every role examines")
    roles.add_argument(
        "--summary",
        action="store_true",
        help="Summarize all roles when they finish",
    )
    roles.add_argument(
        "--title",
        default=None,
        help="Task title (default: start of the prompt)",
    )
    return parser


def _load_config(args: argparse.Namespace) -> tuple[EngineConfig, list[RoleConfig]]:
    config = EngineConfig.from_env()
    roles: list[RoleConfig] = []
    if args.config:
        loaded = load_yaml_config(args.config, base=config)
        config, roles = loaded.engine, loaded.roles
    if args.model:
        config.model = args.model
    if args.ask:
        config.permission_mode = PermissionMode.ASK
    elif args.yes:
        config.permission_mode = PermissionMode.DEFAULT
    return config, roles


def main() -> None:
    args = _build_parser().parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        config, roles = _load_config(args)
    except (OSError, ValueError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    if not args.verbose:
        logging.getLogger().setLevel(config.log_level.upper())

    try:
        if args.command == "run":
            code = asyncio.run(_run_single(args, config))
        else:
            code = asyncio.run(_run_task(args, config, _task_request(args, config, roles)))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        code = 130
    except EngineError as exc:
        print(f"Error: {exc}")
        code = 1
    sys.exit(code)


def _make_store(args: argparse.Namespace):
    if args.sessions_dir:
        return JsonSessionStore(args.sessions_dir)
    return InMemorySessionStore()


async def _ask(event: PermissionRequested) -> bool:
    summary = event.explanation or ", ".join(
        f"{k}={v!r}" for k, v in event.input.items()
    )
    answer = await asyncio.to_thread(
        input, f"\nAllow {event.tool_name} ({summary})? [y/N] ",
    )
    return answer.strip().lower() in {"y", "yes"}


async def _consume(bus: EventBus, resolve: Resolver, quiet_stream: bool = False) -> None:
    """Print streamed text and status lines; answer permission prompts."""
    async for event in bus.consume():
        await _handle_event(event, resolve, quiet_stream)


async def _handle_event(event: EngineEvent, resolve: Resolver, quiet_stream: bool) -> None:
    if isinstance(event, StreamMessage):
        if quiet_stream:
            return
        delta = event.text_delta
        if delta:
            print(delta, end="", flush=True)
        elif event.message_type == "tool_use":
            print(f"\n> {event.message.get('name')}", flush=True)
        elif event.message_type == "tool_result" and event.message.get("is_error"):
            print(f"  ! {event.message.get('output', '')[:200]}", flush=True)
    elif isinstance(event, PermissionRequested):
        approved = await _ask(event)
        resolve(event.session_id, event.tool_use_id, approved)
    elif isinstance(event, SessionStatusChanged) and event.status != SessionStatus.RUNNING.value:
        line = f"[{event.session_id[:8]}] {event.status}"
        if event.duration_ms is not None:
            line += f" in {event.duration_ms / 1000:.1f}s"
        if event.usage:
            line += f" ({event.usage.get('input_tokens', 0)} in / {event.usage.get('output_tokens', 0)} out)"
        if event.error:
            line += f": {event.error}"
        print(f"\n{line}", flush=True)
    elif isinstance(event, TaskStatusChanged):
        print(
            f"[task] {event.status}: {event.completed_count} completed, "
            f"{event.error_count} error, {event.running_count} running of {event.total}",
            flush=True,
        )


async def _run_single(args: argparse.Namespace, config: EngineConfig) -> int:
    store = _make_store(args)
    bus = EventBus()
    memory_store = MemoryStore(config.memory_path) if config.enable_memory else None

    async with OpenAICompatibleClient(config.base_url, config.api_key) as client:
        session = await store.create_session(
            title=args.prompt[:50], model=config.model, working_directory=args.cwd,
        )
        runner = AgentRunner(
            session=session,
            model_client=client,
            tool_executor=LocalToolExecutor(args.cwd, memory_store=memory_store),
            session_store=store,
            config=config,
            event_callback=bus.make_callback(),
            memory_store=memory_store,
        )
        consumer = asyncio.create_task(
            _consume(bus, lambda _sid, tid, ok: runner.resolve_permission(tid, ok)),
        )
        try:
            result = await runner.run(args.prompt)
        finally:
            bus.close()
            await consumer

    return 0 if result.success else 1


def _task_request(
    args: argparse.Namespace,
    config: EngineConfig,
    roles: list[RoleConfig],
) -> TaskRequest:
    common = dict(
        title=args.title or args.prompt[:50],
        prompt=args.prompt,
        model=config.model,
        working_directory=args.cwd,
        auto_summary=args.summary,
    )
    if args.command == "roles":
        return TaskRequest(mode=TaskMode.ROLE_GROUP, roles=roles, **common)
    return TaskRequest(mode=TaskMode.CONSENSUS, quantity=args.threads, **common)


async def _run_task(
    args: argparse.Namespace,
    config: EngineConfig,
    request: TaskRequest,
) -> int:
    store = _make_store(args)
    bus = EventBus()

    async with OpenAICompatibleClient(config.base_url, config.api_key) as client:
        coordinator = MultiThreadCoordinator(
            session_store=store,
            model_client=client,
            config=config,
            event_callback=bus.make_callback(),
        )
        consumer = asyncio.create_task(
            _consume(bus, coordinator.resolve_permission, quiet_stream=True),
        )
        try:
            task = await coordinator.create_task(request)
            await coordinator.start_task(task.id)
            outcome = await coordinator.wait_for_task(task.id)
        finally:
            bus.close()
            await consumer

    for thread in coordinator.get_threads(task.id):
        text = thread.result.text if thread.result else ""
        label = thread.role or thread.thread_id[:8]
        print(f"\n=== {label} ({thread.status.value}) ===\n")
        print(text or (thread.result.error if thread.result else "") or "(no output)")
    if outcome.summary_text:
        print("\n=== Summary ===\n")
        print(outcome.summary_text)

    print(
        f"\nTask {outcome.status.value}: {outcome.completed_count} completed, "
        f"{outcome.error_count} error, {outcome.idle_count} idle "
        f"({outcome.usage.input_tokens} in / {outcome.usage.output_tokens} out tokens)"
    )
    return 0 if outcome.status == TaskStatus.COMPLETED else 1


if __name__ == "__main__":
    main()
