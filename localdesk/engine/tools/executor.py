"""Local tool executor: file, shell, todo, memory and web tools.

Every tool returns a ToolResult. Failures come back as
``ToolResult.fail`` and never propagate, so a bad tool call costs the
model one error message rather than the whole run.

File tools are confined to the working directory. Paths are resolved
with symlinks followed and rejected if they land outside it.
"""
from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import aiohttp

from localdesk.engine.memory import MemoryStore
from localdesk.engine.models import ToolResult
from localdesk.engine.ports import ToolExecutor
from localdesk.engine.tools.todos import TodoList
from localdesk.engine.tools.web_cache import WebCache

logger = logging.getLogger(__name__)

NO_WORKSPACE_ERROR = "Cannot perform file operations without a workspace folder"

MAX_READ_CHARS = 100_000
MAX_COMMAND_OUTPUT_CHARS = 30_000
MAX_FETCH_CHARS = 50_000
DEFAULT_COMMAND_TIMEOUT = 120.0
DEFAULT_FETCH_TIMEOUT = 30.0

_FILE_TOOLS = frozenset({"read_file", "write_file", "list_directory", "run_command"})

Handler = Callable[[dict[str, Any]], Awaitable[ToolResult]]


def _function(name: str, description: str, properties: dict[str, Any],
              required: list[str]) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": {
                    "explanation": {
                        "type": "string",
                        "description": "One sentence on why this call is needed.",
                    },
                    **properties,
                },
                "required": required,
            },
        },
    }


TOOL_DEFINITIONS: dict[str, dict[str, Any]] = {
    "read_file": _function(
        "read_file",
        "Read a text file inside the workspace.",
        {"path": {"type": "string", "description": "Path relative to the workspace."}},
        ["path"],
    ),
    "write_file": _function(
        "write_file",
        "Create or overwrite a text file inside the workspace.",
        {
            "path": {"type": "string"},
            "content": {"type": "string"},
        },
        ["path", "content"],
    ),
    "list_directory": _function(
        "list_directory",
        "List entries of a directory inside the workspace.",
        {"path": {"type": "string", "description": "Defaults to the workspace root."}},
        [],
    ),
    "run_command": _function(
        "run_command",
        "Run a shell command in the workspace and return its output.",
        {
            "command": {"type": "string"},
            "timeout": {"type": "number", "description": "Seconds before the command is killed."},
        },
        ["command"],
    ),
    "manage_todos": _function(
        "manage_todos",
        "Track a todo list for the current task.",
        {
            "operation": {"type": "string", "enum": ["set", "update", "list", "clear"]},
            "todos": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "id": {"type": "string"},
                        "content": {"type": "string"},
                        "status": {"type": "string"},
                    },
                },
            },
            "id": {"type": "string"},
            "status": {"type": "string"},
        },
        ["operation"],
    ),
    "manage_memory": _function(
        "manage_memory",
        "Read or change long-term memory about the user.",
        {
            "operation": {"type": "string", "enum": ["create", "append", "read", "delete"]},
            "content": {"type": "string"},
            "memory_type": {"type": "string", "description": "Label for a new memory file."},
        },
        ["operation"],
    ),
    "fetch_url": _function(
        "fetch_url",
        "Fetch a web page and return its text.",
        {"url": {"type": "string"}},
        ["url"],
    ),
}


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n... (truncated, {len(text) - limit} more chars)"


class LocalToolExecutor(ToolExecutor):
    """Runs the built-in tool set against a local working directory.

    One executor per runner: the todo list it holds is per session. The
    web cache may be shared between executors of one task.
    """

    def __init__(
        self,
        cwd: str | None,
        web_cache: WebCache | None = None,
        memory_store: MemoryStore | None = None,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._cwd = Path(cwd).resolve() if cwd else None
        self._web_cache = web_cache
        self._memory_store = memory_store
        self._command_timeout = command_timeout
        self._http_session = http_session
        self._todos = TodoList()
        self._handlers: dict[str, Handler] = {
            "read_file": self._read_file,
            "write_file": self._write_file,
            "list_directory": self._list_directory,
            "run_command": self._run_command,
            "manage_todos": self._manage_todos,
            "fetch_url": self._fetch_url,
        }
        if memory_store is not None:
            self._handlers["manage_memory"] = self._manage_memory

    @property
    def todos(self) -> TodoList:
        return self._todos

    @property
    def web_cache(self) -> WebCache | None:
        return self._web_cache

    def definitions(self) -> list[dict[str, Any]]:
        return [TOOL_DEFINITIONS[name] for name in self._handlers]

    def todo_summary(self) -> str:
        return self._todos.summary()

    async def execute(self, name: str, args: dict[str, Any]) -> ToolResult:
        handler = self._handlers.get(name)
        if handler is None:
            return ToolResult.fail(f"Unknown tool: {name}")
        if name in _FILE_TOOLS and self._cwd is None:
            return ToolResult.fail(NO_WORKSPACE_ERROR)
        try:
            return await handler(args)
        except Exception as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            return ToolResult.fail(str(exc) or type(exc).__name__)

    # ── Path safety ──

    def _resolve(self, raw: str | None) -> Path:
        assert self._cwd is not None
        candidate = Path(raw or ".")
        if not candidate.is_absolute():
            candidate = self._cwd / candidate
        resolved = Path(os.path.realpath(candidate))
        if resolved != self._cwd and self._cwd not in resolved.parents:
            raise PermissionError(f"Path is outside the workspace: {raw}")
        return resolved

    # ── File tools ──

    async def _read_file(self, args: dict[str, Any]) -> ToolResult:
        path = self._resolve(args.get("path"))
        if not path.is_file():
            return ToolResult.fail(f"File not found: {args.get('path')}")
        content = await asyncio.to_thread(path.read_text, "utf-8", "replace")
        return ToolResult.ok(_truncate(content, MAX_READ_CHARS))

    async def _write_file(self, args: dict[str, Any]) -> ToolResult:
        path = self._resolve(args.get("path"))
        content = args.get("content")
        if not isinstance(content, str):
            return ToolResult.fail("'content' must be a string")

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")

        await asyncio.to_thread(_write)
        rel = path.relative_to(self._cwd)
        return ToolResult.ok(f"Wrote {len(content)} chars to {rel}")

    async def _list_directory(self, args: dict[str, Any]) -> ToolResult:
        path = self._resolve(args.get("path"))
        if not path.is_dir():
            return ToolResult.fail(f"Not a directory: {args.get('path')}")
        entries = sorted(path.iterdir(), key=lambda p: (not p.is_dir(), p.name))
        lines = [f"{p.name}/" if p.is_dir() else p.name for p in entries]
        return ToolResult.ok("\n".join(lines) if lines else "(empty)")

    async def _run_command(self, args: dict[str, Any]) -> ToolResult:
        command = args.get("command")
        if not command or not isinstance(command, str):
            return ToolResult.fail("'command' is required")
        timeout = float(args.get("timeout") or self._command_timeout)

        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=str(self._cwd),
        )
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return ToolResult.fail(f"Command timed out after {timeout:g}s")
        except asyncio.CancelledError:
            proc.kill()
            raise

        output = _truncate(stdout.decode("utf-8", errors="replace"), MAX_COMMAND_OUTPUT_CHARS)
        if proc.returncode != 0:
            return ToolResult.fail(f"Command exited with code {proc.returncode}\n{output}")
        return ToolResult.ok(output or "(no output)", exit_code=proc.returncode)

    # ── Todos ──

    async def _manage_todos(self, args: dict[str, Any]) -> ToolResult:
        operation = args.get("operation", "list")
        if operation == "set":
            todos = args.get("todos")
            if not isinstance(todos, list):
                return ToolResult.fail("'todos' must be a list")
            self._todos.replace(todos)
        elif operation == "update":
            try:
                self._todos.update(str(args.get("id", "")), str(args.get("status", "")))
            except KeyError as exc:
                return ToolResult.fail(exc.args[0])
        elif operation == "clear":
            self._todos.clear()
        elif operation != "list":
            return ToolResult.fail(f"Unknown todo operation: {operation}")
        return ToolResult.ok(self._todos.render(), todos=self._todos.to_list())

    # ── Memory ──

    async def _manage_memory(self, args: dict[str, Any]) -> ToolResult:
        store = self._memory_store
        assert store is not None
        operation = args.get("operation")
        content = args.get("content") or ""

        if operation == "read":
            return ToolResult.ok(store.load() or "Memory is empty.")
        if operation == "create":
            if not content:
                return ToolResult.fail("'content' is required")
            memory_type = args.get("memory_type") or "general"
            created = await asyncio.to_thread(store.create, content, memory_type)
            return ToolResult.ok(f"Memory created at {created}")
        if operation == "append":
            if not content:
                return ToolResult.fail("'content' is required")
            await asyncio.to_thread(store.append, content)
            return ToolResult.ok("Memory updated")
        if operation == "delete":
            removed = await asyncio.to_thread(store.clear)
            return ToolResult.ok("Memory deleted" if removed else "Memory was already empty")
        return ToolResult.fail(f"Unknown memory operation: {operation}")

    # ── Web ──

    async def _fetch_url(self, args: dict[str, Any]) -> ToolResult:
        url = args.get("url")
        if not url or not isinstance(url, str):
            return ToolResult.fail("'url' is required")
        if not url.startswith(("http://", "https://")):
            return ToolResult.fail(f"Unsupported URL scheme: {url}")

        async def _fetch() -> str:
            return await self._download(url)

        if self._web_cache is not None:
            text = await self._web_cache.get_or_fetch(url, _fetch)
        else:
            text = await _fetch()
        return ToolResult.ok(_truncate(text, MAX_FETCH_CHARS), url=url)

    async def _download(self, url: str) -> str:
        timeout = aiohttp.ClientTimeout(total=DEFAULT_FETCH_TIMEOUT)
        if self._http_session is not None:
            return await self._get_text(self._http_session, url, timeout)
        async with aiohttp.ClientSession() as session:
            return await self._get_text(session, url, timeout)

    @staticmethod
    async def _get_text(
        session: aiohttp.ClientSession,
        url: str,
        timeout: aiohttp.ClientTimeout,
    ) -> str:
        async with session.get(url, timeout=timeout) as response:
            if response.status >= 400:
                raise RuntimeError(f"HTTP {response.status} fetching {url}")
            return await response.text(errors="replace")
