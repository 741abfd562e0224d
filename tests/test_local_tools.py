from __future__ import annotations

import os
import sys

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from localdesk.engine.memory import MemoryStore
from localdesk.engine.tools import LocalToolExecutor, WebCache
from localdesk.engine.tools.executor import NO_WORKSPACE_ERROR, TOOL_DEFINITIONS


def _names(executor: LocalToolExecutor) -> list[str]:
    return [d["function"]["name"] for d in executor.definitions()]


def test_definitions_follow_capabilities(tmp_path):
    plain = LocalToolExecutor(str(tmp_path))
    with_memory = LocalToolExecutor(str(tmp_path), memory_store=MemoryStore(tmp_path / "m.md"))

    assert "manage_memory" not in _names(plain)
    assert "manage_memory" in _names(with_memory)
    for definition in TOOL_DEFINITIONS.values():
        params = definition["function"]["parameters"]
        assert "explanation" in params["properties"]


@pytest.mark.asyncio
async def test_unknown_tool(tmp_path):
    result = await LocalToolExecutor(str(tmp_path)).execute("teleport", {})
    assert not result.success
    assert result.error == "Unknown tool: teleport"


@pytest.mark.asyncio
async def test_file_tools_need_workspace():
    executor = LocalToolExecutor(None)
    for name in ("read_file", "write_file", "list_directory", "run_command"):
        result = await executor.execute(name, {"path": "a", "command": "ls"})
        assert result.error == NO_WORKSPACE_ERROR
    todo = await executor.execute("manage_todos", {"operation": "list"})
    assert todo.success


@pytest.mark.asyncio
async def test_write_then_read(tmp_path):
    executor = LocalToolExecutor(str(tmp_path))
    written = await executor.execute(
        "write_file", {"path": "notes/today.txt", "content": "buy milk"},
    )
    assert written.success
    assert written.output == f"Wrote 8 chars to {os.path.join('notes', 'today.txt')}"

    read = await executor.execute("read_file", {"path": "notes/today.txt"})
    assert read.output == "buy milk"


@pytest.mark.asyncio
async def test_read_missing_file(tmp_path):
    result = await LocalToolExecutor(str(tmp_path)).execute("read_file", {"path": "nope.txt"})
    assert not result.success
    assert "File not found" in result.error


@pytest.mark.asyncio
async def test_write_requires_string_content(tmp_path):
    result = await LocalToolExecutor(str(tmp_path)).execute(
        "write_file", {"path": "a.txt", "content": 5},
    )
    assert not result.success


@pytest.mark.asyncio
async def test_list_directory_dirs_first(tmp_path):
    (tmp_path / "b.txt").write_text("b")
    (tmp_path / "a_dir").mkdir()
    executor = LocalToolExecutor(str(tmp_path))

    listing = await executor.execute("list_directory", {})
    assert listing.output.splitlines() == ["a_dir/", "b.txt"]

    empty = await executor.execute("list_directory", {"path": "a_dir"})
    assert empty.output == "(empty)"


@pytest.mark.asyncio
async def test_paths_outside_workspace_rejected(tmp_path):
    workspace = tmp_path / "ws"
    workspace.mkdir()
    (tmp_path / "secret.txt").write_text("s")
    executor = LocalToolExecutor(str(workspace))

    escaped = await executor.execute("read_file", {"path": "../secret.txt"})
    assert not escaped.success
    assert "outside the workspace" in escaped.error

    absolute = await executor.execute("read_file", {"path": str(tmp_path / "secret.txt")})
    assert not absolute.success


@pytest.mark.skipif(sys.platform == "win32", reason="symlinks need privileges")
@pytest.mark.asyncio
async def test_symlink_escape_rejected(tmp_path):
    workspace = tmp_path / "ws"
    workspace.mkdir()
    (tmp_path / "secret.txt").write_text("s")
    (workspace / "link.txt").symlink_to(tmp_path / "secret.txt")

    result = await LocalToolExecutor(str(workspace)).execute("read_file", {"path": "link.txt"})
    assert not result.success


@pytest.mark.skipif(sys.platform == "win32", reason="posix shell")
@pytest.mark.asyncio
async def test_run_command(tmp_path):
    executor = LocalToolExecutor(str(tmp_path))

    ok = await executor.execute("run_command", {"command": "echo hello"})
    assert ok.success
    assert ok.output.strip() == "hello"
    assert ok.data["exit_code"] == 0

    failed = await executor.execute("run_command", {"command": "echo oops; exit 3"})
    assert not failed.success
    assert failed.error.startswith("Command exited with code 3")
    assert "oops" in failed.error


@pytest.mark.skipif(sys.platform == "win32", reason="posix shell")
@pytest.mark.asyncio
async def test_run_command_runs_in_workspace(tmp_path):
    (tmp_path / "marker.txt").write_text("x")
    result = await LocalToolExecutor(str(tmp_path)).execute("run_command", {"command": "ls"})
    assert "marker.txt" in result.output


@pytest.mark.skipif(sys.platform == "win32", reason="posix shell")
@pytest.mark.asyncio
async def test_run_command_timeout(tmp_path):
    executor = LocalToolExecutor(str(tmp_path))
    result = await executor.execute("run_command", {"command": "exec sleep 5", "timeout": 0.2})
    assert not result.success
    assert result.error == "Command timed out after 0.2s"


@pytest.mark.asyncio
async def test_manage_todos(tmp_path):
    executor = LocalToolExecutor(str(tmp_path))
    result = await executor.execute("manage_todos", {
        "operation": "set",
        "todos": [{"content": "Read code"}, {"content": "Write tests"}],
    })
    assert result.success
    assert result.data["todos"][0] == {"id": "1", "content": "Read code", "status": "pending"}

    await executor.execute("manage_todos", {"operation": "update", "id": "1", "status": "completed"})
    assert executor.todo_summary() == "\nCURRENT TODOS:\n[ ] 2. Write tests\n"

    missing = await executor.execute("manage_todos", {"operation": "update", "id": "9", "status": "completed"})
    assert missing.error == "Todo 9 not found"

    bad = await executor.execute("manage_todos", {"operation": "set", "todos": [{"status": "pending"}]})
    assert not bad.success

    cleared = await executor.execute("manage_todos", {"operation": "clear"})
    assert cleared.output == "No todos."


@pytest.mark.asyncio
async def test_manage_memory(tmp_path):
    store = MemoryStore(tmp_path / "memory.md")
    executor = LocalToolExecutor(str(tmp_path), memory_store=store)

    empty = await executor.execute("manage_memory", {"operation": "read"})
    assert empty.output == "Memory is empty."

    created = await executor.execute(
        "manage_memory", {"operation": "create", "content": "Prefers metric units."},
    )
    assert created.success
    assert store.load().startswith("# Memory (general)")

    await executor.execute("manage_memory", {"operation": "append", "content": "Lives in Oslo"})
    read = await executor.execute("manage_memory", {"operation": "read"})
    assert "Prefers metric units." in read.output
    assert read.output.endswith("- Lives in Oslo\n")

    deleted = await executor.execute("manage_memory", {"operation": "delete"})
    assert deleted.output == "Memory deleted"
    again = await executor.execute("manage_memory", {"operation": "delete"})
    assert again.output == "Memory was already empty"

    missing = await executor.execute("manage_memory", {"operation": "append"})
    assert not missing.success


@pytest.mark.asyncio
async def test_fetch_url_rejects_other_schemes(tmp_path):
    result = await LocalToolExecutor(str(tmp_path)).execute("fetch_url", {"url": "file:///etc/passwd"})
    assert not result.success
    assert "Unsupported URL scheme" in result.error


@pytest.mark.asyncio
async def test_fetch_url_uses_shared_cache(tmp_path):
    hits = []

    async def page(request):
        hits.append(request.path)
        return web.Response(text="hello from server")

    async def missing(request):
        return web.Response(status=404, text="gone")

    app = web.Application()
    app.router.add_get("/page", page)
    app.router.add_get("/missing", missing)

    cache = WebCache()
    first = LocalToolExecutor(str(tmp_path), web_cache=cache)
    second = LocalToolExecutor(str(tmp_path), web_cache=cache)

    async with TestServer(app) as server:
        url = str(server.make_url("/page"))
        one = await first.execute("fetch_url", {"url": url})
        two = await second.execute("fetch_url", {"url": url})
        gone = await first.execute("fetch_url", {"url": str(server.make_url("/missing"))})

    assert one.output == "hello from server"
    assert two.output == "hello from server"
    assert hits == ["/page"]
    assert (cache.hits, cache.misses) == (1, 2)
    assert not gone.success
    assert "HTTP 404" in gone.error
