from __future__ import annotations

import asyncio

import pytest

from localdesk.engine.memory import MemoryStore
from localdesk.engine.tools import TodoList, WebCache


def test_todo_render_and_summary():
    todos = TodoList()
    assert todos.render() == "No todos."
    assert todos.summary() == ""

    todos.replace([
        {"id": "a", "content": "Plan", "status": "completed"},
        {"content": "Build", "status": "in_progress"},
    ])
    assert todos.render() == "[x] a. Plan\n[~] 2. Build"
    assert todos.summary() == "\nCURRENT TODOS:\n[~] 2. Build\n"


def test_todo_rejects_bad_status():
    todos = TodoList()
    with pytest.raises(ValueError):
        todos.replace([{"content": "x", "status": "someday"}])
    todos.replace([{"content": "x"}])
    with pytest.raises(ValueError):
        todos.update("1", "someday")
    with pytest.raises(KeyError):
        todos.update("2", "completed")


def test_cache_put_get_and_expiry():
    cache = WebCache(ttl_seconds=-1)
    cache.put("u", "v")
    assert cache.get("u") is None
    assert len(cache) == 0


def test_cache_evicts_when_full():
    cache = WebCache(max_entries=2)
    cache.put("a", "1")
    cache.put("b", "2")
    cache.put("c", "3")
    assert len(cache) == 2
    assert cache.get("a") is None
    assert cache.get("c") == "3"


@pytest.mark.asyncio
async def test_concurrent_misses_fetch_once():
    cache = WebCache()
    calls = 0

    async def fetch():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        return "page"

    values = await asyncio.gather(*(cache.get_or_fetch("u", fetch) for _ in range(5)))

    assert values == ["page"] * 5
    assert calls == 1
    assert (cache.hits, cache.misses) == (4, 1)


@pytest.mark.asyncio
async def test_failed_fetch_is_not_cached():
    cache = WebCache()

    async def broken():
        raise RuntimeError("offline")

    with pytest.raises(RuntimeError):
        await cache.get_or_fetch("u", broken)
    assert cache.get("u") is None


def test_memory_store_lifecycle(tmp_path):
    store = MemoryStore(tmp_path / "nested" / "memory.md")
    assert store.load() is None

    store.append("likes tea")
    store.append("works nights")
    assert store.load() == "- likes tea\n- works nights\n"

    store.create("fresh start", memory_type="work")
    content = store.load()
    assert content.startswith("# Memory (work)\n\nCreated: ")
    assert content.endswith("---\n\nfresh start\n")

    assert store.clear() is True
    assert store.clear() is False
    assert store.load() is None
