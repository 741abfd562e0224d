from __future__ import annotations

import pytest

from localdesk.engine.models import (
    ResultEntry,
    SessionStatus,
    TextEntry,
    TokenUsage,
    ToolResultEntry,
    ToolUseEntry,
    UserPromptEntry,
)
from localdesk.engine.session_store import InMemorySessionStore, JsonSessionStore


@pytest.fixture(params=["memory", "json"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return InMemorySessionStore()
    return JsonSessionStore(tmp_path / "sessions")


@pytest.mark.asyncio
async def test_create_and_get(any_store):
    session = await any_store.create_session(
        title="Chat", model="m1", working_directory="/tmp/work",
    )
    loaded = await any_store.get_session(session.id)

    assert loaded is not None
    assert loaded.title == "Chat"
    assert loaded.model == "m1"
    assert loaded.working_directory == "/tmp/work"
    assert loaded.status == SessionStatus.IDLE


@pytest.mark.asyncio
async def test_transcript_keeps_order(any_store):
    session = await any_store.create_session(title="t", model="m")
    entries = [
        UserPromptEntry("hi"),
        TextEntry("hello"),
        ToolUseEntry(id="c1", name="read_file", input={"path": "a"}),
        ToolResultEntry(tool_use_id="c1", output="data", is_error=True),
        ResultEntry(summary="hello", usage=TokenUsage(3, 4), num_turns=2),
    ]
    for entry in entries:
        await any_store.append(session.id, entry)

    history = await any_store.read_history(session.id)

    assert history.session_id == session.id
    assert [e.type for e in history.messages] == [
        "user_prompt", "text", "tool_use", "tool_result", "result",
    ]
    assert history.messages[2].input == {"path": "a"}
    assert history.messages[3].is_error
    assert history.messages[4].usage.output_tokens == 4


@pytest.mark.asyncio
async def test_update_session_fields(any_store):
    session = await any_store.create_session(title="t", model="m")
    updated = await any_store.update_session(
        session.id, status="running", last_prompt="go",
    )

    assert updated.status == SessionStatus.RUNNING
    loaded = await any_store.get_session(session.id)
    assert loaded.status == SessionStatus.RUNNING
    assert loaded.last_prompt == "go"


@pytest.mark.asyncio
async def test_update_rejects_unknown_field(any_store):
    session = await any_store.create_session(title="t", model="m")
    with pytest.raises(ValueError):
        await any_store.update_session(session.id, input_tokens=5)


@pytest.mark.asyncio
async def test_update_unknown_session_returns_none(any_store):
    assert await any_store.update_session("missing", title="x") is None


@pytest.mark.asyncio
async def test_add_tokens_accumulates(any_store):
    session = await any_store.create_session(title="t", model="m")
    await any_store.add_tokens(session.id, 10, 5)
    await any_store.add_tokens(session.id, 1, 2)

    loaded = await any_store.get_session(session.id)
    assert (loaded.input_tokens, loaded.output_tokens) == (11, 7)


@pytest.mark.asyncio
async def test_delete_session(any_store):
    session = await any_store.create_session(title="t", model="m")
    await any_store.append(session.id, UserPromptEntry("hi"))

    assert await any_store.delete_session(session.id) is True
    assert await any_store.get_session(session.id) is None
    assert (await any_store.read_history(session.id)).messages == []
    assert await any_store.delete_session(session.id) is False


@pytest.mark.asyncio
async def test_list_sessions_newest_first(any_store):
    first = await any_store.create_session(title="first", model="m")
    second = await any_store.create_session(title="second", model="m")

    sessions = await any_store.list_sessions()
    assert {s.id for s in sessions} == {first.id, second.id}
    stamps = [s.updated_at for s in sessions]
    assert stamps == sorted(stamps, reverse=True)


@pytest.mark.asyncio
async def test_json_store_skips_corrupt_lines(tmp_path):
    store = JsonSessionStore(tmp_path)
    session = await store.create_session(title="t", model="m")
    await store.append(session.id, UserPromptEntry("hi"))
    with open(tmp_path / f"{session.id}.jsonl", "a", encoding="utf-8") as f:
        f.write("{not json\n")
        f.write('{"type": "unknown_kind"}\n')
    await store.append(session.id, TextEntry("hello"))

    history = await store.read_history(session.id)
    assert [e.type for e in history.messages] == ["user_prompt", "text"]


@pytest.mark.asyncio
async def test_json_store_survives_reopen(tmp_path):
    store = JsonSessionStore(tmp_path)
    session = await store.create_session(title="t", model="m")
    await store.append(session.id, UserPromptEntry("hi"))

    reopened = JsonSessionStore(tmp_path)
    assert (await reopened.get_session(session.id)).title == "t"
    assert len((await reopened.read_history(session.id)).messages) == 1


@pytest.mark.asyncio
async def test_json_store_ignores_unreadable_metadata(tmp_path):
    store = JsonSessionStore(tmp_path)
    (tmp_path / "broken.json").write_text("{", encoding="utf-8")
    assert await store.get_session("broken") is None
    assert await store.list_sessions() == []
