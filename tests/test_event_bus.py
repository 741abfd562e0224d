from __future__ import annotations

import asyncio

import pytest

from localdesk.adapters.event_bus import EventBus
from localdesk.adapters.events import (
    EngineEvent,
    SessionStatusChanged,
    StreamMessage,
    TaskStatusChanged,
    dict_to_event,
    event_to_dict,
)


def test_dict_to_event_filters_unknown_keys():
    event = dict_to_event({
        "event": "session.status",
        "session_id": "s1",
        "status": "error",
        "error": "boom",
        "extra": 1,
    })
    assert isinstance(event, SessionStatusChanged)
    assert event.error == "boom"


def test_unknown_event_type_falls_back_to_base():
    event = dict_to_event({"event": "custom.thing", "x": 1})
    assert type(event) is EngineEvent
    assert event.event_type == "custom.thing"


def test_event_to_dict_uses_event_key():
    data = event_to_dict(TaskStatusChanged(task_id="t1", status="running", total=3))
    assert data["event"] == "task.status"
    assert "event_type" not in data
    assert data["total"] == 3


def test_stream_message_text_delta():
    delta = StreamMessage(message={
        "type": "stream_event",
        "event": {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}},
    })
    assert delta.text_delta == "Hi"
    assert StreamMessage(message={"type": "assistant"}).text_delta is None


@pytest.mark.asyncio
async def test_bus_delivers_in_order_then_closes():
    bus = EventBus()
    callback = bus.make_callback()
    await callback({"event": "session.status", "status": "running"})
    await callback({"event": "session.status", "status": "idle"})
    bus.close()

    statuses = [e.status async for e in bus.consume()]
    assert statuses == ["running", "idle"]


@pytest.mark.asyncio
async def test_events_after_close_are_dropped():
    bus = EventBus()
    bus.close()
    await bus.make_callback()({"event": "task.deleted", "task_id": "t"})
    bus.emit(EngineEvent(event_type="x"))
    assert bus.qsize() == 1


@pytest.mark.asyncio
async def test_callback_never_blocks_on_consumer():
    bus = EventBus()
    callback = bus.make_callback()
    await asyncio.wait_for(
        asyncio.gather(*(callback({"event": "stream.message"}) for _ in range(1000))),
        timeout=1,
    )
    assert bus.qsize() == 1000


@pytest.mark.asyncio
async def test_reset_reopens():
    bus = EventBus()
    await bus.make_callback()({"event": "task.deleted"})
    bus.close()
    bus.reset()

    assert not bus.closed
    assert bus.qsize() == 0
