from __future__ import annotations

import asyncio

import pytest

from localdesk.engine.permission_gate import PermissionGate


async def _wait_pending(gate: PermissionGate, tool_use_id: str) -> None:
    while tool_use_id not in gate.pending_ids:
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_resolve_approves():
    gate = PermissionGate()
    waiter = asyncio.create_task(gate.request("call_1", "read_file", {"path": "a"}))
    await _wait_pending(gate, "call_1")

    assert gate.resolve("call_1", True) is True
    assert await waiter is True
    assert gate.pending_ids == []


@pytest.mark.asyncio
async def test_resolve_denies():
    gate = PermissionGate()
    waiter = asyncio.create_task(gate.request("call_1"))
    await _wait_pending(gate, "call_1")
    gate.resolve("call_1", False)
    assert await waiter is False


@pytest.mark.asyncio
async def test_second_resolution_is_ignored():
    gate = PermissionGate()
    waiter = asyncio.create_task(gate.request("call_1"))
    await _wait_pending(gate, "call_1")

    assert gate.resolve("call_1", True) is True
    assert gate.resolve("call_1", False) is False
    assert await waiter is True


def test_unknown_id_is_noop():
    gate = PermissionGate()
    assert gate.resolve("never-requested", True) is False


@pytest.mark.asyncio
async def test_abort_auto_denies():
    abort = asyncio.Event()
    gate = PermissionGate(abort)
    waiter = asyncio.create_task(gate.request("call_1"))
    await _wait_pending(gate, "call_1")

    abort.set()
    assert await asyncio.wait_for(waiter, timeout=1) is False
    assert gate.pending_ids == []


@pytest.mark.asyncio
async def test_request_after_abort_is_denied_immediately():
    abort = asyncio.Event()
    abort.set()
    gate = PermissionGate(abort)
    assert await gate.request("call_1") is False


@pytest.mark.asyncio
async def test_cancel_all_denies_every_pending_request():
    gate = PermissionGate()
    first = asyncio.create_task(gate.request("call_1"))
    second = asyncio.create_task(gate.request("call_2"))
    await _wait_pending(gate, "call_1")
    await _wait_pending(gate, "call_2")

    gate.cancel_all()

    assert await first is False
    assert await second is False


@pytest.mark.asyncio
async def test_duplicate_pending_id_rejected():
    gate = PermissionGate()
    waiter = asyncio.create_task(gate.request("call_1"))
    await _wait_pending(gate, "call_1")
    with pytest.raises(ValueError):
        await gate.request("call_1")
    gate.resolve("call_1", True)
    await waiter
