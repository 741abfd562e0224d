from __future__ import annotations

import pytest

from localdesk.engine.config import EngineConfig, fire_event
from localdesk.engine.models import PermissionMode


def test_defaults():
    config = EngineConfig()
    assert config.permission_mode == PermissionMode.ASK
    assert config.max_iterations == 50
    assert config.loop_threshold == 3
    assert config.effective_temperature == 0.3


def test_temperature_can_be_suppressed():
    config = EngineConfig(send_temperature=False)
    assert config.effective_temperature is None


def test_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("LOCALDESK_MODEL", "llama3")
    monkeypatch.setenv("LOCALDESK_BASE_URL", "http://localhost:1234/v1")
    monkeypatch.setenv("LOCALDESK_PERMISSION_MODE", "default")
    monkeypatch.setenv("LOCALDESK_MAX_ITERATIONS", "9")
    monkeypatch.setenv("LOCALDESK_TEMPERATURE", "0.9")
    monkeypatch.setenv("LOCALDESK_SEND_TEMPERATURE", "no")
    monkeypatch.setenv("LOCALDESK_ENABLE_MEMORY", "true")
    monkeypatch.setenv("LOCALDESK_MEMORY_PATH", str(tmp_path / "mem.md"))

    config = EngineConfig.from_env()

    assert config.model == "llama3"
    assert config.base_url == "http://localhost:1234/v1"
    assert config.permission_mode == PermissionMode.DEFAULT
    assert config.max_iterations == 9
    assert config.temperature == 0.9
    assert config.send_temperature is False
    assert config.enable_memory is True
    assert config.memory_path == str(tmp_path / "mem.md")


def test_from_env_defaults(monkeypatch):
    for key in ("LOCALDESK_MODEL", "LOCALDESK_PERMISSION_MODE", "LOCALDESK_TEMPERATURE"):
        monkeypatch.delenv(key, raising=False)
    config = EngineConfig.from_env()
    assert config.model == ""
    assert config.permission_mode == PermissionMode.ASK
    assert config.temperature == 0.3


@pytest.mark.asyncio
async def test_fire_event_swallows_callback_errors():
    async def broken(event):
        raise RuntimeError("frontend crashed")

    await fire_event(broken, {"event": "session.status"})
    await fire_event(None, {"event": "session.status"})


@pytest.mark.asyncio
async def test_fire_event_delivers():
    seen = []

    async def callback(event):
        seen.append(event)

    await fire_event(callback, {"event": "x"})
    assert seen == [{"event": "x"}]
