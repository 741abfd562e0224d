from __future__ import annotations

import pytest

from localdesk.engine.config import EngineConfig
from localdesk.engine.models import PermissionMode
from localdesk.engine.session_store import InMemorySessionStore

from fakes import EventRecorder


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig(
        api_key="test-key",
        base_url="http://localhost:9/v1",
        model="test-model",
        permission_mode=PermissionMode.DEFAULT,
        stream_read_timeout_seconds=5.0,
    )
