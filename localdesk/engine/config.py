"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via LOCALDESK_* env vars,
or through a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .models import PermissionMode

logger = logging.getLogger(__name__)


# Optional async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set, logging and swallowing errors."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        # Never let callback errors break a run
        logger.debug("Event callback failed for %s", event.get("event"), exc_info=True)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _default_memory_path() -> str:
    return str(Path.home() / ".localdesk" / "memory.md")


@dataclass
class EngineConfig:
    """Agent execution engine configuration."""

    # Model endpoint (OpenAI-compatible)
    api_key: str = ""
    base_url: str = ""
    model: str = ""
    temperature: float | None = 0.3
    # Some models reject the temperature parameter entirely.
    send_temperature: bool = True
    # Seconds to wait for a single streamed chunk before failing the run.
    # Set to 0 (or a negative value) to disable.
    stream_read_timeout_seconds: float = 300.0

    # Tool approval: "ask" prompts per tool call, "default" auto-executes.
    permission_mode: PermissionMode = PermissionMode.ASK

    # Loop limits
    max_iterations: int = 50
    loop_window: int = 5
    loop_threshold: int = 3
    loop_max_episodes: int = 5

    # Long-term memory
    enable_memory: bool = False
    memory_path: str = field(default_factory=_default_memory_path)
    memory_tool_names: frozenset[str] = frozenset({"manage_memory"})
    todo_tool_names: frozenset[str] = frozenset({"manage_todos"})

    # Multi-thread tasks
    consensus_min: int = 2
    consensus_max: int = 10
    # Fraction of errored threads above which a task is marked error.
    error_threshold: float = 0.5
    summary_model: str | None = None

    # Logging
    log_level: str = "INFO"
    # When set, every model request payload is dumped here as JSON.
    request_log_dir: str | None = None

    @property
    def effective_temperature(self) -> float | None:
        """Temperature to send, or None when it must be omitted."""
        if not self.send_temperature:
            return None
        return self.temperature

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from LOCALDESK_* environment variables."""
        env_vars = sorted(k for k in os.environ if k.startswith("LOCALDESK_"))
        if env_vars:
            # Names only; values may hold secrets
            logger.info(
                "EngineConfig.from_env: LOCALDESK_* overrides: %s",
                ", ".join(env_vars),
            )
        else:
            logger.debug("EngineConfig.from_env: no LOCALDESK_* env vars set, using defaults")

        temperature_raw = os.getenv("LOCALDESK_TEMPERATURE")
        config = cls(
            api_key=os.getenv("LOCALDESK_API_KEY", ""),
            base_url=os.getenv("LOCALDESK_BASE_URL", ""),
            model=os.getenv("LOCALDESK_MODEL", ""),
            temperature=(
                float(temperature_raw) if temperature_raw else cls.temperature
            ),
            send_temperature=_env_bool(
                "LOCALDESK_SEND_TEMPERATURE", cls.send_temperature
            ),
            stream_read_timeout_seconds=float(os.getenv(
                "LOCALDESK_STREAM_READ_TIMEOUT",
                str(cls.stream_read_timeout_seconds),
            )),
            permission_mode=PermissionMode(os.getenv(
                "LOCALDESK_PERMISSION_MODE", cls.permission_mode.value
            )),
            max_iterations=int(os.getenv(
                "LOCALDESK_MAX_ITERATIONS", str(cls.max_iterations)
            )),
            loop_window=int(os.getenv(
                "LOCALDESK_LOOP_WINDOW", str(cls.loop_window)
            )),
            loop_threshold=int(os.getenv(
                "LOCALDESK_LOOP_THRESHOLD", str(cls.loop_threshold)
            )),
            loop_max_episodes=int(os.getenv(
                "LOCALDESK_LOOP_MAX_EPISODES", str(cls.loop_max_episodes)
            )),
            enable_memory=_env_bool("LOCALDESK_ENABLE_MEMORY", cls.enable_memory),
            memory_path=os.getenv("LOCALDESK_MEMORY_PATH") or _default_memory_path(),
            log_level=os.getenv("LOCALDESK_LOG_LEVEL", cls.log_level),
            request_log_dir=os.getenv("LOCALDESK_REQUEST_LOG_DIR") or None,
        )
        logger.info(
            "EngineConfig.from_env: model=%s base_url=%s permission_mode=%s log_level=%s",
            config.model or "<unset>",
            config.base_url or "<unset>",
            config.permission_mode.value,
            config.log_level,
        )
        return config
