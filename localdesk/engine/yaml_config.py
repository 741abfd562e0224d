"""YAML configuration loader.

Loads a single YAML file layered over EngineConfig defaults (or over a
config already read from the environment).

Example YAML:
    engine:
      model: qwen2.5-coder
      base_url: http://localhost:11434/v1
      permission_mode: ask
      max_iterations: 50
      loop_max_episodes: 5

    coordinator:
      consensus_min: 2
      consensus_max: 10
      error_threshold: 0.5
      summary_model: qwen2.5-coder

    roles:
      - id: qa
        enabled: false
      - id: security
        name: Security Reviewer
        prompt: "Review the plan for security issues."
"""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig
from .models import PermissionMode, RoleConfig
from .roles import merge_roles

logger = logging.getLogger(__name__)

_KNOWN_SECTIONS = {"engine", "coordinator", "roles"}
_COORDINATOR_KEYS = {"consensus_min", "consensus_max", "error_threshold", "summary_model"}
_FROZENSET_FIELDS = {"memory_tool_names", "todo_tool_names"}


@dataclass
class LocaldeskConfig:
    """Complete parsed YAML configuration."""
    engine: EngineConfig
    roles: list[RoleConfig] = field(default_factory=list)


def _coerce(name: str, value: Any) -> Any:
    if name == "permission_mode":
        return PermissionMode(value)
    if name in _FROZENSET_FIELDS:
        return frozenset(value or ())
    return value


def _engine_changes(section: dict[str, Any], allowed: set[str], label: str) -> dict[str, Any]:
    changes: dict[str, Any] = {}
    for key, value in section.items():
        if key not in allowed:
            logger.warning("Ignoring unknown %s key: %s", label, key)
            continue
        changes[key] = _coerce(key, value)
    return changes


def load_yaml_config(
    path: str | Path,
    base: EngineConfig | None = None,
) -> LocaldeskConfig:
    """Load and parse a YAML config file.

    Values in the file override ``base`` (defaults when omitted). Unknown
    sections and keys are logged and ignored. Invalid values (a bad
    permission mode, a non-mapping section) raise ValueError.
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    for section in sorted(set(raw) - _KNOWN_SECTIONS):
        logger.warning("Ignoring unknown config section: %s", section)

    engine_fields = {f.name for f in dataclasses.fields(EngineConfig)}
    engine_raw = raw.get("engine") or {}
    coordinator_raw = raw.get("coordinator") or {}
    for label, section in (("engine", engine_raw), ("coordinator", coordinator_raw)):
        if not isinstance(section, dict):
            raise ValueError(f"{path}: '{label}' must be a mapping")

    changes = _engine_changes(engine_raw, engine_fields, "engine")
    changes.update(_engine_changes(coordinator_raw, _COORDINATOR_KEYS, "coordinator"))
    engine = dataclasses.replace(base or EngineConfig(), **changes)

    roles_raw = raw.get("roles") or []
    if not isinstance(roles_raw, list):
        raise ValueError(f"{path}: 'roles' must be a list")
    roles = merge_roles(roles_raw)

    logger.info(
        "Loaded config %s: %d engine overrides, %d roles",
        path.name, len(changes), len(roles),
    )
    return LocaldeskConfig(engine=engine, roles=roles)
