from __future__ import annotations

import textwrap

import pytest
import yaml

from localdesk.engine.config import EngineConfig
from localdesk.engine.models import PermissionMode
from localdesk.engine.yaml_config import load_yaml_config


def _write(tmp_path, content: str):
    path = tmp_path / "localdesk.yaml"
    path.write_text(textwrap.dedent(content), encoding="utf-8")
    return path


def test_engine_and_coordinator_sections(tmp_path):
    path = _write(tmp_path, """
        engine:
          model: qwen2.5-coder
          base_url: http://localhost:11434/v1
          permission_mode: default
          max_iterations: 12
          memory_tool_names: [manage_memory, remember]
        coordinator:
          consensus_max: 4
          error_threshold: 0.25
          summary_model: judge
    """)
    config = load_yaml_config(path)

    assert config.engine.model == "qwen2.5-coder"
    assert config.engine.permission_mode == PermissionMode.DEFAULT
    assert config.engine.max_iterations == 12
    assert config.engine.memory_tool_names == frozenset({"manage_memory", "remember"})
    assert config.engine.consensus_max == 4
    assert config.engine.error_threshold == 0.25
    assert config.engine.summary_model == "judge"


def test_values_layer_over_base(tmp_path):
    path = _write(tmp_path, """
        engine:
          max_iterations: 7
    """)
    base = EngineConfig(api_key="secret", model="from-env")
    config = load_yaml_config(path, base=base)

    assert config.engine.api_key == "secret"
    assert config.engine.model == "from-env"
    assert config.engine.max_iterations == 7
    assert base.max_iterations == 50


def test_empty_file_gives_defaults(tmp_path):
    config = load_yaml_config(_write(tmp_path, ""))
    assert config.engine == EngineConfig()
    assert len(config.roles) == 8


def test_unknown_keys_are_ignored(tmp_path, caplog):
    path = _write(tmp_path, """
        engine:
          model: m
          colour: blue
        plugins: {}
    """)
    config = load_yaml_config(path)

    assert config.engine.model == "m"
    assert "colour" in caplog.text
    assert "plugins" in caplog.text


def test_roles_overlay(tmp_path):
    path = _write(tmp_path, """
        roles:
          - id: qa
            enabled: false
          - id: security
            name: Security Reviewer
            prompt: Review for security issues.
    """)
    roles = {role.id: role for role in load_yaml_config(path).roles}

    assert roles["qa"].enabled is False
    assert roles["qa"].name == "QA Engineer"
    assert roles["security"].name == "Security Reviewer"


def test_invalid_permission_mode(tmp_path):
    path = _write(tmp_path, """
        engine:
          permission_mode: sometimes
    """)
    with pytest.raises(ValueError):
        load_yaml_config(path)


def test_non_mapping_section(tmp_path):
    path = _write(tmp_path, """
        engine: [1, 2]
    """)
    with pytest.raises(ValueError, match="engine"):
        load_yaml_config(path)


def test_roles_must_be_list(tmp_path):
    path = _write(tmp_path, """
        roles:
          qa: off
    """)
    with pytest.raises(ValueError, match="roles"):
        load_yaml_config(path)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "nope.yaml")


def test_malformed_yaml(tmp_path):
    path = _write(tmp_path, "engine: [unclosed\n")
    with pytest.raises(yaml.YAMLError):
        load_yaml_config(path)
