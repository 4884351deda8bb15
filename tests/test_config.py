"""Tests for YAML + environment configuration loading."""
from __future__ import annotations

import tempfile
from pathlib import Path

import pytest
import yaml

from agent_bridge.app import resolve_config
from agent_bridge.config import BridgeConfig, discover_config, load_bridge_config


@pytest.fixture
def clean_env(monkeypatch):
    import os

    for key in list(os.environ):
        if key.startswith("AGENT_BRIDGE_"):
            monkeypatch.delenv(key)
    return monkeypatch


def _write(tmp: Path, data, name: str = "bridge.yaml") -> Path:
    path = tmp / name
    path.write_text(yaml.safe_dump(data) if not isinstance(data, str) else data)
    return path


def test_defaults():
    config = BridgeConfig()
    assert config.host == "127.0.0.1"
    assert config.reconnect_delay == 2.0
    assert config.default_permission_mode == "default"
    assert config.gemini_approval_mode == "yolo"
    assert config.rate_limit_max_retries == 10
    assert config.safe_commands == ()


def test_load_sections(clean_env):
    with tempfile.TemporaryDirectory() as tmp:
        path = _write(Path(tmp), {
            "server": {"host": "0.0.0.0", "port": "8123", "auth_token": "abc"},
            "transport": {"reconnect_delay": 0.5},
            "agents": {
                "paths": {"claude": "/opt/claude"},
                "permission_mode": "acceptEdits",
                "rate_limit_max_retries": 3,
            },
            "approval": {"safe_commands": ["npm test", "cargo check"]},
            "logging": {"level": "debug"},
        })
        config = load_bridge_config(path)

    assert config.host == "0.0.0.0"
    assert config.port == 8123
    assert config.auth_token == "abc"
    assert config.reconnect_delay == 0.5
    assert config.agent_paths == {"claude": "/opt/claude"}
    assert config.default_permission_mode == "acceptEdits"
    assert config.rate_limit_max_retries == 3
    assert config.safe_commands == ("npm test", "cargo check")
    assert config.log_level == "DEBUG"


def test_env_overrides_yaml(clean_env):
    clean_env.setenv("AGENT_BRIDGE_PORT", "9999")
    clean_env.setenv("AGENT_BRIDGE_TOKEN", "from-env")
    clean_env.setenv("AGENT_BRIDGE_SAFE_COMMANDS", "make test, ,pytest")
    with tempfile.TemporaryDirectory() as tmp:
        path = _write(Path(tmp), {
            "server": {"port": 7000},
            "approval": {"safe_commands": ["npm test"]},
        })
        config = load_bridge_config(path)
        raw = load_bridge_config(path, apply_env=False)

    assert config.port == 9999
    assert config.auth_token == "from-env"
    assert config.safe_commands == ("npm test", "make test", "pytest")
    assert raw.port == 7000
    assert raw.auth_token is None


def test_empty_file_gives_defaults(clean_env):
    with tempfile.TemporaryDirectory() as tmp:
        config = load_bridge_config(_write(Path(tmp), ""))
    assert config == BridgeConfig()


def test_non_mapping_top_level_is_rejected(clean_env):
    with tempfile.TemporaryDirectory() as tmp:
        path = _write(Path(tmp), ["a", "b"])
        with pytest.raises(ValueError, match="top level must be a mapping"):
            load_bridge_config(path)


def test_missing_file_raises(clean_env):
    with pytest.raises(FileNotFoundError):
        load_bridge_config("/nonexistent/agent-bridge.yaml")


def test_unknown_keys_are_ignored(clean_env):
    with tempfile.TemporaryDirectory() as tmp:
        config = load_bridge_config(_write(Path(tmp), {
            "server": {"port": 1234, "colour": "blue"},
            "plugins": {"x": 1},
        }))
    assert config.port == 1234


def test_discover_and_resolve(clean_env):
    with tempfile.TemporaryDirectory() as tmp:
        root = Path(tmp)
        assert discover_config(root) is None
        _write(root, {"server": {"port": 4321}}, name=".agent-bridge.yaml")
        assert discover_config(root) == root / ".agent-bridge.yaml"

        clean_env.chdir(root)
        assert resolve_config(None).port == 4321
        explicit = _write(root, {"server": {"port": 5555}}, name="other.yaml")
        assert resolve_config(str(explicit)).port == 5555
