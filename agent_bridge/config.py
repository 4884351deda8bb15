"""Bridge configuration.

All settings have defaults. Override via a YAML file (``load_bridge_config``)
and then AGENT_BRIDGE_* environment variables, which win.

Example YAML:
    server:
      host: 127.0.0.1
      port: 7420
      auth_token: s3cret

    transport:
      reconnect_delay: 2.0
      request_timeout: 60

    agents:
      paths:
        claude: /opt/homebrew/bin/claude
        codex: codex
      permission_mode: default
      codex_approval_policy: untrusted
      gemini_approval_mode: yolo
      cancel_timeout: 3.0
      rate_limit_max_retries: 10

    approval:
      safe_commands:
        - npm test
        - cargo check
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "AGENT_BRIDGE_"
CONFIG_FILENAMES = (".agent-bridge.yaml", "agent-bridge.yaml")


@dataclass
class BridgeConfig:
    """Host server, transport and adapter settings."""

    # Host server
    host: str = "127.0.0.1"
    port: int = 7420
    auth_token: str | None = None

    # Network transport
    reconnect_delay: float = 2.0
    request_timeout: float = 60.0

    # Adapters
    cancel_timeout: float = 3.0
    process_stop_timeout: float = 5.0
    agent_paths: dict[str, str] = field(default_factory=dict)
    default_permission_mode: str = "default"
    codex_approval_policy: str = "untrusted"
    codex_sandbox: str = "workspace-write"
    gemini_approval_mode: str = "yolo"
    rate_limit_max_retries: int = 10
    opencode_health_attempts: int = 50
    opencode_health_interval: float = 0.2

    # Approval policy: extra entries on top of the built-in read-only set
    safe_commands: tuple[str, ...] = ()

    # Logging
    log_level: str = "INFO"
    log_dir: str = str(Path.home() / ".agent-bridge" / "logs")

    @classmethod
    def from_env(cls, base: BridgeConfig | None = None) -> BridgeConfig:
        """Apply AGENT_BRIDGE_* environment overrides on top of *base*."""
        base = base or cls()
        bridge_vars = {
            k: v for k, v in os.environ.items() if k.startswith(ENV_PREFIX)
        }
        if bridge_vars:
            logger.info(
                "BridgeConfig.from_env: overrides: %s",
                ", ".join(
                    f"{k}={'***' if k.endswith('TOKEN') else v}"
                    for k, v in sorted(bridge_vars.items())
                ),
            )
        else:
            logger.debug("BridgeConfig.from_env: no %s* vars set", ENV_PREFIX)

        def env(name: str, default: Any) -> Any:
            return os.getenv(ENV_PREFIX + name, default)

        safe_extra = env("SAFE_COMMANDS", "")
        return replace(
            base,
            host=env("HOST", base.host),
            port=int(env("PORT", base.port)),
            auth_token=env("TOKEN", base.auth_token) or None,
            reconnect_delay=float(env("RECONNECT_DELAY", base.reconnect_delay)),
            request_timeout=float(env("REQUEST_TIMEOUT", base.request_timeout)),
            cancel_timeout=float(env("CANCEL_TIMEOUT", base.cancel_timeout)),
            default_permission_mode=env(
                "PERMISSION_MODE", base.default_permission_mode
            ),
            rate_limit_max_retries=int(env(
                "RATE_LIMIT_MAX_RETRIES", base.rate_limit_max_retries
            )),
            safe_commands=base.safe_commands + tuple(
                s.strip() for s in safe_extra.split(",") if s.strip()
            ),
            log_level=env("LOG_LEVEL", base.log_level).upper(),
            log_dir=env("LOG_DIR", base.log_dir),
        )


_SECTION_KEYS: dict[str, dict[str, str]] = {
    "server": {"host": "host", "port": "port", "auth_token": "auth_token"},
    "transport": {
        "reconnect_delay": "reconnect_delay",
        "request_timeout": "request_timeout",
    },
    "agents": {
        "paths": "agent_paths",
        "permission_mode": "default_permission_mode",
        "codex_approval_policy": "codex_approval_policy",
        "codex_sandbox": "codex_sandbox",
        "gemini_approval_mode": "gemini_approval_mode",
        "cancel_timeout": "cancel_timeout",
        "process_stop_timeout": "process_stop_timeout",
        "rate_limit_max_retries": "rate_limit_max_retries",
        "opencode_health_attempts": "opencode_health_attempts",
        "opencode_health_interval": "opencode_health_interval",
    },
    "approval": {"safe_commands": "safe_commands"},
    "logging": {"level": "log_level", "dir": "log_dir"},
}


def _coerce(name: str, value: Any) -> Any:
    types = {f.name: f.type for f in fields(BridgeConfig)}
    declared = str(types.get(name, ""))
    if name == "safe_commands":
        return tuple(str(v) for v in value or ())
    if name == "agent_paths":
        return {str(k): str(v) for k, v in (value or {}).items()}
    if declared == "int":
        return int(value)
    if declared == "float":
        return float(value)
    return value


def load_bridge_config(path: str | Path, *, apply_env: bool = True) -> BridgeConfig:
    """Load a YAML config file, then apply environment overrides."""
    path = Path(path)
    logger.info("load_bridge_config: loading %s (exists=%s)", path, path.exists())
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_bridge_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_bridge_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    values: dict[str, Any] = {}
    for section, keys in _SECTION_KEYS.items():
        data = raw.get(section) or {}
        if not isinstance(data, dict):
            logger.warning("load_bridge_config: section %r is not a mapping", section)
            continue
        for key, attr in keys.items():
            if key in data and data[key] is not None:
                values[attr] = _coerce(attr, data[key])
        unknown = set(data) - set(keys)
        if unknown:
            logger.warning(
                "load_bridge_config: ignoring unknown %s keys: %s",
                section, ", ".join(sorted(unknown)),
            )

    config = BridgeConfig(**values)
    return BridgeConfig.from_env(config) if apply_env else config


def discover_config(cwd: str | Path | None = None) -> Path | None:
    """Return the first config file found in *cwd*, if any."""
    root = Path(cwd) if cwd else Path.cwd()
    for name in CONFIG_FILENAMES:
        candidate = root / name
        if candidate.exists():
            return candidate
    return None
