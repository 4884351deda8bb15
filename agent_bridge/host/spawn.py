"""Command lines for each agent CLI.

All builders return an argv list for ``asyncio.create_subprocess_exec``;
nothing goes through a shell.
"""
from __future__ import annotations

import json
import logging
import shutil

logger = logging.getLogger(__name__)

DEFAULT_BINARIES: dict[str, str] = {
    "claude": "claude",
    "codex": "codex",
    "copilot": "copilot",
    "gemini": "gemini",
    "opencode": "opencode",
}


def resolve_binary(kind: str, configured: str | None = None) -> str:
    """Prefer an explicit path, then the default binary name for *kind*.

    An explicit value that is not on PATH is kept as-is so spawn errors
    name the configured command.
    """
    fallback = DEFAULT_BINARIES.get(kind, kind)
    if configured:
        if shutil.which(configured) or not shutil.which(fallback):
            return configured
        logger.debug(
            "Command %s not found; falling back to %s for %s",
            configured, fallback, kind,
        )
        return fallback
    return fallback


def is_binary_available(binary: str) -> bool:
    return shutil.which(binary) is not None


def claude_user_frame(prompt: str) -> str:
    """One ``stream-json`` user message line."""
    return json.dumps({
        "type": "user",
        "message": {"role": "user", "content": prompt},
    })


def claude_argv(
    binary: str,
    *,
    session_id: str | None = None,
    model: str | None = None,
    permission_mode: str | None = None,
) -> list[str]:
    argv = [
        binary,
        "--output-format", "stream-json",
        "--input-format", "stream-json",
        "--verbose",
        "--permission-prompt-tool", "stdio",
        "--permission-mode", permission_mode or "default",
    ]
    if model:
        argv += ["--model", model]
    if session_id:
        argv += ["--resume", session_id]
    return argv


def codex_argv(binary: str, *, model: str | None = None) -> list[str]:
    argv = [binary, "app-server"]
    if model:
        argv += ["-c", f'model="{model}"']
    return argv


def copilot_argv(binary: str, *, model: str | None = None) -> list[str]:
    argv = [binary, "--acp", "--stdio"]
    if model:
        argv += ["--model", model]
    return argv


def gemini_argv(
    binary: str,
    prompt: str,
    *,
    session_id: str | None = None,
    model: str | None = None,
    approval_mode: str | None = None,
) -> list[str]:
    argv = [
        binary,
        "-p", prompt,
        "--output-format", "stream-json",
        "--approval-mode", approval_mode or "yolo",
    ]
    if model:
        argv += ["-m", model]
    if session_id:
        argv += ["--resume", session_id]
    return argv


def opencode_argv(binary: str, port: int, *, cors_origin: str | None = None) -> list[str]:
    argv = [binary, "serve", "--port", str(port)]
    if cors_origin:
        argv += ["--cors", cors_origin]
    return argv
