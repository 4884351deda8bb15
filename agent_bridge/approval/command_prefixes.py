"""Chain-aware command prefixes for approval scoping.

``git commit -m 'x' && pnpm test`` becomes ``["git commit", "pnpm test"]``.
Every prefix must be approved (or safe) before the whole command is.
"""
from __future__ import annotations

from collections.abc import Iterable
from typing import Any

# Tools whose second word selects a subcommand ("git push", "npm install").
SUBCOMMAND_TOOLS: frozenset[str] = frozenset({
    "git", "gh", "glab",
    "npm", "pnpm", "yarn", "npx", "bun", "deno",
    "docker", "podman", "kubectl", "helm",
    "brew", "apt", "apt-get",
    "cargo", "rustup", "go",
    "pip", "pip3", "poetry", "uv", "conda",
    "terraform", "aws", "gcloud", "az",
    "dotnet", "mvn", "gradle", "swift",
})

# Read-only commands approved without asking.
SAFE_COMMANDS: frozenset[str] = frozenset({
    "git status",
    "git diff",
    "git log",
    "git show",
    "git branch",
    "git remote",
    "git rev-parse",
    "git symbolic-ref",
    "git config",
    "git ls-files",
    "git ls-tree",
    "git cat-file",
    "git describe",
    "git shortlog",
    "git blame",
    "git reflog",
    "git tag",
    "gh pr list",
    "gh pr view",
    "gh pr status",
    "gh pr checks",
    "gh pr diff",
    "gh issue list",
    "gh issue view",
    "gh issue status",
    "gh repo view",
    "gh api",
})


def split_chain(command: str) -> list[str]:
    """Split *command* on ``&&``, ``||``, ``;`` and ``|`` outside quotes."""
    segments: list[str] = []
    current: list[str] = []
    quote: str | None = None
    i = 0
    n = len(command)
    while i < n:
        ch = command[i]
        if quote is not None:
            current.append(ch)
            if ch == quote:
                quote = None
            elif ch == "\\" and quote == '"' and i + 1 < n:
                current.append(command[i + 1])
                i += 1
            i += 1
            continue
        if ch in ("'", '"'):
            quote = ch
            current.append(ch)
            i += 1
            continue
        if ch == "\\" and i + 1 < n:
            current.append(command[i:i + 2])
            i += 2
            continue
        if command.startswith(("&&", "||"), i):
            segments.append("".join(current))
            current = []
            i += 2
            continue
        if ch in ";|":
            segments.append("".join(current))
            current = []
            i += 1
            continue
        current.append(ch)
        i += 1
    segments.append("".join(current))
    return segments


def _segment_prefix(segment: str) -> str | None:
    tokens = segment.split()
    if not tokens:
        return None
    first = tokens[0]
    if first in SUBCOMMAND_TOOLS and len(tokens) >= 2:
        return f"{first} {tokens[1]}"
    return first


def prefixes_of(command: Any) -> list[str] | None:
    """Return the ordered prefixes of a shell command.

    Returns None (not an empty list) for non-string or blank input.
    A dangling trailing operator contributes nothing.
    """
    if not isinstance(command, str):
        return None
    prefixes = [
        prefix
        for prefix in (_segment_prefix(seg) for seg in split_chain(command))
        if prefix
    ]
    return prefixes or None


def prefixes_for_tool_input(tool_input: Any) -> list[str] | None:
    """Prefixes for a shell tool's input dict (``{"command": ...}``)."""
    if not isinstance(tool_input, dict):
        return None
    command = tool_input.get("command")
    if isinstance(command, list):
        command = " ".join(str(part) for part in command)
    return prefixes_of(command)


def are_commands_safe(
    prefixes: Iterable[str] | None,
    safe: Iterable[str] = SAFE_COMMANDS,
) -> bool:
    """True when *prefixes* is non-empty and every entry is safe."""
    if not prefixes:
        return False
    safe_set = safe if isinstance(safe, (set, frozenset)) else set(safe)
    items = list(prefixes)
    return bool(items) and all(p in safe_set for p in items)
