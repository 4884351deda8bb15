"""Auto-approval policy for agent tool requests.

The safe-command set is configuration (``approval.safe_commands`` in the
YAML config). Per-chat approvals granted with the ``tool`` or ``prefix``
scope live in an ``ApprovalContext`` owned by the chat session.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from .command_prefixes import SAFE_COMMANDS, split_chain

logger = logging.getLogger(__name__)

SCOPE_ONCE = "once"
SCOPE_TOOL = "tool"
SCOPE_PREFIX = "prefix"


@dataclass
class ApprovalContext:
    """Tools and command prefixes approved for the rest of one chat."""

    approved_tools: set[str] = field(default_factory=set)
    approved_prefixes: set[str] = field(default_factory=set)

    def add_tool(self, tool: str) -> None:
        self.approved_tools.add(tool)

    def add_prefixes(self, prefixes: Iterable[str]) -> None:
        self.approved_prefixes.update(prefixes)

    def clear(self) -> None:
        self.approved_tools.clear()
        self.approved_prefixes.clear()


class ApprovalPolicy:
    """Decides which approval requests are answered without asking."""

    def __init__(
        self,
        safe_commands: Iterable[str] | None = None,
        *,
        extra_safe_commands: Iterable[str] = (),
    ) -> None:
        base = SAFE_COMMANDS if safe_commands is None else safe_commands
        self._safe: frozenset[str] = frozenset(base) | frozenset(extra_safe_commands)
        logger.debug("ApprovalPolicy: %d safe command(s)", len(self._safe))

    @property
    def safe_commands(self) -> frozenset[str]:
        return self._safe

    def is_command_safe(self, command: str) -> bool:
        """True when every chained segment starts with a safe command."""
        segments = _segments(command)
        return bool(segments) and all(self._segment_is_safe(s) for s in segments)

    def _segment_is_safe(self, segment: str) -> bool:
        return any(
            segment == safe or segment.startswith(safe + " ")
            for safe in self._safe
        )

    def should_auto_approve(
        self,
        tool_name: str,
        prefixes: list[str] | None,
        *,
        command: str | None = None,
        context: ApprovalContext | None = None,
    ) -> bool:
        """Whether a request can be answered without surfacing it.

        A tool approved for the chat always passes. Otherwise every
        prefix must be safe or approved for the chat; when the full
        command is known, a segment such as ``gh pr list --json`` also
        passes by starting with a safe multi-word command.
        """
        if context is not None and tool_name in context.approved_tools:
            return True
        if not prefixes:
            return False
        approved = context.approved_prefixes if context is not None else set()
        if all(p in self._safe or p in approved for p in prefixes):
            return True
        if command:
            segments = _segments(command)
            if len(segments) == len(prefixes):
                return all(
                    prefix in approved or self._segment_is_safe(segment)
                    for segment, prefix in zip(segments, prefixes)
                )
        return False


def _segments(command: str) -> list[str]:
    normalized = (" ".join(seg.split()) for seg in split_chain(command))
    return [seg for seg in normalized if seg]
