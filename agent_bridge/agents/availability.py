"""Shared record of which agent CLIs could be started."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Lower-cased substrings that mark a spawn failure as "binary missing".
NOT_FOUND_SIGNATURES: tuple[str, ...] = (
    "command not found",
    "enoent",
    "no such file or directory",
    "not found",
    "cannot find",
)


def is_not_found_error(message: str) -> bool:
    lowered = message.lower()
    return any(sig in lowered for sig in NOT_FOUND_SIGNATURES)


@dataclass
class ToolStatus:
    available: bool
    error: str | None = None
    last_checked: float = 0.0


class AvailabilityRegistry:
    """Agent kind → last known ``ToolStatus``.

    One instance is shared by every adapter built for the same registry.
    """

    def __init__(self) -> None:
        self._statuses: dict[str, ToolStatus] = {}

    def record_unavailable(self, kind: str, error: str) -> ToolStatus:
        status = ToolStatus(available=False, error=error, last_checked=time.time())
        self._statuses[kind] = status
        logger.warning("Agent CLI unavailable: %s (%s)", kind, error)
        return status

    def record_available(self, kind: str) -> ToolStatus:
        status = ToolStatus(available=True, last_checked=time.time())
        previous = self._statuses.get(kind)
        self._statuses[kind] = status
        if previous is not None and not previous.available:
            logger.info("Agent CLI available again: %s", kind)
        return status

    def get(self, kind: str) -> ToolStatus | None:
        return self._statuses.get(kind)

    def is_available(self, kind: str) -> bool:
        """Unknown kinds count as available until a spawn fails."""
        status = self._statuses.get(kind)
        return status is None or status.available

    def report(self) -> dict[str, ToolStatus]:
        return dict(self._statuses)
