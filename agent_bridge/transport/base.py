"""Transport contract shared by the local and network variants."""
from __future__ import annotations

import abc
import enum
import itertools
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

# Signature: def callback(event_type: str, payload: Any) -> None
EventCallback = Callable[[str, Any], None]
Unsubscribe = Callable[[], None]


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def matches_pattern(pattern: str, event_type: str) -> bool:
    """Exact match, or plain string-prefix match for a trailing ``*``."""
    if pattern.endswith("*"):
        return event_type.startswith(pattern[:-1])
    return pattern == event_type


class SubscriptionTable:
    """Pattern subscriptions keyed by token.

    ``add`` reports whether the pattern just gained its first listener
    and ``remove`` whether it just lost its last one, so callers send
    exactly one wire subscribe/unsubscribe per transition. Removing a
    token twice is a no-op.
    """

    def __init__(self) -> None:
        self._by_pattern: dict[str, dict[int, EventCallback]] = {}
        self._token_pattern: dict[int, str] = {}
        self._tokens = itertools.count(1)

    def add(self, pattern: str, callback: EventCallback) -> tuple[int, bool]:
        token = next(self._tokens)
        listeners = self._by_pattern.setdefault(pattern, {})
        first = not listeners
        listeners[token] = callback
        self._token_pattern[token] = pattern
        return token, first

    def remove(self, token: int) -> tuple[str, bool] | None:
        pattern = self._token_pattern.pop(token, None)
        if pattern is None:
            return None
        listeners = self._by_pattern.get(pattern, {})
        listeners.pop(token, None)
        last = not listeners
        if last:
            self._by_pattern.pop(pattern, None)
        return pattern, last

    def patterns(self) -> list[str]:
        return list(self._by_pattern)

    def listener_count(self, pattern: str) -> int:
        return len(self._by_pattern.get(pattern, {}))

    def is_empty(self) -> bool:
        return not self._by_pattern

    def clear(self) -> None:
        self._by_pattern.clear()
        self._token_pattern.clear()

    def callbacks_for(self, event_type: str) -> list[EventCallback]:
        """Snapshot of every callback whose pattern matches *event_type*."""
        matched: list[EventCallback] = []
        for pattern, listeners in self._by_pattern.items():
            if matches_pattern(pattern, event_type):
                matched.extend(listeners.values())
        return matched

    def dispatch(self, event_type: str, payload: Any) -> int:
        """Deliver to every matching callback; returns the delivery count.

        A failing callback is logged and does not stop the others.
        """
        delivered = 0
        for callback in self.callbacks_for(event_type):
            try:
                callback(event_type, payload)
            except Exception:
                logger.exception("Event callback failed for %s", event_type)
            delivered += 1
        return delivered


class Transport(abc.ABC):
    """Carries commands to the host and events back from it."""

    @abc.abstractmethod
    async def invoke(self, command: str, args: dict[str, Any] | None = None) -> Any:
        """Run a host command and return its result."""
        ...

    @abc.abstractmethod
    async def listen(self, pattern: str, callback: EventCallback) -> Unsubscribe:
        """Subscribe *callback* to events matching *pattern*."""
        ...

    @property
    def is_connected(self) -> bool:
        return True

    async def disconnect(self) -> None:
        """Tear the transport down. Default: no-op."""
