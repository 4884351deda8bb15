"""Synchronous pattern-matched event fan-out inside the host.

Process readers emit one event per output line; delivery happens
inline so listeners observe lines in the order the process wrote them.
"""
from __future__ import annotations

import logging
from typing import Any

from agent_bridge.transport.base import EventCallback, SubscriptionTable, Unsubscribe

logger = logging.getLogger(__name__)


class EventBus:
    """Host-side event emitter with token-based subscriptions."""

    def __init__(self) -> None:
        self._subscriptions = SubscriptionTable()

    def listen(self, pattern: str, callback: EventCallback) -> Unsubscribe:
        token, _ = self._subscriptions.add(pattern, callback)

        def unsubscribe() -> None:
            self._subscriptions.remove(token)

        return unsubscribe

    def emit(self, event_type: str, payload: Any = None) -> int:
        delivered = self._subscriptions.dispatch(event_type, payload)
        if not delivered:
            logger.debug("EventBus: no listener for %s", event_type)
        return delivered

    def listener_count(self, pattern: str) -> int:
        return self._subscriptions.listener_count(pattern)
