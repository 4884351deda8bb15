"""In-process transport: calls the host command table and event bus directly."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from agent_bridge.errors import InvokeError

from .base import EventCallback, Transport, Unsubscribe

if TYPE_CHECKING:
    from agent_bridge.host.bridge import HostBridge

logger = logging.getLogger(__name__)


class LocalTransport(Transport):
    """Same ``invoke``/``listen`` contract as the network transport.

    Host command failures surface as ``InvokeError`` carrying the host's
    message, as a ``success: false`` reply would over the network.
    """

    def __init__(self, host: HostBridge) -> None:
        self._host = host

    async def invoke(self, command: str, args: dict[str, Any] | None = None) -> Any:
        try:
            return await self._host.invoke(command, args or {})
        except Exception as exc:
            logger.debug("Local invoke %s failed: %s", command, exc)
            raise InvokeError(command, str(exc)) from exc

    async def listen(self, pattern: str, callback: EventCallback) -> Unsubscribe:
        return self._host.events.listen(pattern, callback)
