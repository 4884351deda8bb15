"""Agent registry: maps agent kinds to adapter instances."""
from __future__ import annotations

import logging

from agent_bridge.approval import ApprovalPolicy
from agent_bridge.config import BridgeConfig
from agent_bridge.transport.base import Transport

from .availability import AvailabilityRegistry
from .base import AgentAdapter
from .claude import ClaudeAdapter
from .codex import CodexAdapter
from .copilot import CopilotAdapter
from .gemini import GeminiAdapter
from .opencode import OpenCodeAdapter

logger = logging.getLogger(__name__)

ADAPTER_CLASSES: tuple[type[AgentAdapter], ...] = (
    ClaudeAdapter,
    CodexAdapter,
    CopilotAdapter,
    GeminiAdapter,
    OpenCodeAdapter,
)


class AgentRegistry:
    """Registry of agent adapters keyed by kind ('claude', 'codex', ...)."""

    def __init__(self, availability: AvailabilityRegistry | None = None) -> None:
        self._adapters: dict[str, AgentAdapter] = {}
        self.availability = availability or AvailabilityRegistry()

    def register(self, kind: str, adapter: AgentAdapter) -> None:
        self._adapters[kind] = adapter
        logger.debug("Agent adapter registered: %s", kind)

    def get(self, kind: str) -> AgentAdapter | None:
        return self._adapters.get(kind)

    def get_or_raise(self, kind: str) -> AgentAdapter:
        """Get an adapter by kind, raising KeyError if not registered."""
        adapter = self._adapters.get(kind)
        if adapter is None:
            available = ", ".join(self._adapters)
            raise KeyError(
                f"Agent '{kind}' not found. Available: {available or 'none'}"
            )
        return adapter

    def kinds(self) -> list[str]:
        return list(self._adapters)

    def availability_report(self) -> dict[str, bool]:
        return {kind: self.availability.is_available(kind) for kind in self._adapters}

    async def shutdown_all(self) -> None:
        """Shut down every adapter; errors are logged per adapter."""
        for kind, adapter in self._adapters.items():
            try:
                await adapter.shutdown()
            except Exception as exc:
                logger.error("Error shutting down agent '%s': %s", kind, exc)


def build_agent_registry(
    transport: Transport, config: BridgeConfig | None = None
) -> AgentRegistry:
    """One adapter per kind, sharing availability and approval policy."""
    config = config or BridgeConfig()
    registry = AgentRegistry()
    policy = ApprovalPolicy(extra_safe_commands=config.safe_commands)
    for cls in ADAPTER_CLASSES:
        registry.register(cls.kind, cls(
            transport,
            config=config,
            availability=registry.availability,
            policy=policy,
        ))
    return registry
