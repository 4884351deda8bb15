"""Host side: agent processes, their event bus and the command server."""
from .bridge import HostBridge
from .event_bus import EventBus
from .processes import ProcessManager
from .server import HostServer

__all__ = ["EventBus", "HostBridge", "HostServer", "ProcessManager"]
