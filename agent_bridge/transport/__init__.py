"""Command/event transports between adapters and the host."""
from .base import ConnectionState, SubscriptionTable, Transport, matches_pattern
from .http import HttpTransport
from .local import LocalTransport

__all__ = [
    "ConnectionState",
    "HttpTransport",
    "LocalTransport",
    "SubscriptionTable",
    "Transport",
    "matches_pattern",
]
