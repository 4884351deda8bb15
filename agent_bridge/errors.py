"""Exception hierarchy for the agent bridge.

Transport and protocol failures are caught at the adapter boundary:
request/response calls re-raise them to the awaiting caller, streaming
frames are logged and dropped.
"""
from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class TransportError(BridgeError):
    """The transport could not carry a command or event."""


class HttpError(TransportError):
    """The network host answered with a non-2xx status."""
    def __init__(self, status: int, body: Any = None):
        self.status = status
        self.body = body
        detail = f": {body}" if body else ""
        super().__init__(f"HTTP error {status}{detail}")


class AuthRequiredError(HttpError):
    """The network host rejected the request as unauthenticated (401)."""
    def __init__(self, body: Any = None):
        super().__init__(401, body)
        self.args = ("Authentication required",)


class InvokeError(TransportError):
    """The host ran the command and reported ``success: false``."""
    def __init__(self, command: str, message: str):
        self.command = command
        self.message = message
        super().__init__(message)


class UnknownCommandError(BridgeError):
    """No host command is registered under this name."""
    def __init__(self, command: str):
        self.command = command
        super().__init__(f"Unknown command: {command}")


class SpawnError(BridgeError):
    """An agent subprocess could not be started."""
    def __init__(self, agent: str, reason: str):
        self.agent = agent
        self.reason = reason
        super().__init__(reason)


class ProtocolError(BridgeError):
    """A subprocess produced a frame the adapter does not understand."""
    def __init__(self, detail: str, frame: Any = None):
        self.detail = detail
        self.frame = frame
        super().__init__(detail)


class ApprovalConflictError(BridgeError):
    """A decision was sent for an unknown or already resolved request."""
    def __init__(self, request_id: str, reason: str):
        self.request_id = request_id
        self.reason = reason
        super().__init__(f"Approval {request_id}: {reason}")


class ProcessNotFoundError(BridgeError):
    """No running host process is registered under this id."""
    def __init__(self, process_id: str):
        self.process_id = process_id
        super().__init__(f"No running process: {process_id}")


class AgentRequestError(BridgeError):
    """An agent answered one of our requests with an error."""
    def __init__(self, method: str, message: str, code: int | None = None):
        self.method = method
        self.code = code
        self.message = message
        super().__init__(f"{method} failed: {message}")
