"""Line-delimited JSON-RPC plumbing shared by the Codex and Copilot adapters.

Frames go out through the host's ``<kind>_stdin`` command and come back
as ``<kind>:stdout:<chat>`` events, one JSON object per line. Requests
use the adapter's own id counter; replies resolve the matching future
in the chat's ``pending_requests``. A reply with no pending future (for
example after ``stop_chat``) is dropped.
Server requests the adapter does not implement get a -32601 error reply.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from agent_bridge.errors import AgentRequestError, ProtocolError

from .base import AgentAdapter, ChatSession, TurnOptions

logger = logging.getLogger(__name__)

METHOD_NOT_FOUND = -32601


def normalize_id(raw: Any) -> int | str | None:
    """Numeric strings become ints so replies match our integer ids."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        return int(raw) if raw.isdigit() else raw
    return None


class JsonRpcAdapter(AgentAdapter):
    """Adds request/response correlation over a host-managed process."""

    #: ``"2.0"`` for strict JSON-RPC peers, None to omit the field.
    jsonrpc_version: str | None = "2.0"
    #: Seconds to wait for handshake replies.
    handshake_timeout: float = 30.0

    # ── Process ──

    def _server_args(self, chat: ChatSession, options: TurnOptions) -> dict[str, Any]:
        args: dict[str, Any] = {
            "serverId": chat.process_id,
            "workingDir": options.work_dir,
            "modelVersion": options.model_version,
            "logDir": options.log_dir,
            "logId": chat.chat_id,
        }
        binary = self._config.agent_paths.get(self.kind)
        if binary:
            args[f"{self.kind}Path"] = binary
        return args

    async def _ensure_process(self, chat: ChatSession, options: TurnOptions) -> bool:
        """Start the chat's server process; True when it was just spawned."""
        if chat.process_alive:
            return False
        chat.process_id = chat.chat_id
        channel = f"{self.kind}:"
        suffix = f":{chat.process_id}"
        await self._attach_listeners(chat, [
            (f"{channel}stdout{suffix}", self._on_stdout),
            (f"{channel}stderr{suffix}", self._on_stderr),
            (f"{channel}close{suffix}", self._handle_process_exit),
        ])
        await self._invoke_spawn(
            f"start_{self.kind}_server", self._server_args(chat, options)
        )
        chat.process_alive = True
        return True

    async def _terminate(self, chat: ChatSession) -> None:
        if chat.process_id is None:
            return
        await self._transport.invoke(
            f"stop_{self.kind}_server", {"serverId": chat.process_id}
        )
        chat.process_alive = False

    # ── Frames ──

    def _frame(self, **fields: Any) -> dict[str, Any]:
        frame: dict[str, Any] = {}
        if self.jsonrpc_version is not None:
            frame["jsonrpc"] = self.jsonrpc_version
        frame.update(fields)
        return frame

    async def _write(self, chat: ChatSession, frame: dict[str, Any]) -> None:
        await self._transport.invoke(
            f"{self.kind}_stdin",
            {"serverId": chat.process_id, "data": json.dumps(frame)},
        )

    async def _request(
        self,
        chat: ChatSession,
        method: str,
        params: dict[str, Any],
        *,
        timeout: float | None = None,
    ) -> Any:
        request_id = self._next_request_id()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        chat.pending_requests[request_id] = future
        try:
            await self._write(
                chat, self._frame(id=request_id, method=method, params=params)
            )
            if timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout=timeout)
        except AgentRequestError as exc:
            raise AgentRequestError(method, exc.message, exc.code) from None
        finally:
            chat.pending_requests.pop(request_id, None)

    async def _notify(self, chat: ChatSession, method: str, params: dict[str, Any]) -> None:
        await self._write(chat, self._frame(method=method, params=params))

    async def _respond(self, chat: ChatSession, wire_id: Any, result: Any) -> None:
        await self._write(chat, self._frame(id=wire_id, result=result))

    async def _respond_error(
        self, chat: ChatSession, wire_id: Any, code: int, message: str
    ) -> None:
        await self._write(
            chat, self._frame(id=wire_id, error={"code": code, "message": message})
        )

    def _on_stdout(self, chat: ChatSession, payload: Any) -> None:
        if not isinstance(payload, str):
            raise ProtocolError("stdout payload is not a line", payload)
        line = payload.strip()
        if not line:
            return
        try:
            message = json.loads(line)
        except ValueError:
            logger.debug("%s: skipping non-JSON line: %s", self.kind, line[:200])
            return
        if not isinstance(message, dict):
            raise ProtocolError("frame is not an object", message)

        method = message.get("method")
        if method is None:
            self._resolve_reply(chat, message)
        elif "id" in message:
            self._handle_server_request(chat, method, message["id"], message.get("params") or {})
        else:
            self._handle_notification(chat, method, message.get("params") or {})

    def _resolve_reply(self, chat: ChatSession, message: dict[str, Any]) -> None:
        request_id = normalize_id(message.get("id"))
        future = chat.pending_requests.pop(request_id, None) if request_id is not None else None
        if future is None:
            logger.debug("%s: dropping reply with no pending request: %s", self.kind, request_id)
            return
        if future.done():
            return
        error = message.get("error")
        if error is not None:
            if isinstance(error, dict):
                future.set_exception(AgentRequestError(
                    f"request {request_id}", str(error.get("message") or error), error.get("code")
                ))
            else:
                future.set_exception(AgentRequestError(f"request {request_id}", str(error)))
        else:
            future.set_result(message.get("result"))

    def _on_stderr(self, chat: ChatSession, payload: Any) -> None:
        logger.debug("%s stderr [%s]: %s", self.kind, chat.chat_id, payload)

    def _handle_server_request(
        self, chat: ChatSession, method: str, wire_id: Any, params: dict[str, Any]
    ) -> None:
        """Reject requests this client does not implement so the agent never waits."""
        logger.warning("%s: unsupported server request %s (id=%s)", self.kind, method, wire_id)
        self._spawn_task(
            self._respond_error(chat, wire_id, METHOD_NOT_FOUND, "Method not supported"),
            f"{self.kind}-reject-{wire_id}",
        )

    def _handle_notification(
        self, chat: ChatSession, method: str, params: dict[str, Any]
    ) -> None:
        logger.debug("%s: ignoring notification %s", self.kind, method)
