"""OpenCode adapter: HTTP API of a spawned ``opencode serve`` process."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiohttp

from agent_bridge.errors import AgentRequestError, BridgeError, TransportError

from .base import AgentAdapter, ChatSession, ChatState, TurnOptions
from .events import (
    BashOutput,
    Message,
    SessionIdAssigned,
    TextDelta,
    ToolMeta,
    TurnComplete,
    tool_message,
)

logger = logging.getLogger(__name__)

HEALTH_PATH = "/global/health"

# Allow everything; OpenCode has no interactive approval channel here.
ALLOW_ALL = [{"permission": "*", "pattern": "*", "action": "allow"}]

TOOL_NAMES = {
    "bash": "Bash",
    "shell": "Bash",
    "write": "Write",
    "edit": "Edit",
    "read": "Read",
    "grep": "Grep",
    "search": "Grep",
    "glob": "Glob",
    "webfetch": "WebFetch",
    "fetch": "WebFetch",
}


def normalize_tool_name(name: str) -> str:
    known = TOOL_NAMES.get(name.lower())
    if known:
        return known
    return name[:1].upper() + name[1:]


def model_param(model_version: str | None) -> dict[str, str] | None:
    """``"provider/model"`` → ``{"providerID", "modelID"}``."""
    if not model_version:
        return None
    provider, sep, model = model_version.partition("/")
    if sep and provider:
        return {"providerID": provider, "modelID": model}
    return {"providerID": "", "modelID": model_version}


class OpenCodeAdapter(AgentAdapter):
    kind = "opencode"
    display_name = "OpenCode"

    def __init__(self, *args: Any, http_session: aiohttp.ClientSession | None = None,
                 **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._http = http_session
        self._owns_http = http_session is None

    def _session(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
            self._owns_http = True
        return self._http

    async def _call(
        self,
        chat: ChatSession,
        method: str,
        path: str,
        *,
        body: Any = None,
        timeout: float | None = None,
    ) -> Any:
        url = chat.extra["base_url"] + path
        params = {"directory": chat.work_dir} if chat.work_dir else None
        try:
            async with self._session().request(
                method, url, json=body, params=params,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                text = await resp.text()
                if resp.status >= 400:
                    raise AgentRequestError(f"{method} {path}", text[:500] or resp.reason, resp.status)
        except aiohttp.ClientError as exc:
            raise TransportError(f"{method} {url} failed: {exc}") from exc
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError:
            return text

    # ── Lifecycle ──

    async def _start_turn(
        self, chat: ChatSession, prompt: str, options: TurnOptions
    ) -> None:
        if not chat.process_alive:
            await self._start_server(chat, options)
        if not chat.extra.get("session_ready"):
            await self._open_session(chat)

        chat.state = ChatState.RUNNING
        self._spawn_task(
            self._run_prompt(chat, prompt, options), f"opencode-prompt-{chat.chat_id}"
        )

    async def _start_server(self, chat: ChatSession, options: TurnOptions) -> None:
        chat.process_id = chat.chat_id
        await self._attach_listeners(chat, [
            (f"opencode:close:{chat.process_id}", self._handle_process_exit),
        ])
        args: dict[str, Any] = {
            "serverId": chat.process_id,
            "workingDir": options.work_dir,
            "logDir": options.log_dir,
            "logId": chat.chat_id,
        }
        if self._config.agent_paths.get("opencode"):
            args["opencodePath"] = self._config.agent_paths["opencode"]
        result = await self._invoke_spawn("start_opencode_server", args)
        port = result.get("port") if isinstance(result, dict) else None
        if not port:
            raise TransportError("start_opencode_server returned no port")
        chat.extra["base_url"] = f"http://127.0.0.1:{port}"
        chat.extra["session_ready"] = False
        logger.info("opencode: server for chat %s on port %s, waiting for ready", chat.chat_id, port)
        try:
            await self._wait_healthy(chat)
        except TransportError:
            await self._discard_server(chat)
            raise
        chat.process_alive = True

    async def _discard_server(self, chat: ChatSession) -> None:
        """Stop a server that never became ready; the next message respawns."""
        chat.process_alive = False
        try:
            await self._transport.invoke("stop_opencode_server", {"serverId": chat.process_id})
        except BridgeError as exc:
            logger.warning("opencode: failed to stop unready server for chat %s: %s",
                           chat.chat_id, exc)

    async def _wait_healthy(self, chat: ChatSession) -> None:
        attempts = self._config.opencode_health_attempts
        for _ in range(attempts):
            try:
                health = await self._call(chat, "GET", HEALTH_PATH, timeout=2.0)
            except (BridgeError, asyncio.TimeoutError):
                health = None
            if isinstance(health, dict) and health.get("healthy"):
                return
            await asyncio.sleep(self._config.opencode_health_interval)
        raise TransportError(
            f"OpenCode server for chat {chat.chat_id} not ready after {attempts} attempts"
        )

    async def _open_session(self, chat: ChatSession) -> None:
        if chat.session_id:
            try:
                await self._call(chat, "GET", f"/session/{chat.session_id}", timeout=10.0)
                chat.extra["session_ready"] = True
                return
            except AgentRequestError as exc:
                logger.info("opencode: session %s not found (%s); creating a new one",
                            chat.session_id, exc)
        created = await self._call(chat, "POST", "/session", body={"permission": ALLOW_ALL})
        session_id = created.get("id") if isinstance(created, dict) else None
        if not session_id:
            raise AgentRequestError("POST /session", f"no session id in {created!r}")
        self._emit(chat, SessionIdAssigned(value=session_id))
        chat.extra["session_ready"] = True

    async def _run_prompt(self, chat: ChatSession, text: str, options: TurnOptions) -> None:
        """POST the message; the reply carries every part of the finished turn."""
        body: dict[str, Any] = {"parts": [{"type": "text", "text": text}]}
        model = model_param(options.model_version)
        if model:
            body["model"] = model
        try:
            reply = await self._call(chat, "POST", f"/session/{chat.session_id}/message", body=body)
        except BridgeError as exc:
            if not chat.running:
                return
            logger.warning("opencode: prompt failed for chat %s: %s", chat.chat_id, exc)
            self._emit(chat, Message(content=f"Error: {exc}"))
        else:
            if not chat.running:
                return
            parts = reply.get("parts") if isinstance(reply, dict) else None
            for part in parts or []:
                self._emit_part(chat, part)
        self._emit(chat, TurnComplete())
        self._complete_turn(chat)

    def _emit_part(self, chat: ChatSession, part: dict[str, Any]) -> None:
        part_type = part.get("type")
        if part_type == "text":
            if part.get("text"):
                self._emit(chat, TextDelta(delta=part["text"]))
            return
        if part_type == "tool-invocation":
            tool = part.get("tool") or {}
            raw_name, tool_input, output = tool.get("name"), tool.get("input"), tool.get("output")
        elif part_type == "tool":
            state = part.get("state") or {}
            raw_name, tool_input, output = part.get("tool"), state.get("input"), state.get("output")
        else:
            return
        name = normalize_tool_name(raw_name or "tool")
        self._emit(chat, tool_message(name, tool_input or {}, tool_meta=ToolMeta(name)))
        if name == "Bash" and output:
            self._emit(chat, BashOutput(
                text=output if isinstance(output, str) else json.dumps(output)
            ))

    async def interrupt_turn(self, chat_id: str) -> None:
        chat = self._chats.get(chat_id)
        if chat is None or not chat.process_alive or not chat.session_id:
            return
        await self._call(chat, "POST", f"/session/{chat.session_id}/abort", timeout=10.0)

    async def _terminate(self, chat: ChatSession) -> None:
        if chat.process_id is None:
            return
        await self._transport.invoke("stop_opencode_server", {"serverId": chat.process_id})
        chat.process_alive = False
        chat.extra["session_ready"] = False

    def _handle_process_exit(self, chat: ChatSession, payload: Any) -> None:
        chat.extra["session_ready"] = False
        super()._handle_process_exit(chat, payload)

    async def shutdown(self) -> None:
        await super().shutdown()
        if self._owns_http and self._http is not None:
            await self._http.close()
            self._http = None
