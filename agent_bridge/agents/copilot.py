"""Copilot adapter: Agent Client Protocol over ``copilot --acp --stdio``."""
from __future__ import annotations

import json
import logging
from typing import Any

from agent_bridge.approval import prefixes_of
from agent_bridge.errors import AgentRequestError, BridgeError

from .base import ApprovalRecord, ChatSession, ChatState, TurnOptions
from .events import (
    ApprovalOption,
    BashOutput,
    Message,
    SessionIdAssigned,
    TextDelta,
    ToolApproval,
    ToolMeta,
    TurnComplete,
)
from .jsonrpc import JsonRpcAdapter

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1

CLIENT_INFO = {"name": "agent-bridge", "title": "Agent Bridge", "version": "0.1.0"}

# File system and terminal requests are not served by this client.
CLIENT_CAPABILITIES = {
    "fs": {"readTextFile": False, "writeTextFile": False},
    "terminal": False,
}

# ACP tool kind → canonical tool name. Unknown kinds use the call title.
KIND_TOOL_NAMES = {
    "execute": "Bash",
    "edit": "Edit",
    "read": "Read",
    "search": "Grep",
    "fetch": "WebFetch",
    "think": "Think",
}

DEFAULT_ALLOW_OPTION = "allow_once"
DEFAULT_REJECT_OPTION = "reject_once"


def tool_name_for(kind: str | None, title: str | None) -> str:
    return KIND_TOOL_NAMES.get(kind or "other") or title or "Tool"


def _pretty(value: Any) -> str:
    return json.dumps(value, indent=2)


def subagent_input(kind: str | None, tool_input: Any) -> dict[str, Any] | None:
    """Task-shaped input when a tool call starts a subagent, else None.

    Copilot marks subagents with ``agent_type`` (renamed to
    ``subagent_type``), ``subagent_type`` itself, or a ``task`` kind.
    """
    task_input = dict(tool_input) if isinstance(tool_input, dict) else {}
    agent_type = task_input.pop("agent_type", None)
    if isinstance(agent_type, str):
        task_input.setdefault("subagent_type", agent_type)
    if isinstance(task_input.get("subagent_type"), str) or kind == "task":
        return task_input
    return None


class CopilotAdapter(JsonRpcAdapter):
    kind = "copilot"
    display_name = "Copilot"

    async def _start_turn(
        self, chat: ChatSession, prompt: str, options: TurnOptions
    ) -> None:
        if await self._ensure_process(chat, options):
            result = await self._request(chat, "initialize", {
                "protocolVersion": PROTOCOL_VERSION,
                "clientInfo": CLIENT_INFO,
                "clientCapabilities": CLIENT_CAPABILITIES,
            }, timeout=self.handshake_timeout)
            capabilities = (result or {}).get("agentCapabilities") or {}
            chat.extra["load_session"] = bool(capabilities.get("loadSession"))
            chat.extra["session_ready"] = False

        if not chat.extra.get("session_ready"):
            await self._open_session(chat, options)

        chat.state = ChatState.RUNNING
        self._spawn_task(
            self._run_prompt(chat, prompt), f"copilot-prompt-{chat.chat_id}"
        )

    async def _open_session(self, chat: ChatSession, options: TurnOptions) -> None:
        if chat.session_id and chat.extra.get("load_session"):
            try:
                await self._request(chat, "session/load", {
                    "sessionId": chat.session_id,
                    "cwd": options.work_dir,
                    "mcpServers": [],
                }, timeout=self.handshake_timeout)
                chat.extra["session_ready"] = True
                return
            except AgentRequestError as exc:
                logger.info("copilot: cannot load session %s (%s); creating a new one",
                            chat.session_id, exc)
        result = await self._request(chat, "session/new", {
            "cwd": options.work_dir,
            "mcpServers": [],
        }, timeout=self.handshake_timeout)
        session_id = (result or {}).get("sessionId")
        if session_id:
            self._emit(chat, SessionIdAssigned(value=session_id))
        chat.extra["session_ready"] = True

    async def _run_prompt(self, chat: ChatSession, text: str) -> None:
        """Await the prompt reply, which arrives when the turn is over."""
        try:
            result = await self._request(chat, "session/prompt", {
                "sessionId": chat.session_id,
                "prompt": [{"type": "text", "text": text}],
            })
        except BridgeError as exc:
            if not chat.running:
                return
            logger.warning("copilot: prompt failed for chat %s: %s", chat.chat_id, exc)
            self._emit(chat, Message(content=f"Error: {exc}"))
        else:
            stop_reason = (result or {}).get("stopReason")
            if stop_reason and stop_reason != "end_turn":
                logger.info("copilot: turn for chat %s ended: %s", chat.chat_id, stop_reason)
        chat.active_task_stack.clear()
        chat.extra.pop("tool_calls", None)
        self._emit(chat, TurnComplete())
        self._complete_turn(chat)

    async def interrupt_turn(self, chat_id: str) -> None:
        chat = self._chats.get(chat_id)
        if chat is None or not chat.process_alive or not chat.session_id:
            return
        await self._notify(chat, "session/cancel", {"sessionId": chat.session_id})

    def _handle_process_exit(self, chat: ChatSession, payload: Any) -> None:
        chat.extra["session_ready"] = False
        super()._handle_process_exit(chat, payload)

    # ── Inbound ──

    def _handle_server_request(
        self, chat: ChatSession, method: str, wire_id: Any, params: dict[str, Any]
    ) -> None:
        if method != "session/request_permission":
            super()._handle_server_request(chat, method, wire_id, params)
            return
        tool_call = params.get("toolCall") or {}
        raw_input = tool_call.get("rawInput") or {}
        name = tool_name_for(tool_call.get("kind"), tool_call.get("title") or "Permission")

        prefixes = None
        if name == "Bash":
            display = raw_input.get("command") or ""
            prefixes = prefixes_of(display) or []
        elif isinstance(raw_input.get("url"), str):
            display = raw_input["url"]
        elif isinstance(raw_input.get("path"), str):
            display = raw_input["path"]
        else:
            display = _pretty(raw_input)

        options = [
            ApprovalOption(
                id=str(option.get("optionId")),
                name=str(option.get("name") or option.get("optionId")),
                kind=str(option.get("kind") or ""),
            )
            for option in params.get("options") or []
            if isinstance(option, dict) and option.get("optionId") is not None
        ]
        self._register_approval(chat, ToolApproval(
            id=str(wire_id),
            name=name,
            input=raw_input,
            display_input=display,
            command_prefixes=prefixes,
            options=options or None,
        ), wire_id)

    def _handle_notification(
        self, chat: ChatSession, method: str, params: dict[str, Any]
    ) -> None:
        if method != "session/update":
            return
        update = params.get("update") or params
        update_type = update.get("sessionUpdate") or update.get("type")
        tool_calls: dict[str, tuple[str, str]] = chat.extra.setdefault("tool_calls", {})

        if update_type in ("agent_message_chunk", "agent_thought_chunk"):
            content = update.get("content") or {}
            if content.get("type") == "text" and isinstance(content.get("text"), str):
                self._emit(chat, TextDelta(delta=content["text"]))

        elif update_type == "tool_call":
            call_id = update.get("toolCallId")
            if not call_id:
                return
            title = update.get("title") or "Tool"
            kind = update.get("kind") or "other"
            tool_calls[call_id] = (title, kind)
            if update.get("status") not in ("pending", "in_progress"):
                return
            tool_input = update.get("rawInput")
            task_input = subagent_input(kind, tool_input)
            if task_input is not None:
                self._emit(chat, Message(
                    content=f"[Task]\n{_pretty(task_input)}",
                    tool_meta=ToolMeta("Task"),
                    tool_use_id=call_id,
                ))
                chat.active_task_stack.append(call_id)
                return
            name = tool_name_for(kind, title)
            content = f"[{name}]\n{_pretty(tool_input)}" if tool_input else f"[{name}]"
            self._emit(chat, Message(
                content=content,
                tool_meta=ToolMeta(name),
                parent_tool_use_id=chat.parent_tool_use_id,
            ))

        elif update_type == "tool_call_update":
            call_id = update.get("toolCallId")
            if not call_id or update.get("status") != "completed":
                return
            _title, kind = tool_calls.pop(call_id, ("", ""))
            if kind != "read":
                self._emit_tool_output(chat, update)
            if call_id in chat.active_task_stack:
                chat.active_task_stack.remove(call_id)

        elif update_type == "plan":
            entries = update.get("entries") or update.get("steps") or []
            if entries:
                lines = [
                    f"{index}. [{entry.get('status', '')}] "
                    f"{entry.get('content') or entry.get('description') or ''}"
                    for index, entry in enumerate(entries, start=1)
                ]
                self._emit(chat, Message(content="Plan:\n" + "\n".join(lines)))

    def _emit_tool_output(self, chat: ChatSession, update: dict[str, Any]) -> None:
        contents = update.get("content")
        if isinstance(contents, dict):
            contents = [contents]
        emitted = False
        for item in contents or []:
            item_type = item.get("type")
            if item_type == "text" and item.get("text"):
                self._emit(chat, BashOutput(text=item["text"]))
                emitted = True
            elif item_type == "terminal_output" and item.get("output"):
                self._emit(chat, BashOutput(text=item["output"]))
                emitted = True
            elif item_type == "diff":
                diff = {"file_path": item.get("path") or "", "diff": item.get("diff") or ""}
                self._emit(chat, Message(
                    content=f"[Edit]\n{_pretty(diff)}",
                    tool_meta=ToolMeta("Edit"),
                    parent_tool_use_id=chat.parent_tool_use_id,
                ))
                emitted = True
        if emitted:
            return
        output = update.get("rawOutput")
        if isinstance(output, dict):
            output = {k: v for k, v in output.items() if k != "detailedContent"}
        if output:
            self._emit(chat, BashOutput(text=_pretty(output)))

    # ── Decisions ──

    async def _send_tool_decision(
        self,
        chat: ChatSession,
        record: ApprovalRecord,
        approved: bool,
        scope_or_options: str | None,
    ) -> None:
        event = record.event
        offered = {option.id for option in getattr(event, "options", None) or []}
        if scope_or_options and scope_or_options in offered:
            option_id = scope_or_options
        else:
            option_id = DEFAULT_ALLOW_OPTION if approved else DEFAULT_REJECT_OPTION
        await self._respond(
            chat,
            record.wire_id,
            {"outcome": {"outcome": "selected", "optionId": option_id}},
        )
