"""Codex adapter: ``codex app-server`` JSON-RPC (no ``jsonrpc`` field).

Handshake: ``initialize`` → ``initialized`` notification →
``thread/start`` (or ``thread/resume`` for a restored thread id). Each
message is a ``turn/start``; the turn ends with a ``turn/completed``
notification. Approval asks arrive as server requests and are answered
with ``{"decision": "accept" | "decline"}`` under the original id. Requests
of any other method are accepted outright.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from agent_bridge.approval import prefixes_of
from agent_bridge.errors import AgentRequestError

from .base import ApprovalRecord, ChatSession, ChatState, TurnOptions
from .events import (
    BashOutput,
    Message,
    SessionIdAssigned,
    TextDelta,
    ToolApproval,
    ToolMeta,
    TurnComplete,
    is_task_call,
    tool_message,
)
from .jsonrpc import JsonRpcAdapter

logger = logging.getLogger(__name__)

CLIENT_INFO = {"name": "agent-bridge", "title": "Agent Bridge", "version": "0.1.0"}

# Server request method → canonical tool name.
APPROVAL_METHODS: dict[str, str] = {
    "item/commandExecution/requestApproval": "Bash",
    "item/fileChange/requestApproval": "Edit",
    "item/tool/requestUserInput": "UserInput",
}

IGNORED_NOTIFICATIONS = frozenset({
    "thread/started",
    "turn/started",
    "thread/name/updated",
    "thread/tokenUsage/updated",
    "thread/compacted",
    "account/updated",
    "account/rateLimits/updated",
    "deprecationNotice",
})


class CodexAdapter(JsonRpcAdapter):
    kind = "codex"
    display_name = "Codex"
    jsonrpc_version = None

    async def _start_turn(
        self, chat: ChatSession, prompt: str, options: TurnOptions
    ) -> None:
        if await self._ensure_process(chat, options):
            await self._request(
                chat, "initialize", {"clientInfo": CLIENT_INFO},
                timeout=self.handshake_timeout,
            )
            await self._notify(chat, "initialized", {})
            chat.extra["thread_ready"] = False

        approval_policy = options.permission_mode or self._config.codex_approval_policy
        if not chat.extra.get("thread_ready"):
            await self._open_thread(chat, options, approval_policy)

        chat.state = ChatState.RUNNING
        result = await self._request(chat, "turn/start", {
            "threadId": chat.session_id,
            "input": [{"type": "text", "text": prompt}],
            "cwd": options.work_dir,
            "approvalPolicy": approval_policy,
            "sandboxPolicy": {
                "type": "workspaceWrite",
                "writableRoots": [options.work_dir],
                "networkAccess": True,
            },
        })
        turn = (result or {}).get("turn") if isinstance(result, dict) else None
        if isinstance(turn, dict) and turn.get("id"):
            chat.extra["turn_id"] = turn["id"]

    async def _open_thread(
        self, chat: ChatSession, options: TurnOptions, approval_policy: str
    ) -> None:
        result: Any = None
        if chat.session_id:
            try:
                result = await self._request(
                    chat, "thread/resume", {"threadId": chat.session_id},
                    timeout=self.handshake_timeout,
                )
            except AgentRequestError as exc:
                logger.info("codex: cannot resume thread %s (%s); starting a new one",
                            chat.session_id, exc)
                result = None
        if result is None:
            params: dict[str, Any] = {
                "cwd": options.work_dir,
                "approvalPolicy": approval_policy,
                "sandbox": self._config.codex_sandbox,
            }
            if options.model_version:
                params["model"] = options.model_version
            result = await self._request(
                chat, "thread/start", params, timeout=self.handshake_timeout
            )
        thread = result.get("thread") if isinstance(result, dict) else None
        thread_id = thread.get("id") if isinstance(thread, dict) else None
        if thread_id and thread_id != chat.session_id:
            self._emit(chat, SessionIdAssigned(value=thread_id))
        chat.extra["thread_ready"] = True

    async def interrupt_turn(self, chat_id: str) -> None:
        chat = self._chats.get(chat_id)
        if chat is None or not chat.process_alive or not chat.session_id:
            return
        params = {"threadId": chat.session_id}
        if chat.extra.get("turn_id"):
            params["turnId"] = chat.extra["turn_id"]
        await self._notify(chat, "turn/interrupt", params)

    def _handle_process_exit(self, chat: ChatSession, payload: Any) -> None:
        chat.extra["thread_ready"] = False
        super()._handle_process_exit(chat, payload)

    # ── Inbound ──

    def _handle_server_request(
        self, chat: ChatSession, method: str, wire_id: Any, params: dict[str, Any]
    ) -> None:
        tool_name = APPROVAL_METHODS.get(method)
        if tool_name is None:
            # app-server blocks on every request; unknown ones are accepted.
            logger.info("codex: accepting unrecognised request %s (id=%s)", method, wire_id)
            self._spawn_task(
                self._respond(chat, wire_id, {"decision": "accept"}),
                f"codex-accept-{wire_id}",
            )
            return
        prefixes = None
        if tool_name == "Bash":
            command = params.get("command")
            if isinstance(command, list):
                command = " ".join(str(part) for part in command)
            command = command if isinstance(command, str) else ""
            prefixes = prefixes_of(command) or []
            display = command
        else:
            display = json.dumps(params, indent=2)
        self._register_approval(chat, ToolApproval(
            id=str(wire_id),
            name=tool_name,
            input=params,
            display_input=display,
            command_prefixes=prefixes,
        ), wire_id)

    def _handle_notification(
        self, chat: ChatSession, method: str, params: dict[str, Any]
    ) -> None:
        if method in ("item/agentMessage/delta", "item/reasoning/summaryTextDelta"):
            delta = params.get("delta")
            if isinstance(delta, str):
                self._emit(chat, TextDelta(delta=delta))
        elif method == "item/commandExecution/outputDelta":
            delta = params.get("delta")
            if isinstance(delta, str):
                self._emit(chat, BashOutput(text=delta))
        elif method == "item/started":
            self._item_started(chat, params.get("item") or {})
        elif method == "item/completed":
            self._item_completed(chat, params.get("item") or {})
        elif method == "turn/completed":
            chat.extra.pop("turn_id", None)
            chat.active_task_stack.clear()
            self._emit(chat, TurnComplete())
            self._complete_turn(chat)
        elif method == "error":
            error = params.get("error") if isinstance(params.get("error"), dict) else params
            self._emit(chat, Message(content=f"Error: {error.get('message') or 'Unknown error'}"))
        elif method not in IGNORED_NOTIFICATIONS:
            logger.debug("codex: ignoring notification %s", method)

    def _item_started(self, chat: ChatSession, item: dict[str, Any]) -> None:
        item_type = item.get("type")
        parent = chat.parent_tool_use_id
        if item_type == "commandExecution":
            command = item.get("command") or ""
            self._emit(chat, tool_message(
                "Bash", {"command": command},
                parent_tool_use_id=parent, tool_meta=ToolMeta("Bash"),
            ))
        elif item_type == "fileChange":
            for change in item.get("changes") or [item]:
                self._emit(chat, tool_message(
                    "Edit",
                    {
                        "file_path": change.get("path") or change.get("filePath") or "",
                        "old_string": "",
                        "new_string": change.get("diff") or "",
                    },
                    parent_tool_use_id=parent, tool_meta=ToolMeta("Edit"),
                ))
        elif item_type == "mcpToolCall":
            name = item.get("tool") or item.get("toolName") or "Tool"
            arguments = item.get("arguments")
            task_id = item.get("id") if is_task_call(name, arguments) else None
            self._emit(chat, tool_message(
                name, arguments, parent_tool_use_id=parent, tool_use_id=task_id,
            ))
            if task_id:
                chat.active_task_stack.append(task_id)

    def _item_completed(self, chat: ChatSession, item: dict[str, Any]) -> None:
        item_type = item.get("type")
        if item_type == "agentMessage":
            text = item.get("text")
            if text:
                self._emit(chat, Message(content=text, parent_tool_use_id=chat.parent_tool_use_id))
        elif item_type == "mcpToolCall" and item.get("id") in chat.active_task_stack:
            chat.active_task_stack.remove(item["id"])

    # ── Decisions ──

    async def _send_tool_decision(
        self,
        chat: ChatSession,
        record: ApprovalRecord,
        approved: bool,
        scope_or_options: str | None,
    ) -> None:
        await self._respond(
            chat,
            record.wire_id,
            {"decision": "accept" if approved else "decline"},
        )
