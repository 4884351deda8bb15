"""Gemini adapter: one ``gemini -p`` process per message, NDJSON output.

Session continuity comes from ``--resume <session id>``. The CLI handles
tool approvals itself (``--approval-mode``), so no approval events are
produced. The turn ends when the process exits.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any

from .base import AgentAdapter, ChatSession, ChatState, TurnOptions
from .events import (
    BashOutput,
    Message,
    SessionIdAssigned,
    TextDelta,
    ToolMeta,
    TurnComplete,
    edit_meta,
    tool_message,
)

logger = logging.getLogger(__name__)

RATE_LIMIT_MARKERS = ("exhausted your capacity", "Retrying after")
_QUOTA_RESET = re.compile(r"Your quota will reset after (\d+)s")

TOOL_NAMES = {
    "shell": "Bash",
    "run_shell_command": "Bash",
    "write_file": "Write",
    "edit_file": "Edit",
    "replace": "Edit",
    "read_file": "Read",
    "read_many_files": "Read",
    "search": "Grep",
    "grep": "Grep",
    "search_file_content": "Grep",
    "glob": "Glob",
    "fetch": "WebFetch",
    "web_fetch": "WebFetch",
    "google_web_search": "WebSearch",
    "list_directory": "ListDir",
}


def normalize_tool_name(name: str) -> str:
    return TOOL_NAMES.get(name.lower(), name)


class GeminiAdapter(AgentAdapter):
    kind = "gemini"
    display_name = "Gemini"

    async def _start_turn(
        self, chat: ChatSession, prompt: str, options: TurnOptions
    ) -> None:
        if chat.process_alive:
            # The old process's close event may arrive after the new spawn.
            chat.extra.setdefault("stale_pids", set()).add(chat.extra.get("pid"))
            await self._terminate(chat)
        chat.process_id = chat.chat_id
        chat.extra.update(rate_limits=0, last_tool=None, last_was_info=False)
        await self._attach_listeners(chat, [
            (f"gemini:stdout:{chat.process_id}", self._on_stdout),
            (f"gemini:stderr:{chat.process_id}", self._on_stderr),
            (f"gemini:close:{chat.process_id}", self._handle_process_exit),
        ])

        args: dict[str, Any] = {
            "serverId": chat.process_id,
            "prompt": prompt,
            "workingDir": options.work_dir,
            "sessionId": chat.session_id,
            "modelVersion": options.model_version,
            "approvalMode": options.permission_mode or self._config.gemini_approval_mode,
            "logDir": options.log_dir,
            "logId": chat.chat_id,
        }
        if self._config.agent_paths.get("gemini"):
            args["geminiPath"] = self._config.agent_paths["gemini"]
        logger.info("gemini: starting process for chat %s (session=%s)",
                    chat.chat_id, chat.session_id)
        result = await self._invoke_spawn("start_gemini_server", args)
        chat.extra["pid"] = result.get("pid") if isinstance(result, dict) else None
        chat.process_alive = True
        chat.state = ChatState.RUNNING

    async def interrupt_turn(self, chat_id: str) -> None:
        chat = self._chats.get(chat_id)
        if chat is not None and chat.process_alive:
            await self._terminate(chat)

    async def _terminate(self, chat: ChatSession) -> None:
        if chat.process_id is None:
            return
        await self._transport.invoke("stop_gemini_server", {"serverId": chat.process_id})
        chat.process_alive = False

    def _handle_process_exit(self, chat: ChatSession, payload: Any) -> None:
        pid = payload.get("pid") if isinstance(payload, dict) else None
        stale = chat.extra.get("stale_pids") or set()
        if pid is not None and pid in stale:
            stale.discard(pid)
            logger.debug("gemini: ignoring exit of previous process %s", pid)
            return
        was_running = chat.running
        chat.process_alive = False
        if was_running:
            self._emit(chat, TurnComplete())
        super()._handle_process_exit(chat, payload)

    # ── Output ──

    def _on_stderr(self, chat: ChatSession, payload: Any) -> None:
        line = payload if isinstance(payload, str) else ""
        if not line:
            return
        logger.debug("gemini stderr [%s]: %s", chat.chat_id, line)
        if not any(marker in line for marker in RATE_LIMIT_MARKERS):
            return
        count = chat.extra.get("rate_limits", 0) + 1
        chat.extra["rate_limits"] = count
        limit = self._config.rate_limit_max_retries
        if count >= limit:
            logger.warning("gemini: chat %s hit %d rate-limit retries; stopping",
                           chat.chat_id, count)
            self._emit(chat, Message(
                content="Stopped: Too many rate limit retries. "
                        "The Gemini CLI may be stuck retrying.",
                is_info=True,
            ))
            self._emit(chat, TurnComplete())
            self._spawn_task(self.stop_chat(chat.chat_id), f"gemini-stop-{chat.chat_id}")
            return
        match = _QUOTA_RESET.search(line)
        if match:
            text = f"Rate limited. Retrying in {match.group(1)}s... ({count}/{limit})"
        else:
            text = f"Rate limited. Retrying... ({count}/{limit})"
        chat.extra["last_was_info"] = True
        self._emit(chat, Message(content=text, is_info=True))

    def _on_stdout(self, chat: ChatSession, payload: Any) -> None:
        line = payload.strip() if isinstance(payload, str) else ""
        if not line:
            return
        try:
            event = json.loads(line)
        except ValueError:
            logger.debug("gemini: skipping non-JSON line: %s", line[:200])
            return
        if not isinstance(event, dict):
            return
        chat.extra["rate_limits"] = 0
        self._translate(chat, event)

    def _translate(self, chat: ChatSession, event: dict[str, Any]) -> None:
        event_type = event.get("type")

        if event_type == "init":
            if event.get("session_id"):
                self._emit(chat, SessionIdAssigned(value=event["session_id"]))

        elif event_type == "message":
            content = event.get("content")
            if event.get("role") != "assistant" or not content:
                return
            if event.get("delta") and not chat.extra.get("last_was_info"):
                self._emit(chat, TextDelta(delta=content))
            else:
                # After an info message, start a fresh message instead of appending.
                chat.extra["last_was_info"] = False
                self._emit(chat, Message(content=content))

        elif event_type == "tool_use":
            raw_name = event.get("tool_name")
            if not raw_name:
                return
            name = normalize_tool_name(raw_name)
            params = event.get("parameters") or {}
            chat.extra["last_tool"] = name
            if name in ("Edit", "Write"):
                old = params.get("old_string") if isinstance(params.get("old_string"), str) else ""
                new = params.get("new_string")
                if not isinstance(new, str):
                    new = params.get("content") if isinstance(params.get("content"), str) else ""
                meta = edit_meta(name, old, new)
            else:
                meta = ToolMeta(name)
            self._emit(chat, tool_message(name, params, tool_meta=meta))

        elif event_type == "tool_result":
            last_tool = chat.extra.get("last_tool")
            chat.extra["last_tool"] = None
            if last_tool == "Read":
                return
            if event.get("status") == "success" and event.get("output"):
                self._emit(chat, BashOutput(text=str(event["output"])))
            elif event.get("status") == "error" and event.get("error"):
                error = event["error"]
                if isinstance(error, dict):
                    error = error.get("message") or json.dumps(error)
                self._emit(chat, Message(content=f"Error: {error}"))

        elif event_type == "error":
            message = event.get("message")
            if message:
                logger.error("gemini error [%s]: %s", chat.chat_id, message)
                self._emit(chat, Message(content=f"Error: {message}"))

        elif event_type == "result":
            if event.get("status") == "error" and isinstance(event.get("error"), dict):
                self._emit(chat, Message(
                    content=f"Error: {event['error'].get('message') or 'unknown error'}"
                ))

        else:
            logger.debug("gemini: ignoring event %s", event_type)
