"""Claude adapter: stream-json CLI driven through the host's ``agent`` channel.

The host parses Claude's stdout and publishes canonical event dicts on
``agent:event:<chat>``. Follow-up messages and control responses are
written to the same process via ``agent_stdin``.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from agent_bridge.errors import ProtocolError

from .base import AgentAdapter, ApprovalRecord, ChatSession, ChatState, TurnOptions
from .events import (
    PlanApproval,
    Question,
    ToolApproval,
    TurnComplete,
    dict_to_event,
)

logger = logging.getLogger(__name__)


def control_response(request_id: str, response: dict[str, Any]) -> str:
    return json.dumps({
        "type": "control_response",
        "response": {
            "subtype": "success",
            "request_id": request_id,
            "response": response,
        },
    })


def allow(updated_input: dict[str, Any]) -> dict[str, Any]:
    return {"behavior": "allow", "updatedInput": updated_input}


def deny(message: str) -> dict[str, Any]:
    return {"behavior": "deny", "message": message}


class ClaudeAdapter(AgentAdapter):
    kind = "claude"
    display_name = "Claude"

    async def _start_turn(
        self, chat: ChatSession, prompt: str, options: TurnOptions
    ) -> None:
        chat.process_id = chat.chat_id
        await self._attach_listeners(chat, [
            (f"agent:event:{chat.process_id}", self._on_event),
            (f"agent:stderr:{chat.process_id}", self._on_stderr),
            (f"agent:close:{chat.process_id}", self._handle_process_exit),
        ])
        args: dict[str, Any] = {
            "conversationId": chat.process_id,
            "prompt": prompt,
            "workingDir": options.work_dir,
            "sessionId": chat.session_id,
            "modelVersion": options.model_version,
            "permissionMode": options.permission_mode or self._config.default_permission_mode,
            "logDir": options.log_dir,
            "logId": chat.chat_id,
        }
        if self._config.agent_paths.get("claude"):
            args["agentPath"] = self._config.agent_paths["claude"]
        await self._invoke_spawn("send_message", args)
        chat.process_alive = True
        chat.state = ChatState.RUNNING

    async def interrupt_turn(self, chat_id: str) -> None:
        chat = self._chats.get(chat_id)
        if chat is None or not chat.process_alive:
            return
        await self._stdin(chat, json.dumps({
            "type": "control_request",
            "request_id": f"interrupt-{self._next_request_id()}",
            "request": {"subtype": "interrupt"},
        }))

    async def _terminate(self, chat: ChatSession) -> None:
        if chat.process_id is None:
            return
        await self._transport.invoke("stop_agent", {"conversationId": chat.process_id})
        chat.process_alive = False

    async def _stdin(self, chat: ChatSession, data: str) -> None:
        await self._transport.invoke(
            "agent_stdin", {"conversationId": chat.process_id, "data": data}
        )

    # ── Inbound ──

    def _on_event(self, chat: ChatSession, payload: Any) -> None:
        event = dict_to_event(payload)
        if isinstance(event, (ToolApproval, PlanApproval, Question)):
            self._register_approval(chat, event, event.id)
        elif isinstance(event, TurnComplete):
            self._emit(chat, event)
            self._complete_turn(chat)
        else:
            self._emit(chat, event)

    def _on_stderr(self, chat: ChatSession, payload: Any) -> None:
        if not isinstance(payload, str):
            raise ProtocolError("stderr payload is not a line", payload)
        if payload.strip():
            logger.debug("claude stderr [%s]: %s", chat.chat_id, payload)

    # ── Decisions ──

    async def _send_tool_decision(
        self,
        chat: ChatSession,
        record: ApprovalRecord,
        approved: bool,
        scope_or_options: str | None,
    ) -> None:
        event = record.event
        response = allow(event.input) if approved else deny("User denied this tool use")
        await self._stdin(chat, control_response(str(record.wire_id), response))

    async def _send_plan_decision(
        self,
        chat: ChatSession,
        record: ApprovalRecord,
        approved: bool,
        feedback: str | None,
    ) -> None:
        if approved:
            response = allow({"plan": record.event.plan_content})
        else:
            response = deny(feedback or "User rejected the plan")
        await self._stdin(chat, control_response(str(record.wire_id), response))

    async def _send_question_answer(
        self, chat: ChatSession, record: ApprovalRecord, answers: dict[str, str]
    ) -> None:
        questions = [
            {
                "question": item.question,
                "header": item.header,
                "options": [
                    {"label": o.label, "description": o.description} for o in item.options
                ],
                "multiSelect": item.multi_select,
            }
            for item in record.event.questions
        ]
        response = allow({"questions": questions, "answers": answers})
        await self._stdin(chat, control_response(str(record.wire_id), response))
