"""Claude ``stream-json`` output parser.

Runs on the host next to the Claude process and turns each stdout line
into canonical events, so the Claude adapter receives pre-structured
events on ``agent:event:<chat>`` and does no parsing of its own.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from agent_bridge.agents.events import (
    AgentEvent,
    Message,
    PlanApproval,
    Question,
    QuestionItem,
    QuestionOption,
    SessionIdAssigned,
    TextDelta,
    ToolApproval,
    ToolMeta,
    TurnComplete,
    edit_meta,
    is_task_call,
    tool_message,
)
from agent_bridge.approval import prefixes_for_tool_input

logger = logging.getLogger(__name__)

# Rendered through question/planApproval events instead of tool messages.
INTERACTIVE_TOOLS = frozenset({"AskUserQuestion", "ExitPlanMode"})


class ClaudeStreamParser:
    """Stateful line parser; remembers the session id it has reported."""

    def __init__(self, session_id: str | None = None) -> None:
        self.session_id = session_id

    def parse_line(self, line: str) -> list[AgentEvent]:
        line = line.strip()
        if not line:
            return []
        try:
            data = json.loads(line)
        except ValueError:
            logger.debug("Skipping non-JSON claude line: %s", line[:200])
            return []
        if not isinstance(data, dict):
            return []

        events: list[AgentEvent] = []
        sid = data.get("session_id")
        if isinstance(sid, str) and sid and self.session_id is None:
            self.session_id = sid
            events.append(SessionIdAssigned(value=sid))
        events.extend(self._translate(data))
        return events

    def _translate(self, data: dict[str, Any]) -> list[AgentEvent]:
        event_type = data.get("type")
        parent = data.get("parent_tool_use_id")
        if event_type == "stream_event" and isinstance(data.get("event"), dict):
            data = data["event"]
            event_type = data.get("type")

        if event_type == "assistant":
            return self._assistant_blocks(data.get("message") or {}, parent)
        if event_type == "content_block_start":
            block = data.get("content_block") or {}
            if block.get("type") == "tool_use" and block.get("name"):
                return [TextDelta(delta=f"\n[{block['name']}] ...")]
            return []
        if event_type == "content_block_delta":
            text = (data.get("delta") or {}).get("text")
            return [TextDelta(delta=text)] if isinstance(text, str) else []
        if event_type == "result":
            return [TurnComplete()]
        if event_type == "control_request":
            return self._control_request(data)
        return []

    def _assistant_blocks(
        self, message: dict[str, Any], parent: str | None
    ) -> list[AgentEvent]:
        events: list[AgentEvent] = []
        for block in message.get("content") or []:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "thinking" and block.get("thinking"):
                events.append(Message(
                    content=block["thinking"],
                    tool_meta=ToolMeta("Thinking", 0, 0),
                    parent_tool_use_id=parent,
                ))
            elif block_type == "text":
                text = (block.get("text") or "").strip()
                if text:
                    events.append(Message(content=text, parent_tool_use_id=parent))
            elif block_type == "tool_use":
                name = block.get("name") or "Unknown"
                if name in INTERACTIVE_TOOLS:
                    continue
                tool_input = block.get("input") or {}
                meta = None
                if name == "Edit" and isinstance(tool_input, dict):
                    meta = edit_meta(
                        name,
                        tool_input.get("old_string"),
                        tool_input.get("new_string"),
                    )
                events.append(tool_message(
                    name,
                    tool_input,
                    parent_tool_use_id=parent,
                    tool_use_id=block.get("id") if is_task_call(name, tool_input) else None,
                    tool_meta=meta,
                ))
        return events

    def _control_request(self, data: dict[str, Any]) -> list[AgentEvent]:
        request_id = data.get("request_id")
        request = data.get("request") or {}
        if request_id is None or request.get("subtype") != "can_use_tool":
            return []
        request_id = str(request_id)
        tool_name = request.get("tool_name") or "Unknown"
        tool_input = request.get("input") or {}
        if not isinstance(tool_input, dict):
            tool_input = {}

        if tool_name == "AskUserQuestion":
            questions = tool_input.get("questions")
            if not isinstance(questions, list):
                logger.warning("AskUserQuestion without questions: %s", request_id)
                return []
            return [Question(id=request_id, questions=[
                QuestionItem(
                    question=q.get("question", ""),
                    header=q.get("header", ""),
                    options=[
                        QuestionOption(o.get("label", ""), o.get("description", ""))
                        for o in q.get("options") or []
                        if isinstance(o, dict)
                    ],
                    multi_select=bool(q.get("multiSelect")),
                )
                for q in questions
                if isinstance(q, dict)
            ])]
        if tool_name == "ExitPlanMode":
            return [PlanApproval(id=request_id, plan_content=tool_input.get("plan") or "")]

        return [ToolApproval(
            id=request_id,
            name=tool_name,
            input=tool_input,
            display_input=json.dumps(tool_input, indent=2) if tool_input else "",
            command_prefixes=prefixes_for_tool_input(tool_input) if tool_name == "Bash" else None,
        )]
