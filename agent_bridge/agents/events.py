"""Canonical agent events.

Every adapter translates its agent's wire protocol into these
dataclasses. ``kind`` is the discriminator; ``event_to_dict`` and
``dict_to_event`` convert to and from the camelCase wire form used on
host event channels (``{"kind": "toolApproval", "displayInput": ...}``).
"""
from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field
from typing import Any

from agent_bridge.errors import ProtocolError


@dataclass
class ToolMeta:
    tool_name: str = ""
    lines_added: int | None = None
    lines_removed: int | None = None


@dataclass
class ApprovalOption:
    """A named choice offered by the agent (``allow_once``, ``reject_always``...)."""
    id: str = ""
    name: str = ""
    kind: str = ""


@dataclass
class QuestionOption:
    label: str = ""
    description: str = ""


@dataclass
class QuestionItem:
    question: str = ""
    header: str = ""
    options: list[QuestionOption] = field(default_factory=list)
    multi_select: bool = False


@dataclass
class AgentEvent:
    """Base canonical event."""
    kind: str = ""


@dataclass
class TextDelta(AgentEvent):
    kind: str = "text"
    delta: str = ""


@dataclass
class Message(AgentEvent):
    kind: str = "message"
    content: str = ""
    tool_meta: ToolMeta | None = None
    parent_tool_use_id: str | None = None
    tool_use_id: str | None = None
    is_info: bool | None = None


@dataclass
class ToolApproval(AgentEvent):
    kind: str = "toolApproval"
    id: str = ""
    name: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    display_input: str = ""
    command_prefixes: list[str] | None = None
    options: list[ApprovalOption] | None = None
    auto_approved: bool = False
    is_processed: bool = False


@dataclass
class PlanApproval(AgentEvent):
    kind: str = "planApproval"
    id: str = ""
    plan_content: str = ""
    is_processed: bool = False


@dataclass
class Question(AgentEvent):
    kind: str = "question"
    id: str = ""
    questions: list[QuestionItem] = field(default_factory=list)


@dataclass
class SessionIdAssigned(AgentEvent):
    kind: str = "sessionId"
    value: str = ""


@dataclass
class BashOutput(AgentEvent):
    kind: str = "bashOutput"
    text: str = ""


@dataclass
class TurnComplete(AgentEvent):
    kind: str = "turnComplete"


_EVENT_MAP: dict[str, type[AgentEvent]] = {
    "text": TextDelta,
    "message": Message,
    "toolApproval": ToolApproval,
    "planApproval": PlanApproval,
    "question": Question,
    "sessionId": SessionIdAssigned,
    "bashOutput": BashOutput,
    "turnComplete": TurnComplete,
}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _to_wire(value: Any) -> Any:
    # Only dataclass field names are camelCased; tool input dicts pass through.
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        out: dict[str, Any] = {}
        for f in dataclasses.fields(value):
            val = getattr(value, f.name)
            if val is not None:
                out[_camel(f.name)] = _to_wire(val)
        return out
    if isinstance(value, list):
        return [_to_wire(v) for v in value]
    return value


def event_to_dict(event: AgentEvent) -> dict[str, Any]:
    """Convert an event to its camelCase wire dict, dropping None fields."""
    return _to_wire(event)


def _from_wire(cls: type, data: Any) -> Any:
    if not isinstance(data, dict):
        return cls()
    kwargs = {}
    for f in dataclasses.fields(cls):
        key = _camel(f.name)
        if key in data:
            kwargs[f.name] = data[key]
        elif f.name in data:
            kwargs[f.name] = data[f.name]
    return cls(**kwargs)


def _question_item(data: Any) -> QuestionItem:
    item = _from_wire(QuestionItem, data)
    item.options = [
        _from_wire(QuestionOption, opt)
        for opt in (item.options or [])
    ]
    item.multi_select = bool(item.multi_select)
    return item


def dict_to_event(data: dict[str, Any]) -> AgentEvent:
    """Parse a wire dict into its event dataclass.

    Unknown keys are ignored; an unknown ``kind`` raises ProtocolError.
    """
    if not isinstance(data, dict):
        raise ProtocolError("Agent event payload is not an object", data)
    kind = data.get("kind", "")
    cls = _EVENT_MAP.get(kind)
    if cls is None:
        raise ProtocolError(f"Unknown agent event kind: {kind!r}", data)
    event = _from_wire(cls, data)
    if isinstance(event, Message) and event.tool_meta is not None:
        event.tool_meta = _from_wire(ToolMeta, event.tool_meta)
    elif isinstance(event, ToolApproval):
        if event.options is not None:
            event.options = [_from_wire(ApprovalOption, o) for o in event.options]
        if not isinstance(event.input, dict):
            event.input = {}
    elif isinstance(event, Question):
        event.questions = [_question_item(q) for q in event.questions or []]
    return event


def tool_message(
    tool_name: str,
    tool_input: Any = None,
    *,
    parent_tool_use_id: str | None = None,
    tool_use_id: str | None = None,
    tool_meta: ToolMeta | None = None,
) -> Message:
    """The ``[Tool]\\n<pretty input>`` message every adapter emits for a tool call."""
    if tool_input in (None, {}, ""):
        content = f"[{tool_name}]"
    elif isinstance(tool_input, str):
        content = f"[{tool_name}]\n{tool_input}"
    else:
        content = f"[{tool_name}]\n{json.dumps(tool_input, indent=2)}"
    return Message(
        content=content,
        tool_meta=tool_meta,
        parent_tool_use_id=parent_tool_use_id,
        tool_use_id=tool_use_id,
    )


def edit_meta(tool_name: str, old: str | None, new: str | None) -> ToolMeta:
    """Line counts for an edit-style tool call."""
    return ToolMeta(
        tool_name=tool_name,
        lines_added=len(new.split("\n")) if new else 0,
        lines_removed=len(old.split("\n")) if old else 0,
    )


# Tool names that spawn a nested agent across Claude releases.
TASK_TOOL_NAMES = frozenset({"Task", "Agent"})


def is_task_call(tool_name: str, tool_input: Any) -> bool:
    """Whether a tool call starts a nested subagent."""
    if tool_name in TASK_TOOL_NAMES:
        return True
    return isinstance(tool_input, dict) and (
        "subagent_type" in tool_input or "agent_type" in tool_input
    )
