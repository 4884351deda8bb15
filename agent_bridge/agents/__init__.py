"""Protocol adapters for agent CLIs."""
from .availability import AvailabilityRegistry, ToolStatus
from .base import AgentAdapter, ChatSession, ChatState
from .claude import ClaudeAdapter
from .codex import CodexAdapter
from .copilot import CopilotAdapter
from .events import (
    AgentEvent,
    ApprovalOption,
    BashOutput,
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
    dict_to_event,
    event_to_dict,
)
from .gemini import GeminiAdapter
from .opencode import OpenCodeAdapter
from .registry import AgentRegistry, build_agent_registry

__all__ = [
    "AvailabilityRegistry",
    "ToolStatus",
    "AgentAdapter",
    "ChatSession",
    "ChatState",
    "ClaudeAdapter",
    "CodexAdapter",
    "CopilotAdapter",
    "GeminiAdapter",
    "OpenCodeAdapter",
    "AgentRegistry",
    "build_agent_registry",
    "AgentEvent",
    "ApprovalOption",
    "BashOutput",
    "Message",
    "PlanApproval",
    "Question",
    "QuestionItem",
    "QuestionOption",
    "SessionIdAssigned",
    "TextDelta",
    "ToolApproval",
    "ToolMeta",
    "TurnComplete",
    "dict_to_event",
    "event_to_dict",
]
