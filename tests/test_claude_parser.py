"""Tests for the host-side Claude stream-json parser."""
from __future__ import annotations

import json

from agent_bridge.agents.events import (
    Message,
    PlanApproval,
    Question,
    SessionIdAssigned,
    TextDelta,
    ToolApproval,
    TurnComplete,
)
from agent_bridge.host.claude_parser import ClaudeStreamParser


def _line(data) -> str:
    return json.dumps(data)


def test_first_session_id_is_reported_once():
    parser = ClaudeStreamParser()
    events = parser.parse_line(_line({"type": "system", "session_id": "sess-1"}))
    assert events == [SessionIdAssigned(value="sess-1")]
    assert parser.parse_line(_line({"type": "system", "session_id": "sess-1"})) == []
    assert parser.session_id == "sess-1"


def test_resumed_session_id_is_not_reported_again():
    parser = ClaudeStreamParser("known")
    assert parser.parse_line(_line({"type": "system", "session_id": "known"})) == []


def test_non_json_and_blank_lines_are_skipped():
    parser = ClaudeStreamParser()
    assert parser.parse_line("") == []
    assert parser.parse_line("Loaded credentials...") == []
    assert parser.parse_line("[1, 2]") == []


def test_assistant_text_thinking_and_tool_use():
    parser = ClaudeStreamParser("s")
    events = parser.parse_line(_line({
        "type": "assistant",
        "parent_tool_use_id": "task-1",
        "message": {"content": [
            {"type": "thinking", "thinking": "Let me look"},
            {"type": "text", "text": "  Done.  "},
            {"type": "text", "text": "   "},
            {"type": "tool_use", "id": "tu-1", "name": "Edit",
             "input": {"file_path": "a.py", "old_string": "a", "new_string": "b\nc"}},
            {"type": "tool_use", "id": "tu-2", "name": "AskUserQuestion", "input": {}},
        ]},
    }))

    assert len(events) == 3
    thinking, text, edit = events
    assert thinking.content == "Let me look"
    assert thinking.tool_meta.tool_name == "Thinking"
    assert thinking.parent_tool_use_id == "task-1"
    assert text == Message(content="Done.", parent_tool_use_id="task-1")
    assert edit.content.startswith("[Edit]\n")
    assert edit.tool_meta.lines_added == 2
    assert edit.tool_meta.lines_removed == 1
    assert edit.tool_use_id is None


def test_task_tool_use_carries_its_id():
    parser = ClaudeStreamParser("s")
    [event] = parser.parse_line(_line({
        "type": "assistant",
        "message": {"content": [
            {"type": "tool_use", "id": "task-9", "name": "Task",
             "input": {"subagent_type": "explore"}},
        ]},
    }))
    assert event.tool_use_id == "task-9"


def test_agent_tool_and_subagent_input_carry_their_id():
    parser = ClaudeStreamParser("s")
    agent, custom, plain = parser.parse_line(_line({
        "type": "assistant",
        "message": {"content": [
            {"type": "tool_use", "id": "ag-1", "name": "Agent",
             "input": {"prompt": "review"}},
            {"type": "tool_use", "id": "ag-2", "name": "Delegate",
             "input": {"subagent_type": "reviewer", "prompt": "check"}},
            {"type": "tool_use", "id": "tu-3", "name": "Read",
             "input": {"file_path": "a.py"}},
        ]},
    }))
    assert agent.tool_use_id == "ag-1"
    assert custom.tool_use_id == "ag-2"
    assert plain.tool_use_id is None


def test_stream_events_become_text_deltas():
    parser = ClaudeStreamParser("s")
    assert parser.parse_line(_line({
        "type": "stream_event",
        "event": {"type": "content_block_delta", "delta": {"text": "Hel"}},
    })) == [TextDelta(delta="Hel")]
    assert parser.parse_line(_line({
        "type": "stream_event",
        "event": {"type": "content_block_start",
                  "content_block": {"type": "tool_use", "name": "Bash"}},
    })) == [TextDelta(delta="\n[Bash] ...")]


def test_result_completes_the_turn():
    parser = ClaudeStreamParser("s")
    assert parser.parse_line(_line({"type": "result", "subtype": "success"})) == [TurnComplete()]


def test_bash_permission_request():
    parser = ClaudeStreamParser("s")
    [event] = parser.parse_line(_line({
        "type": "control_request",
        "request_id": "req-1",
        "request": {
            "subtype": "can_use_tool",
            "tool_name": "Bash",
            "input": {"command": "git status && npm test"},
        },
    }))
    assert isinstance(event, ToolApproval)
    assert event.id == "req-1"
    assert event.command_prefixes == ["git status", "npm test"]
    assert '"command"' in event.display_input


def test_plan_and_question_requests():
    parser = ClaudeStreamParser("s")
    [plan] = parser.parse_line(_line({
        "type": "control_request",
        "request_id": 7,
        "request": {"subtype": "can_use_tool", "tool_name": "ExitPlanMode",
                    "input": {"plan": "1. do it"}},
    }))
    assert plan == PlanApproval(id="7", plan_content="1. do it")

    [question] = parser.parse_line(_line({
        "type": "control_request",
        "request_id": "q1",
        "request": {"subtype": "can_use_tool", "tool_name": "AskUserQuestion",
                    "input": {"questions": [{
                        "question": "Which db?", "header": "DB",
                        "options": [{"label": "pg", "description": "Postgres"}],
                        "multiSelect": True,
                    }]}},
    }))
    assert isinstance(question, Question)
    item = question.questions[0]
    assert item.question == "Which db?"
    assert item.options[0].label == "pg"
    assert item.multi_select is True


def test_other_control_requests_are_ignored():
    parser = ClaudeStreamParser("s")
    assert parser.parse_line(_line({
        "type": "control_request", "request_id": "x",
        "request": {"subtype": "hook_callback"},
    })) == []
