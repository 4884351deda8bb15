"""Tests for the adapter base contract, Claude, Gemini and the registry."""
from __future__ import annotations

import asyncio
import itertools
import json

import pytest

from agent_bridge.agents import build_agent_registry
from agent_bridge.agents.claude import ClaudeAdapter
from agent_bridge.agents.events import (
    BashOutput,
    Message,
    SessionIdAssigned,
    TextDelta,
    TurnComplete,
)
from agent_bridge.agents.gemini import GeminiAdapter
from agent_bridge.config import BridgeConfig
from agent_bridge.errors import ApprovalConflictError, InvokeError, SpawnError
from agent_bridge.transport.base import Transport


class FakeTransport(Transport):
    """Records host commands; tests push host events by name."""

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.failures: dict[str, Exception] = {}
        self.listeners: dict[str, object] = {}
        self._pids = itertools.count(101)

    async def invoke(self, command, args=None):
        self.calls.append((command, args))
        if command in self.failures:
            raise self.failures[command]
        if command.startswith("start_") or command == "send_message":
            return {"pid": next(self._pids)}
        return None

    async def listen(self, pattern, callback):
        self.listeners[pattern] = callback
        return lambda: self.listeners.pop(pattern, None)

    def push(self, event_type, payload):
        self.listeners[event_type](event_type, payload)

    def commands(self) -> list[str]:
        return [name for name, _ in self.calls]

    def stdin_frames(self) -> list[dict]:
        return [json.loads(args["data"]) for name, args in self.calls if name == "agent_stdin"]


async def _eventually(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def _attach(adapter, chat_id="c1"):
    events, done = [], []
    adapter.on_event(chat_id, events.append)
    adapter.on_done(chat_id, lambda: done.append(True))
    return events, done


class TestClaudeAdapter:

    @pytest.mark.asyncio
    async def test_init_prompt_only_until_session_assigned(self):
        transport = FakeTransport()
        adapter = ClaudeAdapter(transport)
        _attach(adapter)

        await adapter.send_message("c1", "hi", "/w", init_prompt="Rules")
        command, args = transport.calls[0]
        assert command == "send_message"
        assert args["prompt"] == "Rules\n\nhi"
        assert args["conversationId"] == "c1"
        assert args["permissionMode"] == "default"
        assert args["sessionId"] is None

        # Still no session id: the prompt is prefixed again.
        await adapter.send_message("c1", "retry", "/w", init_prompt="Rules")
        assert transport.calls[-1][1]["prompt"] == "Rules\n\nretry"

        transport.push("agent:event:c1", {"kind": "sessionId", "value": "s-1"})
        assert adapter.get_session_id("c1") == "s-1"
        await adapter.send_message("c1", "again", "/w", init_prompt="Rules")
        assert transport.calls[-1][1]["prompt"] == "again"
        assert transport.calls[-1][1]["sessionId"] == "s-1"

    @pytest.mark.asyncio
    async def test_restored_session_skips_init_prompt(self):
        transport = FakeTransport()
        adapter = ClaudeAdapter(transport)
        adapter.set_session_id("c1", "persisted")
        await adapter.send_message("c1", "hi", "/w", init_prompt="Rules",
                                   permission_mode="plan")
        args = transport.calls[0][1]
        assert args["prompt"] == "hi"
        assert args["permissionMode"] == "plan"

    @pytest.mark.asyncio
    async def test_events_forwarded_and_turn_complete_fires_done(self):
        transport = FakeTransport()
        adapter = ClaudeAdapter(transport)
        events, done = _attach(adapter)
        await adapter.send_message("c1", "hi", "/w")
        assert adapter.is_running("c1")

        transport.push("agent:event:c1", {"kind": "text", "delta": "Hel"})
        transport.push("agent:event:c1", {"kind": "message", "content": "Hello",
                                          "toolMeta": {"toolName": "Thinking"}})
        transport.push("agent:event:c1", {"kind": "bogus"})
        transport.push("agent:event:c1", {"kind": "turnComplete"})

        assert events[0] == TextDelta(delta="Hel")
        assert events[1].tool_meta.tool_name == "Thinking"
        assert events[2] == TurnComplete()
        assert len(events) == 3
        assert done == [True]
        assert not adapter.is_running("c1")

    @pytest.mark.asyncio
    async def test_tool_approval_control_responses(self):
        transport = FakeTransport()
        adapter = ClaudeAdapter(transport)
        events, _ = _attach(adapter)
        await adapter.send_message("c1", "hi", "/w")

        for request_id in ("r1", "r2"):
            transport.push("agent:event:c1", {
                "kind": "toolApproval", "id": request_id, "name": "Bash",
                "input": {"command": "rm -rf build"}, "displayInput": "rm -rf build",
                "commandPrefixes": ["rm"],
            })
        assert events[0].command_prefixes == ["rm"]
        assert events[0].auto_approved is False

        await adapter.send_tool_approval("c1", "r1", True)
        await adapter.send_tool_approval("c1", "r2", False)
        allowed, denied = transport.stdin_frames()
        assert allowed == {
            "type": "control_response",
            "response": {
                "subtype": "success",
                "request_id": "r1",
                "response": {"behavior": "allow", "updatedInput": {"command": "rm -rf build"}},
            },
        }
        assert denied["response"]["response"] == {
            "behavior": "deny", "message": "User denied this tool use",
        }

        with pytest.raises(ApprovalConflictError):
            await adapter.send_tool_approval("c1", "r1", True)
        assert len(transport.stdin_frames()) == 2

    @pytest.mark.asyncio
    async def test_prefix_scope_approves_matching_commands(self):
        transport = FakeTransport()
        adapter = ClaudeAdapter(transport)
        events, _ = _attach(adapter)
        await adapter.send_message("c1", "hi", "/w")

        def ask(request_id, command, prefixes):
            transport.push("agent:event:c1", {
                "kind": "toolApproval", "id": request_id, "name": "Bash",
                "input": {"command": command}, "commandPrefixes": prefixes,
            })
            return events[-1]

        assert ask("a", "npm install", ["npm install"]).auto_approved is False
        await adapter.send_tool_approval("c1", "a", True, "prefix")
        assert ask("b", "git status && npm install", ["git status", "npm install"]).auto_approved is True
        assert ask("c", "npm publish", ["npm publish"]).auto_approved is False

    @pytest.mark.asyncio
    async def test_safe_command_auto_approved(self):
        transport = FakeTransport()
        adapter = ClaudeAdapter(transport)
        events, _ = _attach(adapter)
        await adapter.send_message("c1", "hi", "/w")

        transport.push("agent:event:c1", {
            "kind": "toolApproval", "id": "s1", "name": "Bash",
            "input": {"command": "git log -1"}, "commandPrefixes": ["git log"],
        })
        assert events[-1].auto_approved is True
        assert events[-1].is_processed is True
        await _eventually(lambda: transport.stdin_frames())
        assert transport.stdin_frames()[0]["response"]["request_id"] == "s1"

    @pytest.mark.asyncio
    async def test_plan_rejection_carries_feedback(self):
        transport = FakeTransport()
        adapter = ClaudeAdapter(transport)
        _attach(adapter)
        await adapter.send_message("c1", "hi", "/w")

        transport.push("agent:event:c1", {"kind": "planApproval", "id": "p1", "planContent": "1. go"})
        transport.push("agent:event:c1", {"kind": "planApproval", "id": "p2", "planContent": "2. go"})
        await adapter.send_tool_approval("c1", "p1", False, "add tests first")
        await adapter.send_tool_approval("c1", "p2", True)

        rejected, accepted = transport.stdin_frames()
        assert rejected["response"]["response"] == {"behavior": "deny", "message": "add tests first"}
        assert accepted["response"]["response"] == {
            "behavior": "allow", "updatedInput": {"plan": "2. go"},
        }

    @pytest.mark.asyncio
    async def test_question_answers(self):
        transport = FakeTransport()
        adapter = ClaudeAdapter(transport)
        events, _ = _attach(adapter)
        await adapter.send_message("c1", "hi", "/w")

        transport.push("agent:event:c1", {
            "kind": "question", "id": "q1",
            "questions": [{
                "question": "Which db?", "header": "DB",
                "options": [{"label": "pg", "description": "Postgres"}],
                "multiSelect": False,
            }],
        })
        assert events[-1].questions[0].options[0].label == "pg"

        with pytest.raises(ApprovalConflictError):
            await adapter.send_tool_approval("c1", "q1", True)

        await adapter.answer_question("c1", "q1", {"Which db?": "pg"})
        [frame] = transport.stdin_frames()
        assert frame["response"]["request_id"] == "q1"
        assert frame["response"]["response"] == {
            "behavior": "allow",
            "updatedInput": {
                "questions": [{
                    "question": "Which db?", "header": "DB",
                    "options": [{"label": "pg", "description": "Postgres"}],
                    "multiSelect": False,
                }],
                "answers": {"Which db?": "pg"},
            },
        }
        with pytest.raises(ApprovalConflictError):
            await adapter.answer_question("c1", "q1", {"Which db?": "pg"})

    @pytest.mark.asyncio
    async def test_answer_question_rejects_tool_requests(self):
        transport = FakeTransport()
        adapter = ClaudeAdapter(transport)
        _attach(adapter)
        await adapter.send_message("c1", "hi", "/w")
        transport.push("agent:event:c1", {
            "kind": "toolApproval", "id": "t1", "name": "Write", "input": {"file_path": "x"},
        })
        with pytest.raises(ApprovalConflictError):
            await adapter.answer_question("c1", "t1", {})
        await adapter.send_tool_approval("c1", "t1", True)

    @pytest.mark.asyncio
    async def test_stop_chat_interrupts_then_stops(self):
        transport = FakeTransport()
        adapter = ClaudeAdapter(transport)
        _, done = _attach(adapter)
        await adapter.send_message("c1", "hi", "/w")

        await adapter.stop_chat("c1")

        assert transport.commands()[-2:] == ["agent_stdin", "stop_agent"]
        assert transport.stdin_frames()[0]["request"] == {"subtype": "interrupt"}
        assert done == [True]
        assert not adapter.is_running("c1")

    @pytest.mark.asyncio
    async def test_process_exit_fires_done_once(self):
        transport = FakeTransport()
        adapter = ClaudeAdapter(transport)
        _, done = _attach(adapter)
        await adapter.send_message("c1", "hi", "/w")

        transport.push("agent:event:c1", {"kind": "turnComplete"})
        transport.push("agent:close:c1", {"code": 0, "pid": 101})
        assert done == [True]

    @pytest.mark.asyncio
    async def test_missing_cli(self):
        transport = FakeTransport()
        transport.failures["send_message"] = InvokeError(
            "send_message", "Failed to spawn claude: [Errno 2] No such file or directory: 'claude'"
        )
        adapter = ClaudeAdapter(transport, config=BridgeConfig(agent_paths={"claude": "claude-beta"}))
        with pytest.raises(SpawnError, match="Claude CLI not found. Make sure 'claude-beta'"):
            await adapter.send_message("c1", "hi", "/w")
        assert transport.calls[0][1]["agentPath"] == "claude-beta"

    @pytest.mark.asyncio
    async def test_failing_event_callback_does_not_block_others(self):
        transport = FakeTransport()
        adapter = ClaudeAdapter(transport)

        def broken(event):
            raise RuntimeError("boom")

        adapter.on_event("c1", broken)
        events, _ = _attach(adapter)
        await adapter.send_message("c1", "hi", "/w")
        transport.push("agent:event:c1", {"kind": "text", "delta": "x"})
        assert events == [TextDelta(delta="x")]

    @pytest.mark.asyncio
    async def test_remove_chat_unsubscribes(self):
        transport = FakeTransport()
        adapter = ClaudeAdapter(transport)
        await adapter.send_message("c1", "hi", "/w")
        assert "agent:event:c1" in transport.listeners

        await adapter.remove_chat("c1")
        assert transport.listeners == {}
        assert adapter.chat_ids() == []
        assert "stop_agent" in transport.commands()


class TestGeminiAdapter:

    @pytest.mark.asyncio
    async def test_spawn_arguments(self):
        transport = FakeTransport()
        adapter = GeminiAdapter(transport)
        await adapter.send_message("c1", "hi", "/w", model_version="gemini-2.5-pro",
                                   init_prompt="Rules")
        command, args = transport.calls[0]
        assert command == "start_gemini_server"
        assert args["serverId"] == "c1"
        assert args["prompt"] == "Rules\n\nhi"
        assert args["approvalMode"] == "yolo"
        assert args["modelVersion"] == "gemini-2.5-pro"

    @pytest.mark.asyncio
    async def test_ndjson_translation(self):
        transport = FakeTransport()
        adapter = GeminiAdapter(transport)
        events, _ = _attach(adapter)
        await adapter.send_message("c1", "hi", "/w")

        for line in (
            {"type": "init", "session_id": "g-1"},
            {"type": "message", "role": "user", "content": "hi"},
            {"type": "message", "role": "assistant", "content": "Sure", "delta": True},
            {"type": "tool_use", "tool_name": "replace",
             "parameters": {"file_path": "a.py", "old_string": "a", "new_string": "b\nc"}},
            {"type": "tool_result", "status": "success", "output": "ok"},
            {"type": "tool_use", "tool_name": "read_file", "parameters": {"path": "a.py"}},
            {"type": "tool_result", "status": "success", "output": "contents"},
            {"type": "tool_use", "tool_name": "run_shell_command", "parameters": {"command": "ls"}},
            {"type": "tool_result", "status": "error", "error": {"message": "denied"}},
            {"type": "error", "message": "model overloaded"},
        ):
            transport.push("gemini:stdout:c1", json.dumps(line))
        transport.push("gemini:stdout:c1", "Loaded cached credentials.")

        assert events[0] == SessionIdAssigned(value="g-1")
        assert adapter.get_session_id("c1") == "g-1"
        assert events[1] == TextDelta(delta="Sure")
        edit = events[2]
        assert edit.content.startswith("[Edit]\n")
        assert (edit.tool_meta.lines_added, edit.tool_meta.lines_removed) == (2, 1)
        assert events[3] == BashOutput(text="ok")
        assert events[4].tool_meta.tool_name == "Read"
        assert events[5].tool_meta.tool_name == "Bash"
        assert events[6] == Message(content="Error: denied")
        assert events[7] == Message(content="Error: model overloaded")
        assert len(events) == 8

    @pytest.mark.asyncio
    async def test_process_exit_ends_the_turn(self):
        transport = FakeTransport()
        adapter = GeminiAdapter(transport)
        events, done = _attach(adapter)
        await adapter.send_message("c1", "hi", "/w")

        transport.push("gemini:close:c1", {"code": 0, "pid": 101})
        assert events == [TurnComplete()]
        assert done == [True]
        assert not adapter.is_running("c1")

        transport.push("gemini:close:c1", {"code": 0, "pid": 101})
        assert done == [True]

    @pytest.mark.asyncio
    async def test_late_exit_of_replaced_process_is_ignored(self):
        transport = FakeTransport()
        adapter = GeminiAdapter(transport)
        _, done = _attach(adapter)
        await adapter.send_message("c1", "one", "/w")
        await adapter.send_message("c1", "two", "/w")

        assert transport.commands() == [
            "start_gemini_server", "stop_gemini_server", "start_gemini_server",
        ]
        transport.push("gemini:close:c1", {"code": -15, "pid": 101})
        assert adapter.is_running("c1")
        assert done == []

        transport.push("gemini:close:c1", {"code": 0, "pid": 102})
        assert done == [True]

    @pytest.mark.asyncio
    async def test_rate_limit_notices_and_reset(self):
        transport = FakeTransport()
        adapter = GeminiAdapter(transport, config=BridgeConfig(rate_limit_max_retries=3))
        events, _ = _attach(adapter)
        await adapter.send_message("c1", "hi", "/w")

        transport.push("gemini:stderr:c1",
                       "You have exhausted your capacity. Your quota will reset after 12s.")
        transport.push("gemini:stderr:c1", "Retrying after 500ms")
        transport.push("gemini:stderr:c1", "some unrelated warning")
        assert events[0] == Message(content="Rate limited. Retrying in 12s... (1/3)", is_info=True)
        assert events[1] == Message(content="Rate limited. Retrying... (2/3)", is_info=True)

        transport.push("gemini:stdout:c1", json.dumps(
            {"type": "message", "role": "assistant", "content": "Back", "delta": True}
        ))
        transport.push("gemini:stdout:c1", json.dumps(
            {"type": "message", "role": "assistant", "content": " again", "delta": True}
        ))
        assert events[2] == Message(content="Back")
        assert events[3] == TextDelta(delta=" again")

        transport.push("gemini:stderr:c1", "Retrying after 500ms")
        assert events[4].content == "Rate limited. Retrying... (1/3)"

    @pytest.mark.asyncio
    async def test_too_many_rate_limits_stops_the_chat(self):
        transport = FakeTransport()
        adapter = GeminiAdapter(transport, config=BridgeConfig(rate_limit_max_retries=2))
        events, done = _attach(adapter)
        await adapter.send_message("c1", "hi", "/w")

        transport.push("gemini:stderr:c1", "Retrying after 500ms")
        transport.push("gemini:stderr:c1", "Retrying after 500ms")

        assert events[-2].content.startswith("Stopped: Too many rate limit retries")
        assert events[-2].is_info is True
        assert events[-1] == TurnComplete()
        await _eventually(lambda: done)
        assert "stop_gemini_server" in transport.commands()
        assert not adapter.is_running("c1")
        assert done == [True]


class TestAgentRegistry:

    def test_one_adapter_per_kind_sharing_availability(self):
        registry = build_agent_registry(FakeTransport())
        assert registry.kinds() == ["claude", "codex", "copilot", "gemini", "opencode"]
        assert registry.get("gemini").kind == "gemini"
        assert registry.get("nope") is None
        assert all(registry.availability_report().values())

    def test_get_or_raise_lists_available_kinds(self):
        registry = build_agent_registry(FakeTransport())
        with pytest.raises(KeyError, match="Agent 'aider' not found. Available: claude, codex"):
            registry.get_or_raise("aider")

    @pytest.mark.asyncio
    async def test_spawn_failure_updates_shared_availability(self):
        transport = FakeTransport()
        transport.failures["start_gemini_server"] = InvokeError(
            "start_gemini_server", "Failed to spawn gemini: command not found"
        )
        registry = build_agent_registry(transport)
        with pytest.raises(SpawnError):
            await registry.get_or_raise("gemini").send_message("c1", "hi", "/w")
        assert registry.availability_report()["gemini"] is False
        assert registry.availability_report()["claude"] is True
        assert "Gemini CLI not found" in registry.availability.get("gemini").error

    @pytest.mark.asyncio
    async def test_shutdown_all_stops_running_chats(self):
        transport = FakeTransport()
        registry = build_agent_registry(transport)
        await registry.get("claude").send_message("c1", "hi", "/w")
        await registry.get("gemini").send_message("c2", "hi", "/w")

        await registry.shutdown_all()

        assert "stop_agent" in transport.commands()
        assert "stop_gemini_server" in transport.commands()
        assert not registry.get("claude").is_running("c1")
