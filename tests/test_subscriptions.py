"""Tests for pattern matching, the subscription table and the host event bus."""
from __future__ import annotations

import pytest

from agent_bridge.host.event_bus import EventBus
from agent_bridge.transport.base import SubscriptionTable, matches_pattern


@pytest.mark.parametrize(
    "pattern, event_type, expected",
    [
        ("codex:stdout:abc", "codex:stdout:abc", True),
        ("codex:stdout:abc", "codex:stdout:abcd", False),
        ("codex:*", "codex:stdout:abc", True),
        ("codex:*", "codex:", True),
        ("codex:*", "copilot:stdout:abc", False),
        # Plain string prefix, not token-aware.
        ("agent:ev*", "agent:event:1", True),
        ("*", "anything", True),
    ],
)
def test_matches_pattern(pattern, event_type, expected):
    assert matches_pattern(pattern, event_type) is expected


class TestSubscriptionTable:

    def test_first_and_last_transitions(self):
        table = SubscriptionTable()
        t1, first = table.add("a", lambda *_: None)
        assert first is True
        t2, first = table.add("a", lambda *_: None)
        assert first is False
        assert table.listener_count("a") == 2

        assert table.remove(t1) == ("a", False)
        assert table.patterns() == ["a"]
        assert table.remove(t2) == ("a", True)
        assert table.is_empty()

    def test_removing_a_token_twice_is_a_noop(self):
        table = SubscriptionTable()
        token, _ = table.add("a", lambda *_: None)
        table.add("a", lambda *_: None)
        assert table.remove(token) == ("a", False)
        assert table.remove(token) is None
        assert table.listener_count("a") == 1

    def test_same_callback_twice_gets_two_tokens(self):
        table = SubscriptionTable()
        received = []

        def callback(event_type, payload):
            received.append(payload)

        t1, _ = table.add("a", callback)
        table.add("a", callback)
        table.dispatch("a", 1)
        table.remove(t1)
        table.dispatch("a", 2)
        assert received == [1, 1, 2]

    def test_dispatch_continues_past_failing_callback(self):
        table = SubscriptionTable()
        received = []

        def broken(event_type, payload):
            raise RuntimeError("boom")

        table.add("x:*", broken)
        table.add("x:1", lambda et, p: received.append((et, p)))
        assert table.dispatch("x:1", "hello") == 2
        assert received == [("x:1", "hello")]

    def test_unmatched_events_are_dropped(self):
        table = SubscriptionTable()
        table.add("a", lambda *_: pytest.fail("should not be called"))
        assert table.dispatch("b", None) == 0


class TestEventBus:

    def test_emit_in_order_to_matching_listeners(self):
        bus = EventBus()
        received = []
        bus.listen("gemini:stdout:c1", lambda et, p: received.append(p))
        bus.listen("gemini:*", lambda et, p: received.append(("any", et)))

        assert bus.emit("gemini:stdout:c1", "line 1") == 2
        bus.emit("gemini:stdout:c1", "line 2")
        assert received == [
            "line 1", ("any", "gemini:stdout:c1"),
            "line 2", ("any", "gemini:stdout:c1"),
        ]

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        unsubscribe = bus.listen("a", lambda et, p: received.append(p))
        bus.emit("a", 1)
        unsubscribe()
        unsubscribe()
        bus.emit("a", 2)
        assert received == [1]
        assert bus.listener_count("a") == 0
