import asyncio
import itertools
import unittest

import pytest

from chatstream_service.context.memory_store import MemoryMessageStore
from chatstream_service.core.errors import CardTransitionError
from chatstream_service.core.types import CardStatus, LifecycleEventType
from chatstream_service.policy.authorization import StaticAuthorizationPolicy
from chatstream_service.protocol.orchestration.lifecycle import (
    CARD_MARKER_KEY,
    ToolCallLifecycleManager,
    card_marker,
    find_card_markers,
)


class RaisingPolicy(StaticAuthorizationPolicy):
    def should_auto_authorize(self, server_name):
        raise RuntimeError("policy offline")


def make_manager(store, auto=False, **kwargs):
    counter = itertools.count(1)
    return ToolCallLifecycleManager(
        "m1",
        store,
        StaticAuthorizationPolicy(auto),
        id_factory=lambda: f"card-{next(counter)}",
        **kwargs,
    )


class TestHandle:
    def test_pending_card_requests_authorization(self, store):
        asked = []
        manager = make_manager(store, on_request_authorization=asked.append)
        card_id = manager.handle("weather", "forecast", {"city": "Paris"})

        assert card_id == "card-1"
        card = manager.cards[card_id]
        assert card.status == CardStatus.PENDING_AUTH
        assert asked == [card]
        assert store.events["m1"] == [{"type": LifecycleEventType.CARD_CREATED, "data": card.to_dict()}]

    def test_auto_authorized_card_runs(self, store):
        started = []
        manager = make_manager(store, auto=True, on_auto_execute=started.append)
        card_id = manager.handle("weather", "forecast")
        assert manager.cards[card_id].status == CardStatus.RUNNING
        assert [c.id for c in started] == [card_id]

    def test_marker_follows_prose_on_its_own_line(self, store):
        store.append_text("m1", "Prose")
        manager = make_manager(store)
        card_id = manager.handle("fs", "read", '{"path": "/tmp"}')
        card = manager.cards[card_id]

        assert store.get_content("m1") == "Prose\n" + card_marker(card) + "\n"
        markers = find_card_markers(store.get_content("m1"))
        assert markers == [
            {"id": "card-1", "server": "fs", "tool": "read", "status": "pending_auth",
             "arguments": {"path": "/tmp"}, "messageId": "m1"}
        ]

    def test_invalid_names_are_ignored(self, store):
        manager = make_manager(store)
        assert manager.handle("", "tool") is None
        assert manager.handle("server", "   ") is None
        assert manager.cards == {}
        assert store.get_content("m1") == ""
        assert "m1" not in store.events

    def test_unresolved_card_blocks_new_cards(self, store):
        manager = make_manager(store)
        first = manager.handle("a", "x")
        assert manager.handle("b", "y") is None
        manager.deny(first)
        second = manager.handle("b", "y")
        assert second == "card-2"
        assert len(find_card_markers(store.get_content("m1"))) == 2

    def test_raising_policy_asks_the_user(self, store):
        manager = ToolCallLifecycleManager("m1", store, RaisingPolicy())
        card_id = manager.handle("a", "x")
        assert manager.cards[card_id].status == CardStatus.PENDING_AUTH

    def test_failing_callback_does_not_break_handle(self, store):
        def boom(card):
            raise RuntimeError("callback")

        manager = make_manager(store, on_request_authorization=boom)
        assert manager.handle("a", "x") == "card-1"

    def test_failing_marker_write_does_not_break_handle(self, store, monkeypatch, caplog):
        def down(message_id, full_text):
            raise RuntimeError("store down")

        monkeypatch.setattr(store, "overwrite_content", down)
        manager = make_manager(store)
        assert manager.handle("a", "x") == "card-1"
        assert [e["type"] for e in store.events["m1"]] == [LifecycleEventType.CARD_CREATED]
        assert "embedding marker for card card-1 failed" in caplog.text

    def test_async_callback_without_loop_runs_to_completion(self, store):
        seen = []

        async def execute(card):
            seen.append(card.id)

        manager = make_manager(store, auto=True, on_auto_execute=execute)
        manager.handle("a", "x")
        assert seen == ["card-1"]


class TestTransitions:
    def test_happy_path(self, store):
        manager = make_manager(store)
        card_id = manager.handle("a", "x")
        manager.authorize(card_id)
        card = manager.complete(card_id, result={"ok": True})
        assert card.status == CardStatus.SUCCEEDED
        assert card.result == {"ok": True}
        types = [e["type"] for e in store.events["m1"]]
        assert types == [
            LifecycleEventType.CARD_CREATED,
            LifecycleEventType.CARD_STATUS,
            LifecycleEventType.CARD_STATUS,
        ]
        assert store.events["m1"][-1]["data"]["status"] == "succeeded"

    def test_failure_carries_error(self, store):
        manager = make_manager(store, auto=True)
        card_id = manager.handle("a", "x")
        card = manager.fail(card_id, "timeout")
        assert card.to_dict()["error"] == "timeout"

    def test_status_never_moves_backwards(self, store):
        manager = make_manager(store)
        card_id = manager.handle("a", "x")
        with pytest.raises(CardTransitionError):
            manager.complete(card_id)
        manager.deny(card_id)
        with pytest.raises(CardTransitionError) as exc:
            manager.authorize(card_id)
        assert "failed" in str(exc.value)

    def test_unknown_card(self, store):
        manager = make_manager(store)
        with pytest.raises(KeyError):
            manager.authorize("missing")

    def test_authorize_fires_execution(self, store):
        started = []
        manager = make_manager(store, on_auto_execute=started.append)
        card_id = manager.handle("a", "x")
        assert started == []
        manager.authorize(card_id)
        assert [c.id for c in started] == [card_id]


class TestMarkers:
    def test_markers_ignore_other_lines(self):
        content = 'text {"__tool_call_card__": "inline"}\n{"other": 1}\n'
        assert find_card_markers(content) == []

    def test_marker_is_single_line(self):
        manager = make_manager(MemoryMessageStore())
        card_id = manager.handle("a", "x", {"text": "line1\nline2"})
        marker = card_marker(manager.cards[card_id])
        assert "\n" not in marker
        assert marker.startswith('{"%s":' % CARD_MARKER_KEY)


class TestAsyncCallbacks(unittest.IsolatedAsyncioTestCase):
    async def test_callbacks_are_scheduled_on_running_loop(self):
        store = MemoryMessageStore()
        seen = []

        async def execute(card):
            await asyncio.sleep(0)
            seen.append(card.id)

        manager = ToolCallLifecycleManager("m1", store, StaticAuthorizationPolicy(True), on_auto_execute=execute)
        card_id = manager.handle("a", "x")
        self.assertEqual(seen, [])
        await manager.drain()
        self.assertEqual(seen, [card_id])

    async def test_failing_async_callback_is_logged(self):
        store = MemoryMessageStore()

        async def execute(card):
            raise RuntimeError("tool crashed")

        manager = ToolCallLifecycleManager("m1", store, StaticAuthorizationPolicy(True), on_auto_execute=execute)
        manager.handle("a", "x")
        await manager.drain()
        self.assertEqual(len(manager.cards), 1)
