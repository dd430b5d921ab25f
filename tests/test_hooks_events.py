"""Tests for lifecycle hooks and the event bus."""

import asyncio

import pytest

from mux_shells.events import EventBus, EventType, PaneOutput, SessionEvent
from mux_shells.hooks import SessionLifecycleHooks, fire_hook
from mux_shells.record import BackendKind, Session


def make_session():
    return Session(id="card-1", name="shell", backend=BackendKind.DIRECT, cwd="/tmp", shell="/bin/sh", created_at=0.0)


class TestFireHook:
    def test_missing_hooks_are_ignored(self):
        fire_hook(None, "on_session_running", make_session())
        fire_hook(SessionLifecycleHooks(), "on_session_running", make_session())

    def test_sync_hook_runs_inline(self):
        seen = []
        hooks = SessionLifecycleHooks(on_session_exited=lambda s, code: seen.append((s.id, code)))

        fire_hook(hooks, "on_session_exited", make_session(), 2)

        assert seen == [("card-1", 2)]

    def test_raising_hook_is_contained(self):
        def broken(session):
            raise RuntimeError("hook bug")

        fire_hook(SessionLifecycleHooks(on_session_running=broken), "on_session_running", make_session())

    @pytest.mark.asyncio
    async def test_async_hook_is_scheduled(self):
        done = asyncio.Event()

        async def on_running(session):
            done.set()

        fire_hook(SessionLifecycleHooks(on_session_running=on_running), "on_session_running", make_session())

        await asyncio.wait_for(done.wait(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_failing_async_hook_is_contained(self):
        calls = []

        async def on_detached(session):
            calls.append(session.id)
            raise RuntimeError("async hook bug")

        fire_hook(SessionLifecycleHooks(on_session_detached=on_detached), "on_session_detached", make_session())
        for _ in range(10):
            await asyncio.sleep(0)

        assert calls == ["card-1"]


class TestEventBus:
    @pytest.mark.asyncio
    async def test_every_subscriber_sees_events_in_order(self):
        bus = EventBus()
        first = bus.subscribe()
        second = bus.subscribe()

        for index in range(3):
            bus.publish_nowait(SessionEvent(type=EventType.SESSION_RUNNING, session_id=str(index)))
        await bus.publish(SessionEvent(type=EventType.SESSION_DETACHED, session_id="3"))

        for queue in (first, second):
            ids = [queue.get_nowait().session_id for _ in range(4)]
            assert ids == ["0", "1", "2", "3"]
            assert queue.empty()

    def test_unsubscribe(self):
        bus = EventBus()
        queue = bus.subscribe()
        assert bus.subscriber_count == 1

        bus.unsubscribe(queue)
        bus.unsubscribe(queue)
        bus.publish_nowait(SessionEvent(type=EventType.SESSION_CREATED, session_id="x"))

        assert bus.subscriber_count == 0
        assert queue.empty()


class TestSessionEvent:
    def test_lifecycle_event_to_dict(self):
        event = SessionEvent(type=EventType.SESSION_CREATED, session_id="card-1", timestamp=5.0, data={"name": "a"})
        assert event.to_dict() == {
            "type": "session.created",
            "session_id": "card-1",
            "timestamp": 5.0,
            "data": {"name": "a"},
        }

    def test_output_event_carries_pane_and_text(self):
        output = PaneOutput("3", "héllo".encode("utf-8") + b"\xff")
        event = SessionEvent(type=output.type, session_id="card-1", control=output)

        data = event.to_dict()["data"]

        assert data["pane_id"] == "3"
        assert data["chunk"] == "héllo�"
