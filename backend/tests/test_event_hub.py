"""
Autopilot - Event Hub Tests
===========================
"""

import asyncio
import json

from autopilot.core.event_hub import EventHub
from autopilot.core.events import AutoEvent, AutoEventType, EventBuilder


def text(n: int) -> AutoEvent:
    return AutoEvent(type=AutoEventType.TEXT_DELTA, data={"text": str(n)})


class TestDelivery:

    def test_live_events_reach_all_listeners(self):
        hub = EventHub()
        first, second = [], []
        hub.add_listener(first.append)
        hub.add_listener(second.append)

        hub.emit(text(1))

        assert [e.data["text"] for e in first] == ["1"]
        assert [e.data["text"] for e in second] == ["1"]

    def test_failing_listener_is_isolated(self):
        hub = EventHub()
        received = []

        def broken(event: AutoEvent) -> None:
            raise RuntimeError("socket closed")

        hub.add_listener(broken)
        hub.add_listener(received.append)
        hub.emit(text(1))
        hub.emit(text(2))

        assert len(received) == 2

    def test_remove_listener(self):
        hub = EventHub()
        received = []
        detach = hub.add_listener(received.append)
        hub.emit(text(1))
        detach()
        hub.emit(text(2))
        assert len(received) == 1

    async def test_async_listener_scheduled(self):
        hub = EventHub()
        received = []

        async def listener(event: AutoEvent) -> None:
            received.append(event)

        async def failing(event: AutoEvent) -> None:
            raise RuntimeError("boom")

        hub.add_listener(failing)
        hub.add_listener(listener)
        hub.emit(text(1))
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert len(received) == 1


class TestReplayBuffer:

    def test_new_listener_gets_history(self):
        hub = EventHub()
        for n in range(3):
            hub.emit(text(n))

        received = []
        hub.add_listener(received.append)
        hub.emit(text(3))

        assert [e.data["text"] for e in received] == ["0", "1", "2", "3"]

    def test_buffer_is_bounded(self):
        hub = EventHub(buffer_size=5)
        for n in range(12):
            hub.emit(text(n))

        assert [e.data["text"] for e in hub.history()] == ["7", "8", "9", "10", "11"]

    def test_clear(self):
        hub = EventHub()
        hub.emit(text(1))
        hub.clear()
        received = []
        hub.add_listener(received.append)
        assert received == []


class TestEvents:

    def test_round_trip_through_json(self):
        event = EventBuilder.session_status("paused", "s-1", reason="consecutive_failures")
        restored = AutoEvent.from_dict(json.loads(event.to_json()))
        assert restored.type == AutoEventType.SESSION_STATUS
        assert restored.data == {"status": "paused", "session_id": "s-1", "reason": "consecutive_failures"}
        assert restored.timestamp == event.timestamp

    def test_cycle_finished_type_depends_on_success(self):
        ok = EventBuilder.cycle_finished(True, "c-1", 0, "fix", 0.1, 10)
        bad = EventBuilder.cycle_finished(False, "c-1", 0, "fix", 0.1, 10)
        assert ok.type == AutoEventType.CYCLE_COMPLETE
        assert bad.type == AutoEventType.CYCLE_FAILED
