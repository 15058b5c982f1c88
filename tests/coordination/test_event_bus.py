"""
Tests for the async EventBus.
"""

import dataclasses

import pytest

from threadline.coordination.event_bus import ALL_EVENTS, EventBus


@dataclasses.dataclass
class PingEvent:
    value: int = 0


@dataclasses.dataclass
class PongEvent:
    value: int = 0


class TestEventBus:
    """Tests for EventBus emit and subscription handling."""

    @pytest.mark.asyncio
    async def test_sync_and_async_listeners(self):
        """Test both plain and coroutine listeners receive the event."""
        bus = EventBus()
        received = []

        def sync_listener(event):
            received.append(("sync", event.value))

        async def async_listener(event):
            received.append(("async", event.value))

        bus.subscribe("PingEvent", sync_listener)
        bus.subscribe("PingEvent", async_listener)
        await bus.emit(PingEvent(1))

        assert received == [("sync", 1), ("async", 1)]

    @pytest.mark.asyncio
    async def test_events_routed_by_class_name(self):
        bus = EventBus()
        pings = []
        bus.subscribe("PingEvent", pings.append)

        await bus.emit(PongEvent(1))
        await bus.emit(PingEvent(2))

        assert pings == [PingEvent(2)]

    @pytest.mark.asyncio
    async def test_wildcard_listener(self):
        bus = EventBus()
        seen = []
        bus.subscribe(ALL_EVENTS, seen.append)

        await bus.emit(PingEvent(1))
        await bus.emit(PongEvent(2))

        assert seen == [PingEvent(1), PongEvent(2)]

    def test_duplicate_subscription_ignored(self):
        bus = EventBus()
        listener = lambda event: None  # noqa: E731

        bus.subscribe("PingEvent", listener)
        bus.subscribe("PingEvent", listener)

        assert bus.get_listener_count("PingEvent") == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        bus.subscribe("PingEvent", seen.append)
        bus.unsubscribe("PingEvent", seen.append)
        bus.unsubscribe("PongEvent", seen.append)

        await bus.emit(PingEvent(1))

        assert seen == []
        assert bus.get_listener_count() == 0

    @pytest.mark.asyncio
    async def test_failing_listener_removed_after_max_errors(self, caplog):
        """Test a listener that keeps raising is dropped without affecting others."""
        bus = EventBus(max_listener_errors=2)
        seen = []

        def broken(event):
            raise RuntimeError("listener bug")

        bus.subscribe("PingEvent", broken)
        bus.subscribe("PingEvent", seen.append)

        await bus.emit(PingEvent(1))
        assert bus.get_listener_count("PingEvent") == 2

        await bus.emit(PingEvent(2))
        assert bus.get_listener_count("PingEvent") == 1

        await bus.emit(PingEvent(3))
        assert [e.value for e in seen] == [1, 2, 3]
        assert "listener bug" in caplog.text

    @pytest.mark.asyncio
    async def test_history_and_counts(self):
        bus = EventBus(max_history=3)

        for i in range(4):
            await bus.emit(PingEvent(i))
        await bus.emit(PongEvent(9))

        assert bus.get_event_count() == 3
        assert bus.get_event_count("PingEvent") == 2
        assert [e.value for e in bus.events] == [2, 3, 9]

        bus.clear_events()
        assert bus.get_event_count() == 0

    def test_clear_listeners(self):
        bus = EventBus()
        bus.subscribe("PingEvent", print)
        bus.subscribe("PongEvent", print)

        bus.clear_listeners("PingEvent")
        assert bus.get_listener_count() == 1

        bus.clear_listeners()
        assert bus.get_listener_count() == 0
