"""Tests for the in-process event bus."""

import asyncio

import pytest

from core.constants import EventType
from events.bus import Event, EventBus


@pytest.mark.unit
class TestEventBus:
    async def test_sync_and_async_handlers(self):
        bus = EventBus()
        seen = []

        async def async_handler(event):
            seen.append(("async", event.type))

        bus.subscribe(lambda event: seen.append(("sync", event.type)))
        bus.subscribe(async_handler)

        delivered = await bus.publish(Event(type=EventType.AUTOMATION_CREATED, automation_id="a1"))
        assert delivered == 2
        assert seen == [("sync", EventType.AUTOMATION_CREATED)]

        await bus.drain(timeout=1)
        assert seen == [("sync", EventType.AUTOMATION_CREATED), ("async", EventType.AUTOMATION_CREATED)]
        await bus.close()

    async def test_failing_handler_is_isolated(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("subscriber bug")

        async def broken_async(event):
            raise RuntimeError("async subscriber bug")

        bus.subscribe(broken)
        bus.subscribe(broken_async)
        bus.subscribe(seen.append)

        delivered = await bus.publish(Event(type=EventType.EXECUTION_STARTED))
        await bus.publish(Event(type=EventType.EXECUTION_COMPLETED))
        await bus.drain(timeout=1)

        assert delivered == 2
        assert [e.type for e in seen] == [EventType.EXECUTION_STARTED, EventType.EXECUTION_COMPLETED]
        await bus.close()

    async def test_slow_handler_does_not_block_publish(self):
        bus = EventBus(handler_timeout=0.05)
        seen, slow_calls = [], []

        async def slow(event):
            slow_calls.append(event.type)
            await asyncio.sleep(5)

        bus.subscribe(slow)
        bus.subscribe(seen.append)

        loop = asyncio.get_running_loop()
        started = loop.time()
        for _ in range(3):
            await bus.publish(Event(type=EventType.EXECUTION_STARTED))
        assert loop.time() - started < 0.05
        assert len(seen) == 3

        # Each queued call is cut off at the handler timeout
        await bus.drain(timeout=2)
        assert len(slow_calls) == 3
        await bus.close()

    async def test_type_filters(self):
        bus = EventBus()
        completed, lifecycle, everything = [], [], []
        bus.subscribe(completed.append, EventType.EXECUTION_COMPLETED)
        bus.subscribe(lifecycle.append, ["execution.started", EventType.EXECUTION_COMPLETED])
        bus.subscribe(everything.append, "*")

        await bus.publish(Event(type=EventType.EXECUTION_STARTED))
        await bus.publish(Event(type=EventType.EXECUTION_COMPLETED))
        await bus.publish(Event(type=EventType.AUTOMATION_DELETED))

        assert [e.type for e in completed] == [EventType.EXECUTION_COMPLETED]
        assert [e.type for e in lifecycle] == [EventType.EXECUTION_STARTED, EventType.EXECUTION_COMPLETED]
        assert len(everything) == 3

    async def test_unknown_type_filter_is_rejected(self):
        with pytest.raises(ValueError):
            EventBus().subscribe(lambda e: None, "no.such.event")

    async def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(seen.append)
        assert bus.subscriber_count == 1

        unsubscribe()
        unsubscribe()
        await bus.publish(Event(type=EventType.EXECUTION_STARTED))

        assert seen == []
        assert bus.subscriber_count == 0

    async def test_events_for_one_automation_keep_order(self):
        bus = EventBus()
        seen = []

        async def handler(event):
            await asyncio.sleep(0)
            seen.append(event.type)

        bus.subscribe(handler)
        order = [EventType.EXECUTION_STARTED, EventType.EXECUTION_PAUSED,
                 EventType.EXECUTION_RESUMED, EventType.EXECUTION_COMPLETED]
        for event_type in order:
            await bus.publish(Event(type=event_type, automation_id="a1"))

        await bus.drain(timeout=1)
        assert seen == order
        await bus.close()

    async def test_recent_buffer(self):
        bus = EventBus(buffer_size=3)
        for i in range(5):
            await bus.publish(Event(type=EventType.EXECUTION_STARTED, automation_id=f"a{i % 2}"))
        await bus.publish(Event(type=EventType.EXECUTION_FAILED, automation_id="a1"))

        recent = bus.recent()
        assert len(recent) == 3
        assert recent[0].type == EventType.EXECUTION_FAILED
        assert [e.automation_id for e in bus.recent(automation_id="a0")] == ["a0"]
        assert len(bus.recent(event_type="execution.failed")) == 1
        assert len(bus.recent(limit=1)) == 1

        bus.clear()
        assert bus.recent() == []

    def test_event_to_dict(self):
        event = Event(type=EventType.SCHEDULE_COALESCED, automation_id="a1", payload={"missed": 2})
        data = event.to_dict()
        assert data["type"] == "schedule.coalesced"
        assert data["id"].startswith("evt_")
        assert data["payload"] == {"missed": 2}
        assert data["timestamp"].startswith("20")

    async def test_close_flushes_then_stops_workers(self):
        bus = EventBus(handler_timeout=0.5)
        seen = []

        async def handler(event):
            await asyncio.sleep(0.01)
            seen.append(event.type)

        bus.subscribe(handler)
        await bus.publish(Event(type=EventType.EXECUTION_STARTED))
        await bus.publish(Event(type=EventType.EXECUTION_COMPLETED))

        await bus.close()
        assert seen == [EventType.EXECUTION_STARTED, EventType.EXECUTION_COMPLETED]

        # A later publish starts a fresh worker
        await bus.publish(Event(type=EventType.EXECUTION_FAILED))
        await bus.drain(timeout=1)
        assert seen[-1] == EventType.EXECUTION_FAILED
        await bus.close()
