"""Unit tests for the EventBus."""

import asyncio

from backend.core.events import BACKUP_COMPLETED, BACKUP_STARTED, EventBus


class TestEventBus:
    async def test_emit_reaches_every_subscriber(self):
        bus = EventBus()
        first = bus.subscribe()
        second = bus.subscribe()

        bus.emit(BACKUP_STARTED, {"schedule_id": 1})

        for subscription in (first, second):
            event = await subscription.get(timeout=1)
            assert event.name == BACKUP_STARTED
            assert event.payload == {"schedule_id": 1}

    async def test_unsubscribe_detaches(self):
        bus = EventBus()

        with bus.subscribe() as subscription:
            assert bus.subscriber_count == 1

        assert subscription.closed is True
        assert bus.subscriber_count == 0
        bus.emit(BACKUP_STARTED, {})
        assert subscription.pending() == []

    async def test_get_times_out_with_none(self):
        bus = EventBus()
        subscription = bus.subscribe()

        assert await subscription.get(timeout=0.01) is None

    async def test_slow_consumer_drops_oldest(self):
        bus = EventBus(max_queue_size=2)
        subscription = bus.subscribe()

        for i in range(3):
            bus.emit(BACKUP_COMPLETED, {"n": i})

        events = subscription.pending()
        assert [e.payload["n"] for e in events] == [1, 2]
        assert subscription.dropped == 1

    async def test_payload_is_copied(self):
        bus = EventBus()
        subscription = bus.subscribe()
        payload = {"status": "success"}

        bus.emit(BACKUP_COMPLETED, payload)
        payload["status"] = "error"

        event = await asyncio.wait_for(subscription.get(), 1)
        assert event.payload["status"] == "success"
