"""Tests for spartanbot.events.EventBus."""

import asyncio

import pytest

from spartanbot.events import RENTAL_COMPLETED, RENTAL_TRIGGER, EventBus, RentalTrigger


class TestEventBus:
    """EventBus subscribe/publish, wildcards, error handling, async handlers."""

    @pytest.mark.asyncio
    async def test_basic_subscribe_and_publish(self):
        bus = EventBus()
        received = []
        bus.subscribe("test.event", lambda ch, data: received.append((ch, data)))
        await bus.publish("test.event", {"value": 42})
        assert received == [("test.event", {"value": 42})]

    @pytest.mark.asyncio
    async def test_wildcard_subscribe(self):
        bus = EventBus()
        received = []
        bus.subscribe("rental.*", lambda ch, data: received.append(ch))
        await bus.publish("rental.trigger", {})
        await bus.publish("rental.failed", {})
        await bus.publish("spot.rent", {})  # should NOT match
        assert received == ["rental.trigger", "rental.failed"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        received = []
        handler = lambda ch, data: received.append(ch)
        bus.subscribe("test", handler)
        await bus.publish("test", {})
        bus.unsubscribe("test", handler)
        await bus.publish("test", {})
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_handler_error_does_not_break_others(self):
        bus = EventBus()
        results = []

        def bad_handler(ch, data):
            raise ValueError("boom")

        bus.subscribe("test", bad_handler, subscriber="bad")
        bus.subscribe("test", lambda ch, data: results.append("ok"), subscriber="good")
        await bus.publish("test", {})
        assert results == ["ok"]

    @pytest.mark.asyncio
    async def test_history_ring_buffer(self):
        bus = EventBus(max_history=5)
        for i in range(10):
            await bus.publish("tick", {"i": i})
        history = bus.get_history("tick", limit=100)
        assert len(history) == 5
        # Newest first
        assert history[0]["data"]["i"] == 9

    @pytest.mark.asyncio
    async def test_trigger_dataclass_is_serialized(self):
        bus = EventBus()
        received = []
        bus.subscribe(RENTAL_TRIGGER, lambda ch, data: received.append(data))
        await bus.publish(RENTAL_TRIGGER, RentalTrigger(hashrate=12.5, duration=10800))
        assert received == [{"hashrate": 12.5, "duration": 10800, "provider_selector": None}]
        assert RentalTrigger.from_payload(received[0]) == RentalTrigger(12.5, 10800)

    @pytest.mark.asyncio
    async def test_publish_awaits_coroutine_handlers(self):
        bus = EventBus()
        order = []

        async def slow(ch, data):
            await asyncio.sleep(0.01)
            order.append("slow")

        bus.subscribe("x", slow)
        bus.subscribe("x", lambda ch, data: order.append("fast"))
        await bus.publish("x", {})
        assert order == ["slow", "fast"]

    @pytest.mark.asyncio
    async def test_nested_publish_completes_before_outer_returns(self):
        bus = EventBus()
        outcomes = []

        async def renter(ch, data):
            await bus.publish(RENTAL_COMPLETED, data)

        bus.subscribe(RENTAL_TRIGGER, renter)
        bus.subscribe(RENTAL_COMPLETED, lambda ch, data: outcomes.append(data["hashrate"]))
        await bus.publish(RENTAL_TRIGGER, RentalTrigger(hashrate=3.0, duration=60))
        assert outcomes == [3.0]

    @pytest.mark.asyncio
    async def test_async_handler_error_is_contained(self):
        bus = EventBus()
        after = []

        async def bad(ch, data):
            raise RuntimeError("nope")

        bus.subscribe("x", bad)
        bus.subscribe("x", lambda ch, data: after.append(True))
        await bus.publish("x", {})
        assert after == [True]
