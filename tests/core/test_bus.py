"""Tests for the Event Bus."""

import pytest
from cadence.core.bus import EventBus
from cadence.core.events import Event, EventType


@pytest.mark.asyncio
async def test_emit_and_subscribe(bus: EventBus):
    """Basic pub/sub works."""
    received = []

    async def handler(event: Event):
        received.append(event)

    bus.on(EventType.QUEUE_COMPLETE, handler)
    await bus.emit(Event(type=EventType.QUEUE_COMPLETE, data={"label": "daily"}))

    assert len(received) == 1
    assert received[0].data == {"label": "daily"}


@pytest.mark.asyncio
async def test_wildcard_subscription(bus: EventBus):
    """Wildcard 'queue:*' matches every queue outcome and nothing else."""
    received = []

    async def handler(event: Event):
        received.append(event.type)

    bus.on("queue:*", handler)

    await bus.emit(Event(type=EventType.QUEUE_COMPLETE))
    await bus.emit(Event(type=EventType.QUEUE_FAILED))
    await bus.emit(Event(type=EventType.JOB_FIRED))  # should NOT match

    assert received == ["queue:complete", "queue:failed"]


@pytest.mark.asyncio
async def test_catch_all_subscription(bus: EventBus):
    received = []

    async def handler(event: Event):
        received.append(event.type)

    bus.on(EventType.ALL, handler)
    await bus.emit(Event(type=EventType.SESSION_RESET))
    await bus.emit(Event(type=EventType.JOB_COMPLETE))

    assert len(received) == 2


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_break_others(bus: EventBus):
    received = []

    async def broken(event: Event):
        raise RuntimeError("boom")

    async def healthy(event: Event):
        received.append(event.type)

    bus.on(EventType.QUEUE_FAILED, broken)
    bus.on(EventType.QUEUE_FAILED, healthy)

    await bus.emit(Event(type=EventType.QUEUE_FAILED))

    assert received == ["queue:failed"]


@pytest.mark.asyncio
async def test_off_removes_handler(bus: EventBus):
    received = []

    async def handler(event: Event):
        received.append(event)

    bus.on(EventType.JOB_FIRED, handler)
    assert bus.subscriber_count == 1
    bus.off(EventType.JOB_FIRED, handler)
    assert bus.subscriber_count == 0

    await bus.emit(Event(type=EventType.JOB_FIRED))
    assert received == []
