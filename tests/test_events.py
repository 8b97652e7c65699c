import asyncio

from taxbot.events.event_system import RECENT_EVENTS, CycleFailedEvent, EventSystem, PayoutFailedEvent


def test_subscribers_receive_their_events():
    received = []

    async def on_failed(event):
        received.append(event)

    async def run():
        events = EventSystem()
        await events.subscribe("cycle_failed", on_failed)
        await events.start()
        await events.publish(CycleFailedEvent(3, "swap abandoned", "swapping"))
        await events.publish(PayoutFailedEvent(3, "holder", 5, "timeout"))
        await events.stop()

    asyncio.run(run())

    assert [e.event_type for e in received] == ["cycle_failed"]
    assert received[0].data["sequence"] == 3
    assert received[0].data["stage"] == "swapping"


def test_drain_without_background_task():
    received = []

    async def handler(event):
        received.append(event.data["address"])

    async def run():
        events = EventSystem()
        await events.subscribe("payout_failed", handler)
        await events.publish(PayoutFailedEvent(1, "holder", 5, None))
        await events.drain()

    asyncio.run(run())

    assert received == ["holder"]


def test_failing_subscriber_does_not_block_others():
    received = []

    async def broken(event):
        raise RuntimeError("alert channel down")

    async def working(event):
        received.append(event.event_type)

    async def run():
        events = EventSystem()
        await events.subscribe("cycle_failed", broken)
        await events.subscribe("cycle_failed", working)
        await events.start()
        await events.publish(CycleFailedEvent(1, "x", "harvesting"))
        await events.publish(CycleFailedEvent(2, "y", "harvesting"))
        await events.stop()

    asyncio.run(run())

    assert received == ["cycle_failed", "cycle_failed"]


def test_only_recent_events_are_kept():
    async def run():
        events = EventSystem()
        for sequence in range(RECENT_EVENTS + 25):
            await events.publish(CycleFailedEvent(sequence, "swap abandoned", "swapping"))
        await events.drain()
        return events

    events = asyncio.run(run())

    assert len(events.published) == RECENT_EVENTS
    assert events.published[0].data["sequence"] == 25
