from __future__ import annotations

import asyncio

from tvlaunch.orchestrator.eventbus import EventBus


async def test_slow_subscriber_keeps_newest_events():
    bus = EventBus()
    sub = bus.subscribe(maxsize=2)
    first = asyncio.create_task(sub.__anext__())
    await asyncio.sleep(0)
    assert bus.subscriber_count == 1

    await bus.publish({"type": "state", "data": 0})
    assert (await first)["data"] == 0

    for i in range(1, 5):
        await bus.publish({"type": "state", "data": i})
    assert (await sub.__anext__())["data"] == 3
    assert (await sub.__anext__())["data"] == 4
    assert bus.published == 5

    await sub.aclose()
    assert bus.subscriber_count == 0


async def test_publish_without_subscribers():
    bus = EventBus()
    await bus.publish({"type": "phase", "data": {"phase": "awaiting_on"}})
    assert bus.published == 1
