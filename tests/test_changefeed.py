import asyncio

import pytest

from jpgtickets.model.changefeed import MemoryChangeFeed, new_feed


async def _next(changes):
    return await changes.__anext__()


def test_publish_without_subscribers():
    feed = MemoryChangeFeed()
    assert asyncio.run(feed.publish("p-1", {"payment_status": "paid"})) == 0


def test_subscribe_receives_and_unsubscribes():
    async def _go():
        feed = MemoryChangeFeed()
        changes = feed.subscribe("p-1")
        nxt = asyncio.create_task(_next(changes))
        await asyncio.sleep(0)
        assert feed.subscriber_count("p-1") == 1

        assert await feed.publish("p-2", {"payment_status": "paid"}) == 0
        assert await feed.publish("p-1", {"payment_status": "paid"}) == 1
        assert await nxt == {"payment_status": "paid"}

        await changes.aclose()
        assert feed.subscriber_count("p-1") == 0
    asyncio.run(_go())


def test_slow_subscriber_keeps_newest():
    async def _go():
        feed = MemoryChangeFeed(maxsize=2)
        changes = feed.subscribe("p-1")
        nxt = asyncio.create_task(_next(changes))
        await asyncio.sleep(0)
        for n in range(3):
            await feed.publish("p-1", {"n": n})
        got = [await nxt, await changes.__anext__()]
        await changes.aclose()
        return got
    assert asyncio.run(_go()) == [{"n": 1}, {"n": 2}]


def test_factory():
    assert isinstance(new_feed("memory"), MemoryChangeFeed)
    with pytest.raises(RuntimeError):
        new_feed("redis")
    with pytest.raises(RuntimeError):
        new_feed("kafka")
