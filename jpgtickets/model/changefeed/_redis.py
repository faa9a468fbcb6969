# Redis pub/sub; one channel per participation
from __future__ import annotations
from typing import Any, AsyncIterator, Dict
import logging

import orjson
import redis.asyncio as redis

logger = logging.getLogger(__name__)


def k_channel(participation_id: str) -> str:
    return f"participation:{participation_id}"


class ChangeFeed:
    def __init__(self, r: redis.Redis) -> None:
        self.r = r

    async def publish(self, participation_id: str,
                      snapshot: Dict[str, Any]) -> int:
        return int(await self.r.publish(
            k_channel(participation_id), orjson.dumps(snapshot)
        ))

    async def subscribe(
            self, participation_id: str
    ) -> AsyncIterator[Dict[str, Any]]:
        channel = k_channel(participation_id)
        pubsub = self.r.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(channel)
        try:
            async for msg in pubsub.listen():
                if msg.get("type") != "message":
                    continue
                try:
                    yield orjson.loads(msg["data"])
                except orjson.JSONDecodeError:
                    logger.warning("dropping malformed message on %s",
                                   channel)
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()

    async def close(self) -> None:
        # the redis client is owned by the app and closed on shutdown
        return None
