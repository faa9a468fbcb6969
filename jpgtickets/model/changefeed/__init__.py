# model/changefeed/__init__.py
from typing import Optional
import redis.asyncio as redis

from ._memory import ChangeFeed as MemoryChangeFeed
from ._redis import ChangeFeed as RedisChangeFeed

BACKENDS = ("memory", "redis")


# Factory keeps server.py simple and constructor-agnostic:
def new_feed(backend: str = "memory", *, r: Optional[redis.Redis] = None):
    backend = (backend or "memory").lower()
    if backend == "redis":
        if r is None:
            raise RuntimeError("ChangeFeed(redis) requires r=redis.Redis")
        return RedisChangeFeed(r=r)
    if backend == "memory":
        return MemoryChangeFeed()
    raise RuntimeError(f"unknown change feed backend: {backend}")


ChangeFeed = MemoryChangeFeed | RedisChangeFeed
__all__ = ["ChangeFeed", "MemoryChangeFeed", "RedisChangeFeed", "new_feed",
           "BACKENDS"]
