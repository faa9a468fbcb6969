# in-process fan-out; only valid for a single server process
from __future__ import annotations
import asyncio
from typing import Any, AsyncIterator, Dict, Set


class ChangeFeed:
    def __init__(self, maxsize: int = 64) -> None:
        self.maxsize = maxsize
        self._subs: Dict[str, Set[asyncio.Queue]] = {}

    async def publish(self, participation_id: str,
                      snapshot: Dict[str, Any]) -> int:
        queues = self._subs.get(participation_id, ())
        delivered = 0
        for q in list(queues):
            if q.full():
                # slow consumer: drop the oldest, the newest snapshot wins
                q.get_nowait()
            q.put_nowait(dict(snapshot))
            delivered += 1
        return delivered

    async def subscribe(
            self, participation_id: str
    ) -> AsyncIterator[Dict[str, Any]]:
        q: asyncio.Queue = asyncio.Queue(maxsize=self.maxsize)
        self._subs.setdefault(participation_id, set()).add(q)
        try:
            while True:
                yield await q.get()
        finally:
            subs = self._subs.get(participation_id)
            if subs is not None:
                subs.discard(q)
                if not subs:
                    del self._subs[participation_id]

    def subscriber_count(self, participation_id: str) -> int:
        return len(self._subs.get(participation_id, ()))

    async def close(self) -> None:
        self._subs.clear()
