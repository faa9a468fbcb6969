#!/usr/bin/env python3
"""
Payment watcher (async)

Waits for a participation to become paid the way the ticket modal does:
  1) subscribe to GET /api/participations/{id}/events (server-sent events)
  2) every 10s, POST /payments/status {participationId} as a fallback for
     delayed or lost webhooks (the call also repairs missing slots)

Whichever path first sees payment_status == "paid" wins. A paid push is
followed by one status call so the slot gets assigned even when the event
carried none. The result is committed once and the other path is
cancelled. Both tasks are torn down on every exit path.

Usage:
  python -m jpgtickets.watch --base http://localhost:8000 <participation_id>
"""
from __future__ import annotations
import argparse
import asyncio
import logging
from dataclasses import dataclass
from typing import (
    Any, AsyncIterator, Awaitable, Callable, Dict, Optional
)

import httpx
import orjson

logger = logging.getLogger(__name__)

POLL_INTERVAL_S = 10.0

Subscribe = Callable[[str], AsyncIterator[Dict[str, Any]]]
CheckStatus = Callable[[str], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class PaymentConfirmation:
    participation_id: str
    token: Optional[str]
    slot_number: Optional[int]
    source: str  # "push" | "poll"


OnPaid = Callable[[PaymentConfirmation], Any]


class PaymentWatcher:
    def __init__(self, participation_id: str, *, subscribe: Subscribe,
                 check_status: CheckStatus,
                 poll_interval: float = POLL_INTERVAL_S,
                 on_paid: Optional[OnPaid] = None):
        self.participation_id = participation_id
        self.subscribe = subscribe
        self.check_status = check_status
        self.poll_interval = poll_interval
        self.on_paid = on_paid
        self._result: Optional[asyncio.Future] = None
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def _commit(self, confirmation: PaymentConfirmation) -> bool:
        # single assignment: the loser of a near-simultaneous race is ignored
        if self._result is None or self._result.done():
            return False
        self._result.set_result(confirmation)
        logger.info("participation %s paid (via %s), token %s, slot %s",
                    confirmation.participation_id, confirmation.source,
                    confirmation.token, confirmation.slot_number)
        if self.on_paid is not None:
            self.on_paid(confirmation)
        return True

    async def _listen(self) -> None:
        changes = self.subscribe(self.participation_id)
        try:
            async for change in changes:
                if change.get("payment_status") == "paid":
                    self._commit(await self._confirm_push(change))
                    return
        except asyncio.CancelledError:
            raise
        except Exception:
            # polling keeps running without the push channel
            logger.warning("change subscription for %s dropped",
                           self.participation_id, exc_info=True)
        finally:
            aclose = getattr(changes, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _confirm_push(self, change: Dict[str, Any]
                            ) -> PaymentConfirmation:
        token = change.get("unique_token")
        slot = change.get("slot_number")
        try:
            status = await self.check_status(self.participation_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("status check after push for %s failed",
                           self.participation_id, exc_info=True)
        else:
            if status.get("isPaid"):
                token = status.get("token") or token
                if status.get("slotNumber") is not None:
                    slot = status.get("slotNumber")
        return PaymentConfirmation(
            participation_id=self.participation_id,
            token=token,
            slot_number=slot,
            source="push",
        )

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                status = await self.check_status(self.participation_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("status poll for %s failed",
                               self.participation_id, exc_info=True)
                continue
            if status.get("isPaid"):
                self._commit(PaymentConfirmation(
                    participation_id=self.participation_id,
                    token=status.get("token"),
                    slot_number=status.get("slotNumber"),
                    source="poll",
                ))
                return

    async def wait(self, timeout: Optional[float] = None
                   ) -> PaymentConfirmation:
        """Block until paid. Raises asyncio.TimeoutError after ``timeout``."""
        if self._tasks:
            raise RuntimeError("watcher already started")
        loop = asyncio.get_running_loop()
        self._result = loop.create_future()
        self._tasks = [
            asyncio.create_task(self._listen(), name="payment-listen"),
            asyncio.create_task(self._poll(), name="payment-poll"),
        ]
        try:
            return await asyncio.wait_for(asyncio.shield(self._result),
                                          timeout)
        finally:
            await self.close()

    async def close(self) -> None:
        tasks, self._tasks = self._tasks, []
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._result is not None and not self._result.done():
            self._result.cancel()


# ----------------------------
# HTTP wiring
# ----------------------------
class HttpPaymentSource:
    def __init__(self, client: httpx.AsyncClient, base_url: str):
        self.client = client
        self.base = base_url.rstrip("/")

    async def check_status(self, participation_id: str) -> Dict[str, Any]:
        r = await self.client.post(
            f"{self.base}/payments/status",
            json={"participationId": participation_id},
        )
        r.raise_for_status()
        return r.json()

    async def subscribe(
            self, participation_id: str
    ) -> AsyncIterator[Dict[str, Any]]:
        url = f"{self.base}/api/participations/{participation_id}/events"
        async with self.client.stream(
            "GET", url, headers={"accept": "text/event-stream"},
            timeout=httpx.Timeout(10.0, read=None),
        ) as r:
            r.raise_for_status()
            async for line in r.aiter_lines():
                if not line.startswith("data:"):
                    continue
                try:
                    yield orjson.loads(line[len("data:"):].strip())
                except orjson.JSONDecodeError:
                    logger.warning("malformed event: %r", line)


async def watch_payment(base_url: str, participation_id: str, *,
                        poll_interval: float = POLL_INTERVAL_S,
                        timeout: Optional[float] = None,
                        client: Optional[httpx.AsyncClient] = None
                        ) -> PaymentConfirmation:
    own_client = client is None
    client = client or httpx.AsyncClient(timeout=10.0)
    try:
        source = HttpPaymentSource(client, base_url)
        watcher = PaymentWatcher(
            participation_id,
            subscribe=source.subscribe,
            check_status=source.check_status,
            poll_interval=poll_interval,
        )
        return await watcher.wait(timeout=timeout)
    finally:
        if own_client:
            await client.aclose()


def main(argv: Optional[list[str]] = None) -> int:
    ap = argparse.ArgumentParser(
        description="Wait until a participation is paid"
    )
    ap.add_argument("participation_id")
    ap.add_argument("--base", default="http://localhost:8000")
    ap.add_argument("--interval", type=float, default=POLL_INTERVAL_S,
                    help="status poll interval in seconds")
    ap.add_argument("--timeout", type=float, default=None,
                    help="give up after this many seconds")
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.INFO,
                        format="%(asctime)s %(levelname)s %(message)s")
    try:
        c = asyncio.run(watch_payment(
            args.base, args.participation_id,
            poll_interval=args.interval, timeout=args.timeout,
        ))
    except asyncio.TimeoutError:
        print("still pending")
        return 1
    print(f"PAID via {c.source}: token={c.token} slot={c.slot_number}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
