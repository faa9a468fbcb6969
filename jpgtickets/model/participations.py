from __future__ import annotations
from typing import Any, Callable, Dict, Optional, Set
import logging
import uuid

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ParticipationNotFound, PersistenceError, ValidationError
from ..helpers import now_ts
from ..infra.sql import Gated
from .db import (
    Participation,
    STATUS_FAILED,
    STATUS_PAID,
    STATUS_PENDING,
    STATUS_REFUNDED,
)

logger = logging.getLogger(__name__)

# the only provider-driven moves; anything else between two different
# statuses is a regression (applied, but logged)
FORWARD_TRANSITIONS = {
    (STATUS_PENDING, STATUS_PAID),
    (STATUS_PENDING, STATUS_FAILED),
    (STATUS_PAID, STATUS_REFUNDED),
}

SELECT_PARTICIPATION = """
  SELECT id, user_id, tournament_id, payment_status,
         mercado_pago_payment_id, payment_created_at, unique_token,
         slot_number, partner_nick, partner_2_nick, partner_3_nick,
         created_at, updated_at
  FROM participations
"""


def is_regression(prev: Optional[str], new: str) -> bool:
    if prev is None or prev == new:
        return False
    return (prev, new) not in FORWARD_TRANSITIONS


def snapshot(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "payment_status": row["payment_status"],
        "unique_token": row["unique_token"],
        "slot_number": row["slot_number"],
    }


class ParticipationStore:
    def __init__(self, *, db: AsyncSession, gated: Gated, feed=None) -> None:
        self.db = db
        self.gated = gated
        self.feed = feed

    # ---- reads
    async def _select_one(self, where: str,
                          params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        row = (await self.db.execute(
            text(SELECT_PARTICIPATION + " WHERE " + where), params
        )).mappings().first()
        return dict(row) if row else None

    async def get(self, participation_id: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                return await self._select_one(
                    "id = :id", {"id": participation_id}
                )

    async def require(self, participation_id: str) -> Dict[str, Any]:
        row = await self.get(participation_id)
        if row is None:
            raise ParticipationNotFound(
                f"participation {participation_id} not found"
            )
        return row

    async def find_by_provider_payment_id(
            self, charge_id: str
    ) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                return await self._select_one(
                    "mercado_pago_payment_id = :cid", {"cid": str(charge_id)}
                )

    async def used_slots(self, tournament_id: str) -> Set[int]:
        # every stored slot counts, refunded ones included, so the unique
        # (tournament_id, slot_number) index never trips on allocation
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                  SELECT slot_number FROM participations
                  WHERE tournament_id = :tid AND slot_number IS NOT NULL
                """), {"tid": tournament_id})).all()
        return {int(r[0]) for r in rows}

    # ---- writes
    async def create(self, *, user_id: str, tournament_id: str,
                     partner_nick: Optional[str] = None,
                     partner_2_nick: Optional[str] = None,
                     partner_3_nick: Optional[str] = None) -> Dict[str, Any]:
        pid = uuid.uuid4().hex
        ts = now_ts()
        try:
            async with self.gated():
                async with self.db.begin():
                    self.db.add(Participation(
                        id=pid,
                        user_id=user_id,
                        tournament_id=tournament_id,
                        payment_status=STATUS_PENDING,
                        partner_nick=partner_nick,
                        partner_2_nick=partner_2_nick,
                        partner_3_nick=partner_3_nick,
                        created_at=ts,
                        updated_at=ts,
                    ))
        except SQLAlchemyError as e:
            raise PersistenceError(f"could not create participation: {e}")
        logger.info("participation %s created for user %s in tournament %s",
                    pid, user_id, tournament_id)
        return await self.require(pid)

    async def attach_charge(self, participation_id: str, charge_id: str,
                            now: Optional[float] = None) -> bool:
        """Record a freshly created charge.

        The provider id is written once. Returns False when a charge was
        already attached and is kept.
        """
        ts = now or now_ts()
        try:
            async with self.gated():
                async with self.db.begin():
                    res = await self.db.execute(text("""
                      UPDATE participations
                      SET mercado_pago_payment_id = :cid,
                          payment_created_at = :ts,
                          updated_at = :ts
                      WHERE id = :id AND mercado_pago_payment_id IS NULL
                    """), {
                        "id": participation_id,
                        "cid": str(charge_id),
                        "ts": ts,
                    })
                    attached = res.rowcount == 1
                    row = await self._select_one(
                        "id = :id", {"id": participation_id}
                    )
        except SQLAlchemyError as e:
            raise PersistenceError(f"could not attach charge: {e}")
        if row is None:
            raise ParticipationNotFound(
                f"participation {participation_id} not found"
            )
        await self._publish(row)
        return attached

    async def apply_status(self, participation_id: str, status: str, *,
                           token_factory: Callable[[], str],
                           now: Optional[float] = None) -> Dict[str, Any]:
        """Write the mapped provider status (last write wins).

        On ``paid`` a token is minted only if none exists yet; the guard
        lives in the UPDATE so concurrent deliveries cannot overwrite it.
        """
        ts = now or now_ts()
        try:
            async with self.gated():
                async with self.db.begin():
                    prev = (await self.db.execute(text("""
                      SELECT payment_status FROM participations WHERE id = :id
                    """), {"id": participation_id})).scalar_one_or_none()
                    if prev is None:
                        raise ParticipationNotFound(
                            f"participation {participation_id} not found"
                        )

                    await self.db.execute(text("""
                      UPDATE participations
                      SET payment_status = :status, updated_at = :ts
                      WHERE id = :id
                    """), {"id": participation_id, "status": status,
                           "ts": ts})

                    minted = False
                    if status == STATUS_PAID:
                        res = await self.db.execute(text("""
                          UPDATE participations
                          SET unique_token = :tok
                          WHERE id = :id AND unique_token IS NULL
                        """), {"id": participation_id,
                               "tok": token_factory()})
                        minted = res.rowcount == 1

                    row = await self._select_one(
                        "id = :id", {"id": participation_id}
                    )
        except (IntegrityError, SQLAlchemyError) as e:
            raise PersistenceError(f"could not update participation: {e}")

        regressed = is_regression(prev, status)
        if regressed:
            logger.warning(
                "participation %s moved %s -> %s (no monotonic guard)",
                participation_id, prev, status,
            )
        if minted:
            logger.info("participation %s paid, token %s minted",
                        participation_id, row["unique_token"])
        await self._publish(row)
        return {
            "row": row,
            "previous_status": prev,
            "token_minted": minted,
            "regressed": regressed,
        }

    async def ensure_token(self, participation_id: str,
                           token_factory: Callable[[], str]) -> bool:
        try:
            async with self.gated():
                async with self.db.begin():
                    res = await self.db.execute(text("""
                      UPDATE participations
                      SET unique_token = :tok, updated_at = :ts
                      WHERE id = :id AND payment_status = :paid
                        AND unique_token IS NULL
                    """), {"id": participation_id, "tok": token_factory(),
                           "paid": STATUS_PAID, "ts": now_ts()})
        except SQLAlchemyError as e:
            raise PersistenceError(f"could not mint token: {e}")
        return res.rowcount == 1

    async def assign_slot(self, participation_id: str, slot: int) -> bool:
        try:
            async with self.gated():
                async with self.db.begin():
                    res = await self.db.execute(text("""
                      UPDATE participations
                      SET slot_number = :slot, updated_at = :ts
                      WHERE id = :id AND payment_status = :paid
                        AND slot_number IS NULL
                    """), {"id": participation_id, "slot": int(slot),
                           "paid": STATUS_PAID, "ts": now_ts()})
                    assigned = res.rowcount == 1
        except IntegrityError:
            # another paid participation took the slot first; the next
            # repair call picks a fresh one
            logger.warning("slot %s already taken, %s left unslotted",
                           slot, participation_id)
            return False
        except SQLAlchemyError as e:
            raise PersistenceError(f"could not assign slot: {e}")
        if assigned:
            row = await self.get(participation_id)
            if row is not None:
                await self._publish(row)
        return assigned

    async def reject(self, participation_id: str) -> Dict[str, Any]:
        try:
            async with self.gated():
                async with self.db.begin():
                    res = await self.db.execute(text("""
                      UPDATE participations
                      SET payment_status = :failed, updated_at = :ts
                      WHERE id = :id AND payment_status = :pending
                    """), {"id": participation_id, "ts": now_ts(),
                           "failed": STATUS_FAILED,
                           "pending": STATUS_PENDING})
                    rejected = res.rowcount == 1
                    row = await self._select_one(
                        "id = :id", {"id": participation_id}
                    )
        except SQLAlchemyError as e:
            raise PersistenceError(f"could not reject participation: {e}")
        if row is None:
            raise ParticipationNotFound(
                f"participation {participation_id} not found"
            )
        if not rejected:
            raise ValidationError(
                f"only pending participations can be rejected "
                f"(status is {row['payment_status']})"
            )
        logger.info("participation %s rejected by admin", participation_id)
        await self._publish(row)
        return row

    async def _publish(self, row: Dict[str, Any]) -> None:
        if self.feed is None:
            return
        try:
            await self.feed.publish(row["id"], snapshot(row))
        except Exception:
            # subscribers fall back to polling the status endpoint
            logger.exception("change notification for %s failed", row["id"])
