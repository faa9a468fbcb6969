from __future__ import annotations
from typing import Iterable, Optional
import logging

from .db import STATUS_PAID

logger = logging.getLogger(__name__)

PLAYERS_PER_SLOT = {"solo": 1, "dupla": 2, "trio": 3, "squad": 4}


def players_per_slot(game_mode: Optional[str]) -> int:
    return PLAYERS_PER_SLOT.get(game_mode or "solo", 1)


def total_slots(game_mode: Optional[str], max_participants: int) -> int:
    return max(0, int(max_participants) // players_per_slot(game_mode))


def next_free_slot(used: Iterable[int], total: int) -> Optional[int]:
    taken = set(used)
    for slot in range(1, total + 1):
        if slot not in taken:
            return slot
    return None


async def allocate_slot(participations, tournaments, participation_id: str,
                        *, default_max_participants: int = 100
                        ) -> Optional[int]:
    """Give a paid, unslotted participation the lowest free slot.

    Idempotent: a participation that already holds a slot keeps it. Returns
    the participation's slot after the pass, or None when the tournament is
    full, the participation is not paid, or another request won the race for
    the chosen slot.
    """
    row = await participations.require(participation_id)
    if row["slot_number"] is not None:
        return row["slot_number"]
    if row["payment_status"] != STATUS_PAID:
        return None

    tournament = await tournaments.require(row["tournament_id"])
    total = total_slots(
        tournament.game_mode,
        tournament.max_participants or default_max_participants,
    )
    slot = next_free_slot(
        await participations.used_slots(tournament.id), total
    )
    if slot is None:
        logger.warning("all %d slots taken in tournament %s",
                       total, tournament.id)
        return None

    if await participations.assign_slot(participation_id, slot):
        logger.info("participation %s assigned slot %d", participation_id,
                    slot)
        return slot
    row = await participations.require(participation_id)
    return row["slot_number"]
