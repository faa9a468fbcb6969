from __future__ import annotations
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import PersistenceError, TournamentNotFound, ValidationError
from ..helpers import now_ts, str_field, to_iso
from ..infra.sql import Gated
from .db import GAME_MODES, TOURNAMENT_STATUSES, Tournament

OPEN_FOR_REGISTRATION = ("upcoming", "open")


def tournament_to_dict(t: Tournament) -> Dict[str, Any]:
    return {
        "id": t.id,
        "name": t.name,
        "game": t.game,
        "game_mode": t.game_mode,
        "entry_fee": t.entry_fee,
        "max_participants": t.max_participants,
        "start_date": to_iso(t.start_date),
        "status": t.status,
        "created_at": to_iso(t.created_at),
    }


class TournamentStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def create(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        name = str_field(payload, "name")
        if not name:
            raise ValidationError("name is required")
        game_mode = str_field(payload, "game_mode") or "solo"
        if game_mode not in GAME_MODES:
            raise ValidationError(f"invalid game_mode {game_mode!r}")
        status = str_field(payload, "status") or "upcoming"
        if status not in TOURNAMENT_STATUSES:
            raise ValidationError(f"invalid status {status!r}")
        try:
            entry_fee = float(payload.get("entry_fee") or 0)
            max_participants = payload.get("max_participants")
            max_participants = (
                None if max_participants is None else int(max_participants)
            )
            start_date = float(payload.get("start_date") or now_ts())
        except (TypeError, ValueError):
            raise ValidationError(
                "entry_fee, max_participants and start_date must be numbers"
            )
        if entry_fee < 0:
            raise ValidationError("entry_fee must not be negative")
        if max_participants is not None and max_participants <= 0:
            raise ValidationError("max_participants must be positive")

        ts = now_ts()
        t = Tournament(
            id=uuid.uuid4().hex,
            name=name,
            game=str_field(payload, "game") or "freefire",
            game_mode=game_mode,
            entry_fee=entry_fee,
            max_participants=max_participants,
            start_date=start_date,
            status=status,
            room_id=str_field(payload, "room_id") or None,
            room_password=str_field(payload, "room_password") or None,
            created_at=ts,
            updated_at=ts,
        )
        try:
            async with self.gated():
                async with self.db.begin():
                    self.db.add(t)
        except SQLAlchemyError as e:
            raise PersistenceError(f"could not create tournament: {e}")
        return tournament_to_dict(t)

    async def get(self, tournament_id: str) -> Optional[Tournament]:
        async with self.gated():
            async with self.db.begin():
                return await self.db.get(Tournament, tournament_id)

    async def require(self, tournament_id: str) -> Tournament:
        t = await self.get(tournament_id)
        if t is None:
            raise TournamentNotFound(f"tournament {tournament_id} not found")
        return t

    async def list(self, limit: int = 100) -> List[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    select(Tournament)
                    .order_by(Tournament.start_date.desc())
                    .limit(max(1, min(limit, 500)))
                )).scalars().all()
        return [tournament_to_dict(t) for t in rows]
