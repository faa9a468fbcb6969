from __future__ import annotations
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import PersistenceError
from ..helpers import mask_secret, now_ts, to_iso
from ..infra.sql import Gated
from .db import Setting


# admin-editable key/value settings; read on every use, never cached
class SettingsStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def get(self, key: str) -> Optional[str]:
        async with self.gated():
            async with self.db.begin():
                row = await self.db.get(Setting, key)
                return row.value if row else None

    async def put(self, key: str, value: Optional[str]) -> None:
        try:
            async with self.gated():
                async with self.db.begin():
                    row = await self.db.get(Setting, key)
                    if row is None:
                        self.db.add(Setting(key=key, value=value,
                                            updated_at=now_ts()))
                    else:
                        row.value = value
                        row.updated_at = now_ts()
        except SQLAlchemyError as e:
            raise PersistenceError(f"could not store setting {key}: {e}")

    async def list_masked(self) -> List[Dict[str, Optional[str]]]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    select(Setting).order_by(Setting.key)
                )).scalars().all()
        return [
            {
                "key": r.key,
                "value": mask_secret(r.value),
                "updated_at": to_iso(r.updated_at),
            }
            for r in rows
        ]
