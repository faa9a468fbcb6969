from __future__ import annotations
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts, to_iso
from ..infra.sql import Gated
from .db import WebhookLog

logger = logging.getLogger(__name__)

# never persisted verbatim
REDACTED_HEADERS = {"authorization", "cookie", "x-signature"}


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    return {
        k: ("<redacted>" if k.lower() in REDACTED_HEADERS else v)
        for k, v in headers.items()
    }


class WebhookLogStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def record(self, *, method: str, headers: Dict[str, str],
                     body: Any, query_params: Dict[str, str],
                     status_code: int, response: Any,
                     error_message: Optional[str] = None,
                     source: str = "mercadopago") -> None:
        # the audit row must never fail the webhook itself
        try:
            async with self.gated():
                async with self.db.begin():
                    self.db.add(WebhookLog(
                        source=source,
                        method=method,
                        headers=redact_headers(headers),
                        body=body,
                        query_params=query_params,
                        status_code=status_code,
                        response=response,
                        error_message=error_message,
                        created_at=now_ts(),
                    ))
        except Exception:
            logger.exception("failed to save webhook log")

    async def recent(self, limit: int = 100) -> List[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    select(WebhookLog)
                    .order_by(WebhookLog.id.desc())
                    .limit(max(1, min(limit, 500)))
                )).scalars().all()
        return [
            {
                "id": r.id,
                "source": r.source,
                "method": r.method,
                "headers": r.headers,
                "body": r.body,
                "query_params": r.query_params,
                "status_code": r.status_code,
                "response": r.response,
                "error_message": r.error_message,
                "created_at": to_iso(r.created_at),
            }
            for r in rows
        ]
