from __future__ import annotations
from typing import Callable, AsyncContextManager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ...helpers import now_ts


class CallbackGate:
    """One row in `callback_gates` per checkout id being handled."""

    def __init__(
        self, *, db: AsyncSession,
        gated: Callable[[], AsyncContextManager[None]]
    ) -> None:
        self.db = db
        self.gated = gated

    async def claim(self, checkout_request_id: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  INSERT INTO callback_gates(checkout_request_id, created_at)
                  VALUES(:cid, :now)
                  ON CONFLICT (checkout_request_id) DO NOTHING
                  RETURNING checkout_request_id
                """), {"cid": checkout_request_id, "now": now_ts()})).first()
                return row is not None

    async def release(self, checkout_request_id: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    text(
                        "DELETE FROM callback_gates "
                        "WHERE checkout_request_id = :cid"
                    ),
                    {"cid": checkout_request_id},
                )
