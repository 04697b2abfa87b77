from typing import Optional, Callable, AsyncContextManager
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ... import config

Gated = Callable[[], AsyncContextManager[None]]

BACKEND = config.CALLBACKGATE_BACKEND  # 'sql' | 'redis'

if BACKEND == "redis":
    from ._redis import CallbackGate as _CallbackGate
else:
    from ._sql import CallbackGate as _CallbackGate


def new_gate(*, db: Optional[AsyncSession] = None,
             r: Optional[redis.Redis] = None,
             ttl_seconds: int = 24 * 3600,
             gated: Gated = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError("CallbackGate(redis) requires r=redis.Redis")
        return _CallbackGate(r=r, ttl_seconds=ttl_seconds)
    if db is None:
        raise RuntimeError("CallbackGate(sql) requires db=AsyncSession")
    if gated is None:
        raise RuntimeError("CallbackGate(sql) requires gated=Gated")
    return _CallbackGate(db=db, gated=gated)


CallbackGate = _CallbackGate
__all__ = ["CallbackGate", "new_gate", "BACKEND"]
