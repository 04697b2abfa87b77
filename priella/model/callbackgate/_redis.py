from __future__ import annotations
import redis.asyncio as redis


def k_gate(checkout_request_id: str) -> str:
    return f"cbgate:{checkout_request_id}"


class CallbackGate:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def claim(self, checkout_request_id: str) -> bool:
        # NX gate; expires so a crashed worker cannot block forever
        ok = await self.r.set(
            k_gate(checkout_request_id), "1", nx=True, ex=self.ttl
        )
        return bool(ok)

    async def release(self, checkout_request_id: str) -> None:
        await self.r.delete(k_gate(checkout_request_id))
