"""
Client-side payment status poller.

Reads GET /api/payments/status/{checkout_request_id} on a fixed interval
until the ledger entry is terminal, the attempt/wall-clock budget runs out,
or the caller sets `stop`. Running out of budget is reported as TIMEOUT,
not as a failure: the callback may still land afterwards.
"""
from __future__ import annotations
import asyncio
import enum
import time
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

log = structlog.get_logger(__name__)

DEFAULT_INTERVAL_S = 5.0
DEFAULT_MAX_ATTEMPTS = 24  # two minutes at the default interval


class PollOutcome(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class PollResult:
    outcome: PollOutcome
    attempts: int
    elapsed_s: float
    status: str = "pending"  # last status seen
    result_code: Optional[int] = None

    @property
    def message(self) -> str:
        if self.outcome is PollOutcome.COMPLETED:
            return "Payment successful! Your booking is confirmed."
        if self.outcome is PollOutcome.FAILED:
            return "Payment failed. Please try again."
        if self.outcome is PollOutcome.TIMEOUT:
            return (
                "We have not received a confirmation yet. Please check your "
                "M-Pesa messages and the booking status before paying again."
            )
        return "Stopped waiting for payment confirmation."


async def _pause(seconds: float, stop: Optional[asyncio.Event]) -> None:
    if seconds <= 0:
        return
    if stop is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


async def poll_payment_status(
    client: httpx.AsyncClient,
    base_url: str,
    checkout_request_id: str,
    interval_s: float = DEFAULT_INTERVAL_S,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    max_wait_s: Optional[float] = None,
    stop: Optional[asyncio.Event] = None,
) -> PollResult:
    t0 = time.perf_counter()
    deadline = None if max_wait_s is None else t0 + max_wait_s
    url = f"{base_url.rstrip('/')}/api/payments/status/{checkout_request_id}"
    status, result_code = "pending", None
    attempts = 0

    def _result(outcome: PollOutcome) -> PollResult:
        return PollResult(
            outcome=outcome,
            attempts=attempts,
            elapsed_s=time.perf_counter() - t0,
            status=status,
            result_code=result_code,
        )

    while attempts < max_attempts:
        if stop is not None and stop.is_set():
            return _result(PollOutcome.CANCELLED)
        if deadline is not None and time.perf_counter() >= deadline:
            break

        attempts += 1
        try:
            resp = await client.get(url, timeout=10.0)
        except httpx.HTTPError as e:
            # transport hiccup: treat as still pending
            log.debug("poll_transport_error", attempt=attempts, error=str(e))
            resp = None

        jo = None
        if resp is not None and resp.status_code == 200:
            try:
                jo = resp.json()
            except ValueError:
                log.debug("poll_unreadable_body", attempt=attempts)
        if isinstance(jo, dict):
            status = jo.get("status", status)
            result_code = jo.get("result_code", result_code)
            if status == "completed":
                return _result(PollOutcome.COMPLETED)
            if status == "failed":
                return _result(PollOutcome.FAILED)

        if attempts >= max_attempts:
            break
        wait = interval_s
        if deadline is not None:
            wait = min(wait, max(0.0, deadline - time.perf_counter()))
        await _pause(wait, stop)

    if stop is not None and stop.is_set():
        return _result(PollOutcome.CANCELLED)
    log.info(
        "poll_timeout",
        checkout_request_id=checkout_request_id, attempts=attempts,
    )
    return _result(PollOutcome.TIMEOUT)
