"""
STK push callback handling.

This is the only code path that moves a ledger entry out of `pending`.
Deliveries may arrive zero, one or many times and in any order relative to
status polls, so:

  * a per-checkout-id gate lets one delivery work at a time,
  * the terminal write is `UPDATE ... WHERE status='pending'`, and only the
    delivery that wins it touches the booking/voucher,
  * the gateway is always acknowledged; failures are logged, never raised.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

import orjson
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import (
    GatewayRequestError, NotFoundError, UnknownTransactionType, ValidationError,
)
from .helpers import is_valid_phone, normalize_phone, parse_mpesa_timestamp
from .infra.sql import Gated
from .model import bookings, ledger, payments, vouchers
from .model.db import LedgerStatus, TransactionType

log = structlog.get_logger(__name__)

ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}

# stkpushquery answers with this while the customer has not acted yet
STILL_PROCESSING_CODES = {"4999"}


@dataclass(frozen=True)
class StkCallback:
    checkout_request_id: str
    merchant_request_id: Optional[str]
    result_code: int
    result_desc: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0

    @property
    def amount(self) -> Optional[int]:
        v = self.metadata.get("Amount")
        if v is None:
            return None
        try:
            return int(round(float(v)))
        except (TypeError, ValueError):
            return None

    @property
    def receipt(self) -> Optional[str]:
        v = self.metadata.get("MpesaReceiptNumber")
        return str(v) if v else None

    @property
    def phone_number(self) -> Optional[str]:
        v = self.metadata.get("PhoneNumber")
        if v is None or not is_valid_phone(str(v)):
            return None
        return normalize_phone(str(v))

    @property
    def transaction_date(self) -> Optional[float]:
        return parse_mpesa_timestamp(self.metadata.get("TransactionDate"))


def parse_callback(payload: Any) -> StkCallback:
    """`{"Body": {"stkCallback": {...}}}` -> StkCallback."""
    if not isinstance(payload, dict):
        raise ValidationError("Callback body must be a JSON object")
    stk = (payload.get("Body") or {}).get("stkCallback")
    if not isinstance(stk, dict):
        raise ValidationError("Missing Body.stkCallback")
    cid = stk.get("CheckoutRequestID")
    if not cid:
        raise ValidationError("Missing CheckoutRequestID")
    try:
        result_code = int(stk.get("ResultCode"))
    except (TypeError, ValueError):
        raise ValidationError("Missing or invalid ResultCode")

    metadata: Dict[str, Any] = {}
    items = (stk.get("CallbackMetadata") or {}).get("Item") or []
    for item in items:
        if isinstance(item, dict) and item.get("Name"):
            metadata[item["Name"]] = item.get("Value")

    return StkCallback(
        checkout_request_id=str(cid),
        merchant_request_id=stk.get("MerchantRequestID"),
        result_code=result_code,
        result_desc=stk.get("ResultDesc"),
        metadata=metadata,
    )


# ----------------------------
# Per-type success handlers
# ----------------------------
async def _booking_paid(db: AsyncSession, reference_id: str) -> bool:
    return await bookings.confirm_if_pending(db, reference_id)


async def _voucher_paid(db: AsyncSession, reference_id: str) -> bool:
    return await vouchers.complete_payment_if_pending(db, reference_id)


PAID_HANDLERS: Dict[
    TransactionType, Callable[[AsyncSession, str], Awaitable[bool]]
] = {
    TransactionType.BOOKING: _booking_paid,
    TransactionType.GIFT_VOUCHER: _voucher_paid,
}


async def confirm_entity(
    db: AsyncSession, transaction_type: str, reference_id: str
) -> bool:
    """Unlock the booking/voucher a payment was for. False if not pending."""
    try:
        tt = TransactionType(transaction_type)
    except ValueError:
        raise UnknownTransactionType(
            f"Unknown transaction type: {transaction_type}"
        )
    changed = await PAID_HANDLERS[tt](db, reference_id)
    if not changed:
        # paid for something that is no longer waiting, e.g. cancelled
        log.warning(
            "paid_entity_not_pending",
            transaction_type=tt.value, reference_id=reference_id,
        )
    return changed


async def apply_payment_success(
    db: AsyncSession, entry: Dict[str, Any]
) -> None:
    await confirm_entity(db, entry["transaction_type"], entry["reference_id"])
    await payments.mark_reference_completed(
        db,
        reference_id=entry["reference_id"],
        transaction_type=entry["transaction_type"],
        amount=entry["amount"],
        transaction_id=entry.get("mpesa_receipt_number"),
    )


async def process_callback(
    db: AsyncSession, gated: Gated, cb: StkCallback
) -> str:
    """
    Apply one callback. Returns "completed", "failed", "ignored" (entry
    already terminal) or "unknown" (no ledger entry for this id yet).
    """
    outcome = "ignored"
    async with gated():
        async with db.begin():
            if cb.succeeded:
                entry = await ledger.complete_if_pending(
                    db, cb.checkout_request_id,
                    result_code=cb.result_code,
                    result_desc=cb.result_desc,
                    amount=cb.amount,
                    receipt=cb.receipt,
                    phone_number=cb.phone_number,
                    transaction_date=cb.transaction_date,
                )
                if entry is not None:
                    await apply_payment_success(db, entry)
                    outcome = LedgerStatus.COMPLETED.value
            else:
                entry = await ledger.fail_if_pending(
                    db, cb.checkout_request_id,
                    result_code=cb.result_code,
                    result_desc=cb.result_desc,
                )
                outcome = LedgerStatus.FAILED.value
            if entry is None:
                known = await ledger.get_by_checkout_id(
                    db, cb.checkout_request_id
                )
                outcome = "ignored" if known else "unknown"

    if entry is None:
        log.info(
            "callback_ignored",
            checkout_request_id=cb.checkout_request_id,
            result_code=cb.result_code,
            outcome=outcome,
        )
        return outcome

    log.info(
        "callback_applied",
        checkout_request_id=cb.checkout_request_id,
        outcome=outcome,
        transaction_type=entry["transaction_type"],
        reference_id=entry["reference_id"],
        receipt=entry.get("mpesa_receipt_number"),
    )
    return outcome


async def deliver(db: AsyncSession, gated: Gated, gate, cb: StkCallback) -> str:
    """Gate-protected `process_callback`. Returns "duplicate" if gated out."""
    if not await gate.claim(cb.checkout_request_id):
        log.info("callback_duplicate",
                 checkout_request_id=cb.checkout_request_id)
        return "duplicate"
    try:
        outcome = await process_callback(db, gated, cb)
    except Exception:
        # let a later delivery (or reconciliation) try again
        await gate.release(cb.checkout_request_id)
        raise
    if outcome == "unknown":
        # the ledger row may not be committed yet; keep no trace of the id
        await gate.release(cb.checkout_request_id)
    return outcome


async def handle_callback(
    body: bytes, *, db: AsyncSession, gated: Gated, gate
) -> Dict[str, Any]:
    """Gateway entry point. Never raises; always returns the ack body."""
    try:
        payload = orjson.loads(body)
    except orjson.JSONDecodeError:
        log.warning("callback_malformed_json", size=len(body or b""))
        return ACK

    try:
        cb = parse_callback(payload)
    except ValidationError as e:
        log.warning("callback_malformed", error=e.message)
        return ACK

    log.info(
        "callback_received",
        checkout_request_id=cb.checkout_request_id,
        result_code=cb.result_code,
    )
    try:
        await deliver(db, gated, gate, cb)
    except Exception:
        log.exception(
            "callback_processing_failed",
            checkout_request_id=cb.checkout_request_id,
        )
    return ACK


async def reconcile_from_query(
    db: AsyncSession, gated: Gated, gate, gateway, checkout_request_id: str
) -> Dict[str, Any]:
    """
    Ask the gateway about a pending entry whose callback never came, and
    feed a conclusive answer through the callback path.
    """
    async with gated():
        async with db.begin():
            entry = await ledger.get_by_checkout_id(db, checkout_request_id)
    if entry is None:
        raise NotFoundError("Transaction not found")
    if entry["status"] != LedgerStatus.PENDING.value:
        return {"status": entry["status"], "changed": False}

    data = await gateway.query(checkout_request_id)
    rc = data.get("ResultCode")
    if rc is None or str(rc) == "" or str(rc) in STILL_PROCESSING_CODES:
        log.info(
            "reconcile_inconclusive",
            checkout_request_id=checkout_request_id,
            detail=data.get("errorMessage") or data.get("ResultDesc"),
        )
        return {
            "status": LedgerStatus.PENDING.value,
            "changed": False,
            "detail": data.get("errorMessage") or data.get("ResultDesc"),
        }

    try:
        result_code = int(rc)
    except (TypeError, ValueError):
        raise GatewayRequestError(f"Unexpected M-Pesa ResultCode: {rc!r}")
    cb = StkCallback(
        checkout_request_id=checkout_request_id,
        merchant_request_id=data.get("MerchantRequestID"),
        result_code=result_code,
        result_desc=data.get("ResultDesc"),
    )
    outcome = await deliver(db, gated, gate, cb)

    async with gated():
        async with db.begin():
            entry = await ledger.get_by_checkout_id(db, checkout_request_id)
    return {
        "status": entry["status"],
        "changed": outcome in ("completed", "failed"),
    }
