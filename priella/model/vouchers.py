"""
Gift vouchers: purchase, validation and redemption.

Redemption walks code-entry -> validated -> booked. The last step is one
database transaction whose first statement is a compare-and-swap
`active -> redeemed`; the zero-cost booking is inserted in the same
transaction, so a failure after the swap rolls it back and two concurrent
redemptions of one code cannot both succeed.
"""
from __future__ import annotations
import secrets
import string
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from ..errors import (
    ValidationError, NotFoundError, ConflictError, VoucherExpiredError,
    InsufficientVoucherValue, SlotUnavailableError, InvalidTransition,
)
from ..helpers import now_ts, normalize_phone, add_months
from .db import (
    GiftVoucher, VoucherStatus, VoucherPaymentStatus, BookingStatus,
    TransactionType,
)
from . import bookings, payments

log = structlog.get_logger(__name__)

CODE_PREFIX = "PRI-"
CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 8
VALIDITY_MONTHS = 12
MIN_AMOUNT = min(bookings.DURATION_PRICES.values())

ADMIN_TRANSITIONS = {
    VoucherStatus.ACTIVE: {
        VoucherStatus.REDEEMED, VoucherStatus.CANCELLED, VoucherStatus.EXPIRED,
    },
}


def generate_code() -> str:
    return CODE_PREFIX + "".join(
        secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH)
    )


def normalize_code(code: Optional[str]) -> str:
    c = (code or "").strip().upper()
    if not c:
        raise ValidationError("Please enter your voucher code.")
    return c


def _require_text(payload: Dict[str, Any], key: str, label: str) -> str:
    v = (payload.get(key) or "").strip()
    if len(v) < 2:
        raise ValidationError(f"{label} must be at least 2 characters long")
    return v


def _parse_amount(value: Any) -> int:
    try:
        amount = int(value)
    except (TypeError, ValueError):
        raise ValidationError("Amount must be a whole number")
    if isinstance(value, float) and value != amount:
        raise ValidationError("Amount must be a whole number")
    if amount < MIN_AMOUNT:
        raise ValidationError(f"Minimum voucher amount is KSh {MIN_AMOUNT}")
    return amount


async def purchase_voucher(
    db: AsyncSession, payload: Dict[str, Any], max_attempts: int = 5
) -> GiftVoucher:
    """
    New voucher: active, payment pending, valid for 12 months.

    Runs its own transactions (one per code attempt) because a code
    collision has to roll back and retry.
    """
    sender = _require_text(payload, "sender_name", "Sender name")
    recipient = _require_text(payload, "recipient_name", "Recipient name")
    phone = normalize_phone(payload.get("recipient_phone"))
    amount = _parse_amount(payload.get("amount"))
    branch = bookings.validate_branch(payload.get("branch"))
    message = (payload.get("message") or "").strip() or None

    for attempt in range(1, max_attempts + 1):
        ts = now_ts()
        voucher = GiftVoucher(
            id=uuid.uuid4().hex,
            voucher_code=generate_code(),
            sender_name=sender,
            recipient_name=recipient,
            recipient_phone=phone,
            amount=amount,
            branch=branch,
            message=message,
            status=VoucherStatus.ACTIVE.value,
            payment_status=VoucherPaymentStatus.PENDING.value,
            expires_at=add_months(ts, VALIDITY_MONTHS),
            created_at=ts,
            updated_at=ts,
        )
        try:
            async with db.begin():
                db.add(voucher)
                await payments.create_pending(
                    db, reference_id=voucher.id,
                    transaction_type=TransactionType.GIFT_VOUCHER,
                    amount=amount,
                )
        except IntegrityError:
            log.warning("voucher_code_collision", attempt=attempt)
            db.expunge_all()
            continue
        return voucher
    raise ConflictError("Could not allocate a voucher code, please retry")


async def _find_by_code(
    db: AsyncSession, code: str
) -> Optional[Dict[str, Any]]:
    row = (await db.execute(
        text("SELECT * FROM gift_vouchers WHERE voucher_code = :code"),
        {"code": code},
    )).mappings().first()
    return dict(row) if row else None


async def validate_voucher(
    db: AsyncSession, code: Optional[str], now: Optional[float] = None
) -> Dict[str, Any]:
    """code-entry -> validated."""
    code = normalize_code(code)
    v = await _find_by_code(db, code)
    if (
        v is None
        or v["status"] != VoucherStatus.ACTIVE.value
        or v["payment_status"] != VoucherPaymentStatus.COMPLETED.value
    ):
        raise NotFoundError(
            "Voucher code not found or already used. "
            "Please check your code and try again."
        )
    now = now_ts() if now is None else now
    if v["expires_at"] < now:
        raise VoucherExpiredError(
            "This voucher has expired. Please contact us for assistance."
        )
    return v


async def redeem_voucher(
    db: AsyncSession, code: Optional[str], payload: Dict[str, Any]
) -> Dict[str, Any]:
    """
    validated -> booked.

    Returns {"voucher": ..., "booking": ...}. Performs no writes unless the
    whole redemption succeeds.
    """
    date, time = bookings.validate_slot(payload.get("date"), payload.get("time"))
    duration = payload.get("duration")
    price = bookings.price_for(duration)
    extra_notes = (payload.get("notes") or "").strip()

    async with db.begin():
        v = await validate_voucher(db, code)
    if v["amount"] < price:
        raise InsufficientVoucherValue(
            f"This voucher (Ksh {v['amount']}) cannot cover a "
            f"{int(duration)} minute session (Ksh {price}). Please select a "
            "different duration or contact us for assistance."
        )

    ts = now_ts()
    async with db.begin():
        # compare-and-swap first: the write lock is taken before anything
        # else is read in this transaction
        swapped = (await db.execute(text("""
            UPDATE gift_vouchers
            SET status = :redeemed, redeemed_at = :now, updated_at = :now
            WHERE id = :id AND status = :active
              AND payment_status = :paid AND expires_at > :now
            RETURNING id
        """), {
            "redeemed": VoucherStatus.REDEEMED.value,
            "active": VoucherStatus.ACTIVE.value,
            "paid": VoucherPaymentStatus.COMPLETED.value,
            "now": ts,
            "id": v["id"],
        })).first()
        if swapped is None:
            raise ConflictError("Voucher has already been redeemed")

        if await bookings.slot_taken(
            db, date=date, time=time, branch=v["branch"]
        ):
            raise SlotUnavailableError(
                "The selected time slot is already booked. "
                "Please choose a different time."
            )

        notes = f"Voucher redemption - Code: {v['voucher_code']}. {extra_notes}"
        booking = await bookings.insert_booking(
            db,
            name=v["recipient_name"],
            phone=v["recipient_phone"],
            email=None,
            date=date,
            time=time,
            duration=int(duration),
            branch=v["branch"],
            total_amount=0,
            notes=notes.strip(),
            status=BookingStatus.CONFIRMED,
        )
        await db.flush()
        await db.execute(text("""
            UPDATE gift_vouchers SET redeemed_booking_id = :bid
            WHERE id = :id
        """), {"bid": booking.id, "id": v["id"]})

    log.info(
        "voucher_redeemed",
        voucher_id=v["id"], booking_id=booking.id, date=date, time=time,
    )
    v.update(
        status=VoucherStatus.REDEEMED.value, redeemed_at=ts,
        redeemed_booking_id=booking.id,
    )
    return {"voucher": v, "booking": booking}


async def complete_payment_if_pending(db: AsyncSession, voucher_id: str) -> bool:
    """Payment path: payment_status pending -> completed."""
    row = (await db.execute(text("""
        UPDATE gift_vouchers SET payment_status = :completed, updated_at = :now
        WHERE id = :id AND payment_status = :pending
        RETURNING id
    """), {
        "completed": VoucherPaymentStatus.COMPLETED.value,
        "pending": VoucherPaymentStatus.PENDING.value,
        "now": now_ts(),
        "id": voucher_id,
    })).first()
    return row is not None


async def get_voucher(db: AsyncSession, voucher_id: str) -> Dict[str, Any]:
    row = (await db.execute(
        text("SELECT * FROM gift_vouchers WHERE id = :id"), {"id": voucher_id}
    )).mappings().first()
    if not row:
        raise NotFoundError("Voucher not found")
    return dict(row)


async def transition(
    db: AsyncSession, voucher_id: str, new_status: str
) -> Dict[str, Any]:
    try:
        target = VoucherStatus(new_status)
    except ValueError:
        raise ValidationError(f"Unknown voucher status: {new_status}")

    current = await get_voucher(db, voucher_id)
    src = VoucherStatus(current["status"])
    if target not in ADMIN_TRANSITIONS.get(src, set()):
        raise InvalidTransition(
            f"Cannot change voucher from {src.value} to {target.value}"
        )
    ts = now_ts()
    row = (await db.execute(text("""
        UPDATE gift_vouchers
        SET status = :to, updated_at = :now,
            redeemed_at = CASE WHEN :to = 'redeemed' THEN :now
                               ELSE redeemed_at END
        WHERE id = :id AND status = :src
        RETURNING *
    """), {
        "to": target.value, "src": src.value, "now": ts, "id": voucher_id,
    })).mappings().first()
    if not row:
        raise InvalidTransition("Voucher status changed concurrently")
    return dict(row)


async def expire_overdue(db: AsyncSession, now: Optional[float] = None) -> int:
    """active vouchers past expires_at -> expired. Returns count."""
    rows = (await db.execute(text("""
        UPDATE gift_vouchers SET status = :expired, updated_at = :now
        WHERE status = :active AND expires_at < :now
        RETURNING id
    """), {
        "expired": VoucherStatus.EXPIRED.value,
        "active": VoucherStatus.ACTIVE.value,
        "now": now_ts() if now is None else now,
    })).all()
    return len(rows)


async def list_vouchers(
    db: AsyncSession, status: Optional[str] = None, limit: int = 200
) -> List[Dict[str, Any]]:
    params: Dict[str, Any] = {"limit": max(1, min(int(limit), 500))}
    where = ""
    if status:
        where = "WHERE status = :status"
        params["status"] = status
    rows = (await db.execute(text(
        f"SELECT * FROM gift_vouchers {where} "
        "ORDER BY created_at DESC LIMIT :limit"
    ), params)).mappings().all()
    return [dict(r) for r in rows]
