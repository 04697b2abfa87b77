"""
Bookings: creation from the booking form, the exact-slot collision check,
and the status machine.

    pending --(payment callback | admin)--> confirmed --(admin)--> completed
    pending --(admin)--> cancelled

Voucher redemption creates bookings directly in `confirmed`
(see model/vouchers.py).
"""
from __future__ import annotations
import uuid
from datetime import date as date_cls
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    ValidationError, NotFoundError, SlotUnavailableError, InvalidTransition,
)
from ..helpers import now_ts, normalize_phone, is_valid_email, eat_today
from .db import Booking, BookingStatus, TransactionType
from . import payments


DURATION_PRICES = {15: 500, 30: 1000, 45: 1500}  # minutes -> KES
TIME_SLOTS = tuple(
    f"{h:02d}:{m:02d}" for h in range(9, 18) for m in (0, 30)
)
BRANCHES = {"the-hub-karen": "The Hub, Karen"}

# statuses that hold a slot
_OCCUPYING = (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value)

ADMIN_TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.COMPLETED},
}


def price_for(duration: int | str | None) -> int:
    try:
        minutes = int(duration)
    except (TypeError, ValueError):
        raise ValidationError("Invalid duration selected")
    if minutes not in DURATION_PRICES:
        raise ValidationError(
            "Duration must be one of "
            + ", ".join(str(d) for d in sorted(DURATION_PRICES))
            + " minutes"
        )
    return DURATION_PRICES[minutes]


def validate_slot(
    date: Optional[str], time: Optional[str], today: Optional[date_cls] = None
) -> tuple[str, str]:
    if not date:
        raise ValidationError("Date is required")
    try:
        d = date_cls.fromisoformat(str(date).strip())
    except ValueError:
        raise ValidationError("Date must be in YYYY-MM-DD format")
    today = today or eat_today()
    if d < today:
        raise ValidationError("Date cannot be in the past")
    if not time:
        raise ValidationError("Time is required")
    t = str(time).strip()
    if t not in TIME_SLOTS:
        raise ValidationError("Please choose one of the available time slots")
    return d.isoformat(), t


def validate_branch(branch: Optional[str]) -> str:
    if not branch or branch not in BRANCHES:
        raise ValidationError("Please select a branch")
    return branch


async def slot_taken(
    db: AsyncSession, *, date: str, time: str, branch: str
) -> bool:
    # Exact start-time match only. Durations are not compared, so a 45 min
    # booking at 10:00 does not block 10:30.
    n = (await db.execute(text("""
        SELECT COUNT(*) FROM bookings
        WHERE date = :date AND branch = :branch AND time = :time
          AND status IN (:s1, :s2)
    """), {
        "date": date, "branch": branch, "time": time,
        "s1": _OCCUPYING[0], "s2": _OCCUPYING[1],
    })).scalar_one()
    return n > 0


async def insert_booking(
    db: AsyncSession,
    *,
    name: str,
    phone: str,
    email: Optional[str],
    date: str,
    time: str,
    duration: int,
    branch: str,
    total_amount: int,
    notes: Optional[str],
    status: BookingStatus,
) -> Booking:
    ts = now_ts()
    booking = Booking(
        id=uuid.uuid4().hex,
        name=name,
        phone=phone,
        email=email,
        date=date,
        time=time,
        duration=int(duration),
        branch=branch,
        total_amount=int(total_amount),
        notes=notes,
        status=BookingStatus(status).value,
        created_at=ts,
        updated_at=ts,
    )
    db.add(booking)
    return booking


async def create_booking(db: AsyncSession, payload: Dict[str, Any]) -> Booking:
    """Guest booking: pending until paid."""
    name = (payload.get("name") or "").strip()
    if len(name) < 2:
        raise ValidationError("Name must be at least 2 characters long")
    phone = normalize_phone(payload.get("phone"))
    email = (payload.get("email") or "").strip() or None
    if email and not is_valid_email(email):
        raise ValidationError("Please enter a valid email address")
    date, time = validate_slot(payload.get("date"), payload.get("time"))
    duration = payload.get("duration")
    price = price_for(duration)
    branch = validate_branch(payload.get("branch"))

    if await slot_taken(db, date=date, time=time, branch=branch):
        raise SlotUnavailableError(
            "The selected time slot is already booked. "
            "Please choose a different time."
        )

    booking = await insert_booking(
        db,
        name=name, phone=phone, email=email, date=date, time=time,
        duration=int(duration), branch=branch, total_amount=price,
        notes=(payload.get("notes") or "").strip() or None,
        status=BookingStatus.PENDING,
    )
    await payments.create_pending(
        db, reference_id=booking.id,
        transaction_type=TransactionType.BOOKING, amount=price,
    )
    return booking


async def get_booking(db: AsyncSession, booking_id: str) -> Dict[str, Any]:
    row = (await db.execute(
        text("SELECT * FROM bookings WHERE id = :id"), {"id": booking_id}
    )).mappings().first()
    if not row:
        raise NotFoundError("Booking not found")
    return dict(row)


async def confirm_if_pending(db: AsyncSession, booking_id: str) -> bool:
    """Payment path: pending -> confirmed. False if not pending (any more)."""
    row = (await db.execute(text("""
        UPDATE bookings SET status = :confirmed, updated_at = :now
        WHERE id = :id AND status = :pending
        RETURNING id
    """), {
        "confirmed": BookingStatus.CONFIRMED.value,
        "pending": BookingStatus.PENDING.value,
        "now": now_ts(),
        "id": booking_id,
    })).first()
    return row is not None


async def transition(
    db: AsyncSession, booking_id: str, new_status: str
) -> Dict[str, Any]:
    """Admin status change, guarded against concurrent writers."""
    try:
        target = BookingStatus(new_status)
    except ValueError:
        raise ValidationError(f"Unknown booking status: {new_status}")

    current = await get_booking(db, booking_id)
    src = BookingStatus(current["status"])
    if target not in ADMIN_TRANSITIONS.get(src, set()):
        raise InvalidTransition(
            f"Cannot change booking from {src.value} to {target.value}"
        )
    row = (await db.execute(text("""
        UPDATE bookings SET status = :to, updated_at = :now
        WHERE id = :id AND status = :src
        RETURNING *
    """), {
        "to": target.value, "src": src.value, "now": now_ts(),
        "id": booking_id,
    })).mappings().first()
    if not row:
        raise InvalidTransition("Booking status changed concurrently")
    return dict(row)


async def list_bookings(
    db: AsyncSession,
    status: Optional[str] = None,
    date: Optional[str] = None,
    limit: int = 200,
) -> List[Dict[str, Any]]:
    clauses, params = [], {"limit": max(1, min(int(limit), 500))}
    if status:
        clauses.append("status = :status")
        params["status"] = status
    if date:
        clauses.append("date = :date")
        params["date"] = date
    where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
    rows = (await db.execute(text(
        f"SELECT * FROM bookings {where} "
        "ORDER BY date DESC, time DESC LIMIT :limit"
    ), params)).mappings().all()
    return [dict(r) for r in rows]
