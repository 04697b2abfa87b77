"""
Transaction ledger: one row per STK push attempt, keyed by the gateway's
CheckoutRequestID.

Functions here run inside the caller's transaction (`async with db.begin()`)
so the callback path can commit the ledger write together with the entity
it unlocks.
"""
from __future__ import annotations
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from .db import LedgerEntry, LedgerStatus, TransactionType


_LEDGER_COLUMNS = """
    id, checkout_request_id, merchant_request_id, amount, phone_number,
    reference_id, transaction_type, status, result_code, result_desc,
    mpesa_receipt_number, transaction_date, created_at, updated_at
"""


async def create_pending(
    db: AsyncSession,
    *,
    checkout_request_id: str,
    merchant_request_id: Optional[str],
    amount: int,
    phone_number: str,
    reference_id: str,
    transaction_type: TransactionType,
) -> LedgerEntry:
    ts = now_ts()
    entry = LedgerEntry(
        id=uuid.uuid4().hex,
        checkout_request_id=checkout_request_id,
        merchant_request_id=merchant_request_id,
        amount=int(amount),
        phone_number=phone_number,
        reference_id=reference_id,
        transaction_type=TransactionType(transaction_type).value,
        status=LedgerStatus.PENDING.value,
        created_at=ts,
        updated_at=ts,
    )
    db.add(entry)
    return entry


async def get_by_checkout_id(
    db: AsyncSession, checkout_request_id: str
) -> Optional[Dict[str, Any]]:
    row = (await db.execute(
        text(f"SELECT {_LEDGER_COLUMNS} FROM mpesa_transactions "
             "WHERE checkout_request_id = :cid"),
        {"cid": checkout_request_id},
    )).mappings().first()
    return dict(row) if row else None


async def complete_if_pending(
    db: AsyncSession,
    checkout_request_id: str,
    *,
    result_code: int,
    result_desc: Optional[str],
    amount: Optional[int] = None,
    receipt: Optional[str] = None,
    phone_number: Optional[str] = None,
    transaction_date: Optional[float] = None,
) -> Optional[Dict[str, Any]]:
    """
    pending -> completed, in one statement.

    Returns the updated row, or None when the id is unknown or the entry is
    already terminal. Only a caller that gets a row back may apply side
    effects.
    """
    row = (await db.execute(text(f"""
        UPDATE mpesa_transactions SET
            status = :completed,
            result_code = :result_code,
            result_desc = :result_desc,
            amount = COALESCE(:amount, amount),
            mpesa_receipt_number = :receipt,
            phone_number = COALESCE(:phone, phone_number),
            transaction_date = :tdate,
            updated_at = :now
        WHERE checkout_request_id = :cid AND status = :pending
        RETURNING {_LEDGER_COLUMNS}
    """), {
        "completed": LedgerStatus.COMPLETED.value,
        "pending": LedgerStatus.PENDING.value,
        "result_code": result_code,
        "result_desc": result_desc,
        "amount": amount,
        "receipt": receipt,
        "phone": phone_number,
        "tdate": transaction_date,
        "now": now_ts(),
        "cid": checkout_request_id,
    })).mappings().first()
    return dict(row) if row else None


async def fail_if_pending(
    db: AsyncSession,
    checkout_request_id: str,
    *,
    result_code: int,
    result_desc: Optional[str],
) -> Optional[Dict[str, Any]]:
    row = (await db.execute(text(f"""
        UPDATE mpesa_transactions SET
            status = :failed,
            result_code = :result_code,
            result_desc = :result_desc,
            updated_at = :now
        WHERE checkout_request_id = :cid AND status = :pending
        RETURNING {_LEDGER_COLUMNS}
    """), {
        "failed": LedgerStatus.FAILED.value,
        "pending": LedgerStatus.PENDING.value,
        "result_code": result_code,
        "result_desc": result_desc,
        "now": now_ts(),
        "cid": checkout_request_id,
    })).mappings().first()
    return dict(row) if row else None


async def list_stale_pending(
    db: AsyncSession, older_than_s: float, limit: int = 100
) -> List[Dict[str, Any]]:
    # candidates for reconciliation: callback never arrived
    rows = (await db.execute(text(f"""
        SELECT {_LEDGER_COLUMNS} FROM mpesa_transactions
        WHERE status = :pending AND created_at < :cutoff
        ORDER BY created_at ASC
        LIMIT :lim
    """), {
        "pending": LedgerStatus.PENDING.value,
        "cutoff": now_ts() - older_than_s,
        "lim": max(1, min(int(limit), 500)),
    })).mappings().all()
    return [dict(r) for r in rows]
