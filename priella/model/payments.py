from __future__ import annotations
import uuid
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from .db import PaymentTransaction, TransactionType


METHOD_MPESA = "mpesa"
METHOD_MPESA_MANUAL = "mpesa_manual"


async def create_pending(
    db: AsyncSession,
    *,
    reference_id: str,
    transaction_type: TransactionType,
    amount: int,
    payment_method: str = METHOD_MPESA,
    transaction_id: Optional[str] = None,
) -> PaymentTransaction:
    txn = PaymentTransaction(
        id=uuid.uuid4().hex,
        reference_id=reference_id,
        transaction_type=TransactionType(transaction_type).value,
        amount=int(amount),
        currency="KES",
        payment_method=payment_method,
        status="pending",
        transaction_id=transaction_id,
        created_at=now_ts(),
    )
    db.add(txn)
    return txn


async def get(db: AsyncSession, txn_id: str) -> Optional[Dict[str, Any]]:
    row = (await db.execute(
        text("SELECT * FROM payment_transactions WHERE id = :id"),
        {"id": txn_id},
    )).mappings().first()
    return dict(row) if row else None


async def mark_reference_completed(
    db: AsyncSession,
    *,
    reference_id: str,
    transaction_type: TransactionType,
    amount: int,
    transaction_id: Optional[str],
) -> int:
    """
    Complete every pending gateway record for (reference_id, type).

    When nothing was pending and nothing is completed yet, a completed row is
    written so the record set never disagrees with a completed ledger entry.
    Returns the number of rows touched.
    """
    ts = now_ts()
    tt = TransactionType(transaction_type).value
    updated = (await db.execute(text("""
        UPDATE payment_transactions
        SET status = 'completed', completed_at = :now,
            transaction_id = COALESCE(:txid, transaction_id)
        WHERE reference_id = :ref AND transaction_type = :tt
          AND status = 'pending' AND payment_method = :method
        RETURNING id
    """), {
        "now": ts, "txid": transaction_id, "ref": reference_id, "tt": tt,
        "method": METHOD_MPESA,
    })).all()
    if updated:
        return len(updated)

    already = (await db.execute(text("""
        SELECT COUNT(*) FROM payment_transactions
        WHERE reference_id = :ref AND transaction_type = :tt
          AND status = 'completed'
    """), {"ref": reference_id, "tt": tt})).scalar_one()
    if already:
        return 0

    db.add(PaymentTransaction(
        id=uuid.uuid4().hex,
        reference_id=reference_id,
        transaction_type=tt,
        amount=int(amount),
        currency="KES",
        payment_method=METHOD_MPESA,
        status="completed",
        transaction_id=transaction_id,
        completed_at=ts,
        created_at=ts,
    ))
    return 1


async def settle_if_pending(
    db: AsyncSession, txn_id: str, *, completed: bool
) -> Optional[Dict[str, Any]]:
    """pending -> completed|failed for a single record (manual payments)."""
    row = (await db.execute(text("""
        UPDATE payment_transactions
        SET status = :status, completed_at = :completed_at
        WHERE id = :id AND status = 'pending'
        RETURNING *
    """), {
        "status": "completed" if completed else "failed",
        "completed_at": now_ts() if completed else None,
        "id": txn_id,
    })).mappings().first()
    return dict(row) if row else None
