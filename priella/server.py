from __future__ import annotations
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx
import redis.asyncio as redis
import structlog

from fastapi import Depends, FastAPI, Request
from fastapi.responses import ORJSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.sessions import SessionMiddleware

from . import config
from . import callback
from .daraja import DarajaGateway, PaymentGateway
from .errors import (
    PriellaError, ValidationError, ConflictError, NotFoundError,
)
from .helpers import to_iso, normalize_phone
from .infra.logging import configure_logging
from .infra.sql import make_async_engine
from .infra.timings import timeit, snapshot
from .model import admin, bookings, ledger, payments, vouchers
from .model.admin import AdminContext
from .model.callbackgate import CallbackGate, new_gate, BACKEND as GATE_BACKEND
from .model.db import (
    Base, TransactionType, BookingStatus, VoucherStatus, VoucherPaymentStatus,
)

log = structlog.get_logger(__name__)

engine, SessionAsync, gated = make_async_engine(config.DATABASE_URL)


async def get_db() -> AsyncSession:
    async with SessionAsync() as session:
        yield session


# ---
# startup / shutdown
# ---
def _say_hello():
    print('\n' * 3)
    print('=' * 50)
    print('Priella payments is starting up...')
    print(f'   - Database:            {engine.url.get_backend_name()}')
    print(f'   - Callback gate:       {GATE_BACKEND}')
    print(f'   - M-Pesa environment:  {config.MPESA_ENV}')
    print('=' * 50)
    print('\n' * 3)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    _say_hello()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    app.state.http = httpx.AsyncClient(
        timeout=config.MPESA_HTTP_TIMEOUT,
        limits=httpx.Limits(max_connections=64, max_keepalive_connections=64),
    )
    app.state.gateway = DarajaGateway.from_config(app.state.http)

    app.state.redis = None
    if GATE_BACKEND == "redis":
        app.state.redis = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            max_connections=config.REDIS_MAX_CONN,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
    try:
        yield
    finally:
        await app.state.http.aclose()
        app.state.http = None
        if app.state.redis is not None:
            await app.state.redis.aclose()
            app.state.redis = None
        await engine.dispose()


app = FastAPI(
    title="Priella",
    default_response_class=ORJSONResponse,
    lifespan=lifespan,
)
app.add_middleware(SessionMiddleware, secret_key=config.SESSION_SECRET)


@app.exception_handler(PriellaError)
async def _priella_error(request: Request, exc: PriellaError):
    if exc.status_code >= 500:
        log.warning("request_failed", path=request.url.path,
                    code=exc.code, error=exc.message)
    return ORJSONResponse(exc.to_dict(), status_code=exc.status_code)


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


async def callback_gate(request: Request) -> CallbackGate:
    if GATE_BACKEND == "redis":
        yield new_gate(r=request.app.state.redis)
    else:
        async with SessionAsync() as session:
            yield new_gate(db=session, gated=gated)


# ----------------------------
# Helpers
# ----------------------------
def _as_dict(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, dict):
        return dict(obj)
    return {c.name: getattr(obj, c.name) for c in obj.__table__.columns}


def _with_iso(d: Dict[str, Any], *keys: str) -> Dict[str, Any]:
    for k in keys:
        if k in d:
            d[k] = to_iso(d[k])
    return d


def booking_out(b: Any) -> Dict[str, Any]:
    return _with_iso(_as_dict(b), "created_at", "updated_at")


def voucher_out(v: Any) -> Dict[str, Any]:
    return _with_iso(
        _as_dict(v), "expires_at", "redeemed_at", "created_at", "updated_at"
    )


def ledger_out(e: Dict[str, Any]) -> Dict[str, Any]:
    return _with_iso(dict(e), "transaction_date", "created_at", "updated_at")


def payment_out(p: Any) -> Dict[str, Any]:
    return _with_iso(_as_dict(p), "completed_at", "created_at")


def _transaction_type(value: Any) -> TransactionType:
    try:
        return TransactionType(value)
    except ValueError:
        raise ValidationError(f"Unknown transaction type: {value}")


def _whole_amount(value: Any) -> int:
    try:
        amount = int(value)
    except (TypeError, ValueError):
        raise ValidationError("Amount must be a whole number")
    if amount != value and str(amount) != str(value).strip():
        raise ValidationError("Amount must be a whole number")
    if amount <= 0:
        raise ValidationError("Amount must be positive")
    return amount


async def _amount_due(
    db: AsyncSession, tt: TransactionType, reference_id: str
) -> int:
    """Price of the booking/voucher, if it is still waiting for payment."""
    if tt is TransactionType.BOOKING:
        b = await bookings.get_booking(db, reference_id)
        if b["status"] != BookingStatus.PENDING.value:
            raise ConflictError("This booking is not awaiting payment")
        return int(b["total_amount"])
    v = await vouchers.get_voucher(db, reference_id)
    if (
        v["payment_status"] != VoucherPaymentStatus.PENDING.value
        or v["status"] != VoucherStatus.ACTIVE.value
    ):
        raise ConflictError("This voucher is not awaiting payment")
    return int(v["amount"])


def _session_token(request: Request) -> Optional[str]:
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return request.session.get("admin_token")


async def require_admin(
    request: Request, db: AsyncSession = Depends(get_db)
) -> AdminContext:
    async with timeit("db.admin_session"):
        async with gated():
            async with db.begin():
                return await admin.validate_session(db, _session_token(request))


# ----------------------------
# Payments
# ----------------------------
@app.post("/api/payments/stk-push")
async def initiate_payment(
    payload: dict,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    phone = payload.get("phone")
    amount = payload.get("amount")
    reference_id = payload.get("reference_id")
    transaction_type = payload.get("transaction_type")
    if not phone or not amount or not reference_id or not transaction_type:
        raise ValidationError("Missing required fields")
    tt = _transaction_type(transaction_type)
    amount = _whole_amount(amount)
    msisdn = normalize_phone(phone)

    async with gated():
        async with db.begin():
            due = await _amount_due(db, tt, reference_id)
    if amount != due:
        raise ValidationError(f"Amount must be KSh {due}")

    async with timeit("daraja.initiate"):
        res = await gateway.initiate(msisdn, amount, reference_id, tt)

    async with timeit("db.ledger_create"):
        async with gated():
            async with db.begin():
                await ledger.create_pending(
                    db,
                    checkout_request_id=res["checkout_request_id"],
                    merchant_request_id=res["merchant_request_id"],
                    amount=amount,
                    phone_number=res["phone_number"],
                    reference_id=reference_id,
                    transaction_type=tt,
                )
    return {
        "success": True,
        "message": "STK Push sent successfully",
        "checkout_request_id": res["checkout_request_id"],
        "merchant_request_id": res["merchant_request_id"],
    }


@app.post("/api/payments/mpesa-callback")
async def mpesa_callback(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gate: CallbackGate = Depends(callback_gate),
):
    body = await request.body()
    async with timeit("callback.handle"):
        return await callback.handle_callback(
            body, db=db, gated=gated, gate=gate
        )


@app.get("/api/payments/status/{checkout_request_id}")
async def payment_status(
    checkout_request_id: str, db: AsyncSession = Depends(get_db)
):
    async with timeit("db.ledger_status"):
        async with gated():
            async with db.begin():
                e = await ledger.get_by_checkout_id(db, checkout_request_id)
    if not e:
        # not recorded (yet): the poller keeps going
        raise NotFoundError("Transaction not found")
    return {
        "checkout_request_id": e["checkout_request_id"],
        "status": e["status"],
        "result_code": e["result_code"],
        "result_desc": e["result_desc"],
        "mpesa_receipt_number": e["mpesa_receipt_number"],
    }


@app.post("/api/payments/manual")
async def submit_manual_payment(
    payload: dict, db: AsyncSession = Depends(get_db)
):
    reference_id = payload.get("reference_id")
    if not reference_id:
        raise ValidationError("reference_id is required")
    tt = _transaction_type(payload.get("transaction_type"))
    amount = _whole_amount(payload.get("amount"))
    code = (payload.get("transaction_code") or "").strip().upper()
    if not code.isalnum() or not 8 <= len(code) <= 12:
        raise ValidationError("Please enter the M-Pesa transaction code")

    async with gated():
        async with db.begin():
            due = await _amount_due(db, tt, reference_id)
            if amount != due:
                raise ValidationError(f"Amount must be KSh {due}")
            txn = await payments.create_pending(
                db,
                reference_id=reference_id,
                transaction_type=tt,
                amount=amount,
                payment_method=payments.METHOD_MPESA_MANUAL,
                transaction_id=code,
            )
    log.info("manual_payment_submitted", payment_id=txn.id,
             reference_id=reference_id, transaction_type=tt.value)
    return payment_out(txn)


# ----------------------------
# Bookings
# ----------------------------
@app.post("/api/bookings")
async def create_booking(payload: dict, db: AsyncSession = Depends(get_db)):
    async with timeit("db.create_booking"):
        async with gated():
            async with db.begin():
                b = await bookings.create_booking(db, payload)
    log.info("booking_created", booking_id=b.id, date=b.date, time=b.time)
    return booking_out(b)


@app.get("/api/bookings/{booking_id}")
async def get_booking(booking_id: str, db: AsyncSession = Depends(get_db)):
    async with gated():
        async with db.begin():
            b = await bookings.get_booking(db, booking_id)
    return booking_out(b)


# ----------------------------
# Vouchers
# ----------------------------
@app.post("/api/vouchers")
async def purchase_voucher(payload: dict, db: AsyncSession = Depends(get_db)):
    async with timeit("db.purchase_voucher"):
        async with gated():
            v = await vouchers.purchase_voucher(db, payload)
    log.info("voucher_created", voucher_id=v.id, amount=v.amount)
    return voucher_out(v)


@app.post("/api/vouchers/validate")
async def validate_voucher(payload: dict, db: AsyncSession = Depends(get_db)):
    async with gated():
        async with db.begin():
            v = await vouchers.validate_voucher(db, payload.get("voucher_code"))
    return {
        "valid": True,
        "voucher_code": v["voucher_code"],
        "recipient_name": v["recipient_name"],
        "amount": v["amount"],
        "branch": v["branch"],
        "expires_at": to_iso(v["expires_at"]),
    }


@app.post("/api/vouchers/redeem")
async def redeem_voucher(payload: dict, db: AsyncSession = Depends(get_db)):
    async with timeit("db.redeem_voucher"):
        async with gated():
            out = await vouchers.redeem_voucher(
                db, payload.get("voucher_code"), payload
            )
    return {
        "success": True,
        "voucher": voucher_out(out["voucher"]),
        "booking": booking_out(out["booking"]),
    }


# ----------------------------
# Admin: session
# ----------------------------
@app.post("/admin/login")
async def admin_login(
    request: Request, payload: dict, db: AsyncSession = Depends(get_db)
):
    async with gated():
        async with db.begin():
            user = await admin.authenticate(
                db, payload.get("email"), payload.get("password")
            )
            s = await admin.create_session(
                db, user["id"], config.ADMIN_SESSION_TTL_SECONDS
            )
    request.session["admin_token"] = s.token
    log.info("admin_login", admin_id=user["id"])
    return {
        "token": s.token,
        "expires_at": to_iso(s.expires_at),
        "admin": {
            "id": user["id"],
            "email": user["email"],
            "name": user["name"],
            "role": user["role"],
        },
    }


@app.post("/admin/logout")
async def admin_logout(request: Request, db: AsyncSession = Depends(get_db)):
    async with gated():
        async with db.begin():
            await admin.revoke_session(db, _session_token(request))
    request.session.clear()
    return {"ok": True}


# ----------------------------
# Admin: bookings & vouchers
# ----------------------------
@app.get("/api/admin/bookings")
async def api_admin_bookings(
    status: Optional[str] = None,
    date: Optional[str] = None,
    limit: int = 200,
    db: AsyncSession = Depends(get_db),
    _: AdminContext = Depends(require_admin),
):
    async with gated():
        async with db.begin():
            rows = await bookings.list_bookings(
                db, status=status, date=date, limit=limit
            )
    return {"items": [booking_out(r) for r in rows], "limit": limit}


@app.post("/api/admin/bookings/{booking_id}/status")
async def api_admin_booking_status(
    booking_id: str,
    payload: dict,
    db: AsyncSession = Depends(get_db),
    who: AdminContext = Depends(require_admin),
):
    async with gated():
        async with db.begin():
            b = await bookings.transition(db, booking_id, payload.get("status"))
    log.info("booking_status_changed", booking_id=booking_id,
             status=b["status"], admin_id=who.admin_id)
    return booking_out(b)


@app.get("/api/admin/vouchers")
async def api_admin_vouchers(
    status: Optional[str] = None,
    limit: int = 200,
    db: AsyncSession = Depends(get_db),
    _: AdminContext = Depends(require_admin),
):
    async with gated():
        async with db.begin():
            rows = await vouchers.list_vouchers(db, status=status, limit=limit)
    return {"items": [voucher_out(r) for r in rows], "limit": limit}


@app.post("/api/admin/vouchers/{voucher_id}/status")
async def api_admin_voucher_status(
    voucher_id: str,
    payload: dict,
    db: AsyncSession = Depends(get_db),
    who: AdminContext = Depends(require_admin),
):
    async with gated():
        async with db.begin():
            v = await vouchers.transition(db, voucher_id, payload.get("status"))
    log.info("voucher_status_changed", voucher_id=voucher_id,
             status=v["status"], admin_id=who.admin_id)
    return voucher_out(v)


@app.post("/api/admin/vouchers/expire")
async def api_admin_expire_vouchers(
    db: AsyncSession = Depends(get_db),
    _: AdminContext = Depends(require_admin),
):
    async with gated():
        async with db.begin():
            n = await vouchers.expire_overdue(db)
    return {"expired": n}


# ----------------------------
# Admin: reconciliation & manual payments
# ----------------------------
@app.get("/api/admin/ledger/pending")
async def api_admin_pending(
    older_than_s: Optional[float] = None,
    limit: int = 100,
    db: AsyncSession = Depends(get_db),
    _: AdminContext = Depends(require_admin),
):
    if older_than_s is None:
        older_than_s = config.STALE_PENDING_SECONDS
    async with gated():
        async with db.begin():
            rows = await ledger.list_stale_pending(db, older_than_s, limit)
    return {"items": [ledger_out(r) for r in rows], "limit": limit}


@app.post("/api/admin/ledger/{checkout_request_id}/reconcile")
async def api_admin_reconcile(
    checkout_request_id: str,
    db: AsyncSession = Depends(get_db),
    gate: CallbackGate = Depends(callback_gate),
    gateway: PaymentGateway = Depends(get_gateway),
    who: AdminContext = Depends(require_admin),
):
    async with timeit("callback.reconcile"):
        out = await callback.reconcile_from_query(
            db, gated, gate, gateway, checkout_request_id
        )
    log.info("ledger_reconciled", checkout_request_id=checkout_request_id,
             admin_id=who.admin_id, **out)
    return out


async def _settle_manual(
    db: AsyncSession, payment_id: str, completed: bool
) -> Dict[str, Any]:
    async with gated():
        async with db.begin():
            p = await payments.get(db, payment_id)
            if not p:
                raise NotFoundError("Payment not found")
            if p["payment_method"] != payments.METHOD_MPESA_MANUAL:
                raise ConflictError("Only manual payments can be settled here")
            p = await payments.settle_if_pending(
                db, payment_id, completed=completed
            )
            if p is None:
                raise ConflictError("Payment is not pending")
            if completed:
                await callback.confirm_entity(
                    db, p["transaction_type"], p["reference_id"]
                )
    return p


@app.post("/api/admin/payments/{payment_id}/verify")
async def api_admin_verify_payment(
    payment_id: str,
    db: AsyncSession = Depends(get_db),
    who: AdminContext = Depends(require_admin),
):
    p = await _settle_manual(db, payment_id, completed=True)
    log.info("manual_payment_verified", payment_id=payment_id,
             admin_id=who.admin_id)
    return payment_out(p)


@app.post("/api/admin/payments/{payment_id}/reject")
async def api_admin_reject_payment(
    payment_id: str,
    db: AsyncSession = Depends(get_db),
    who: AdminContext = Depends(require_admin),
):
    p = await _settle_manual(db, payment_id, completed=False)
    log.info("manual_payment_rejected", payment_id=payment_id,
             admin_id=who.admin_id)
    return payment_out(p)


@app.get("/api/admin/timings")
async def api_admin_timings(_: AdminContext = Depends(require_admin)):
    return {"items": snapshot()}
