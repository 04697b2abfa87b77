import os
import tempfile

# settings are read at import time
_TMP = tempfile.mkdtemp(prefix="priella-test-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP}/app.db"
os.environ["CALLBACKGATE_BACKEND"] = "sql"
os.environ["LOG_JSON"] = "0"
os.environ["SESSION_SECRET"] = "test-secret"
os.environ["MPESA_CALLBACK_URL"] = "https://priella.test/api/payments/mpesa-callback"

from datetime import datetime, timedelta, timezone  # noqa: E402
import uuid  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import text  # noqa: E402

from priella.daraja import PaymentGateway  # noqa: E402
from priella.errors import GatewayRequestError  # noqa: E402
from priella.helpers import now_ts  # noqa: E402
from priella.infra.sql import make_async_engine  # noqa: E402
from priella.model import bookings, ledger  # noqa: E402
from priella.model.db import Base, GiftVoucher, TransactionType  # noqa: E402


def future_date(days: int = 7) -> str:
    return (
        datetime.now(timezone.utc).date() + timedelta(days=days)
    ).isoformat()


# ----------------------------
# Database
# ----------------------------
@pytest.fixture
async def engine_bundle(tmp_path):
    engine, SessionAsync, gated = make_async_engine(
        f"sqlite:///{tmp_path}/priella.db"
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine, SessionAsync, gated
    await engine.dispose()


@pytest.fixture
def SessionAsync(engine_bundle):
    return engine_bundle[1]


@pytest.fixture
def gated(engine_bundle):
    return engine_bundle[2]


@pytest.fixture
async def db(SessionAsync):
    async with SessionAsync() as session:
        yield session


@pytest.fixture
def fetch(SessionAsync):
    async def _fetch(sql: str, **params):
        async with SessionAsync() as s:
            rows = (await s.execute(text(sql), params)).mappings().all()
        return [dict(r) for r in rows]
    return _fetch


# ----------------------------
# Seed data
# ----------------------------
@pytest.fixture
def make_booking(SessionAsync, gated):
    async def _make(**overrides):
        payload = {
            "name": "Jane Wanjiku",
            "phone": "0712345678",
            "email": "jane@example.com",
            "date": future_date(),
            "time": "10:00",
            "duration": 30,
            "branch": "the-hub-karen",
        }
        payload.update(overrides)
        async with SessionAsync() as s:
            async with gated():
                async with s.begin():
                    b = await bookings.create_booking(s, payload)
        return b
    return _make


@pytest.fixture
def make_voucher(SessionAsync):
    async def _make(
        code: str = "PRI-ABC12345",
        amount: int = 1000,
        status: str = "active",
        payment_status: str = "completed",
        expires_at: float = None,
    ) -> GiftVoucher:
        ts = now_ts()
        v = GiftVoucher(
            id=uuid.uuid4().hex,
            voucher_code=code,
            sender_name="Amina Otieno",
            recipient_name="Grace Mutua",
            recipient_phone="254722000111",
            amount=amount,
            branch="the-hub-karen",
            message="Enjoy!",
            status=status,
            payment_status=payment_status,
            expires_at=expires_at if expires_at is not None else ts + 86400,
            created_at=ts,
            updated_at=ts,
        )
        async with SessionAsync() as s:
            async with s.begin():
                s.add(v)
        return v
    return _make


@pytest.fixture
def make_ledger_entry(SessionAsync):
    async def _make(
        reference_id: str,
        transaction_type=TransactionType.BOOKING,
        checkout_request_id: str = "ws_CO_191220191020363925",
        amount: int = 1000,
        phone_number: str = "254712345678",
    ):
        async with SessionAsync() as s:
            async with s.begin():
                await ledger.create_pending(
                    s,
                    checkout_request_id=checkout_request_id,
                    merchant_request_id="29115-34620561-1",
                    amount=amount,
                    phone_number=phone_number,
                    reference_id=reference_id,
                    transaction_type=transaction_type,
                )
        return checkout_request_id
    return _make


def stk_callback(
    checkout_request_id: str,
    result_code: int = 0,
    result_desc: str = "The service request is processed successfully.",
    amount=1000,
    receipt="QGH7XYZ1",
    phone=254712345678,
    transaction_date=20240115143022,
) -> dict:
    stk = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if result_code == 0:
        stk["CallbackMetadata"] = {"Item": [
            {"Name": "Amount", "Value": amount},
            {"Name": "MpesaReceiptNumber", "Value": receipt},
            {"Name": "Balance"},
            {"Name": "TransactionDate", "Value": transaction_date},
            {"Name": "PhoneNumber", "Value": phone},
        ]}
    return {"Body": {"stkCallback": stk}}


# ----------------------------
# Gateway
# ----------------------------
class FakeGateway(PaymentGateway):

    def __init__(self):
        self.initiated = []
        self.queried = []
        self.fail = None
        self.query_result = {}

    async def initiate(self, phone, amount, reference_id, transaction_type):
        if self.fail is not None:
            raise self.fail
        self.initiated.append((phone, amount, reference_id, transaction_type))
        n = len(self.initiated)
        return {
            "checkout_request_id": f"ws_CO_TEST_{n}",
            "merchant_request_id": f"29115-{n}",
            "customer_message": "Success. Request accepted for processing",
            "phone_number": phone,
        }

    async def query(self, checkout_request_id):
        self.queried.append(checkout_request_id)
        return self.query_result


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def failing_gateway():
    gw = FakeGateway()
    gw.fail = GatewayRequestError("Bad Request - Invalid PhoneNumber")
    return gw


# ----------------------------
# App
# ----------------------------
@pytest.fixture
async def server_module():
    from priella import server
    async with server.engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    return server


@pytest.fixture
async def client(server_module, fake_gateway):
    app = server_module.app
    app.dependency_overrides[server_module.get_gateway] = lambda: fake_gateway
    async with server_module.lifespan(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(
            transport=transport, base_url="http://test"
        ) as c:
            yield c
    app.dependency_overrides.clear()
