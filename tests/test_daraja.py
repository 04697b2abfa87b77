import base64
import json
from datetime import datetime, timezone

import httpx
import pytest

from priella.daraja import DarajaGateway
from priella.errors import GatewayAuthError, GatewayRequestError, ValidationError
from priella.model.db import TransactionType


class DarajaStub:
    """Records requests and answers like the Daraja sandbox."""

    def __init__(self, token_status=200, stk_response=None, stk_error=None):
        self.requests = []
        self.token_status = token_status
        self.stk_response = stk_response or {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": "ws_CO_191220191020363925",
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
            "CustomerMessage": "Success. Request accepted for processing",
        }
        self.stk_error = stk_error

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/oauth/v1/generate":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={})
            return httpx.Response(200, json={
                "access_token": "tok123", "expires_in": "3599",
            })
        if request.url.path == "/mpesa/stkpush/v1/processrequest":
            if self.stk_error is not None:
                raise self.stk_error
            return httpx.Response(200, json=self.stk_response)
        if request.url.path == "/mpesa/stkpushquery/v1/query":
            return httpx.Response(200, json={
                "ResponseCode": "0",
                "CheckoutRequestID": json.loads(request.content)[
                    "CheckoutRequestID"
                ],
                "ResultCode": "1032",
                "ResultDesc": "Request cancelled by user",
            })
        return httpx.Response(404)

    def paths(self):
        return [r.url.path for r in self.requests]


@pytest.fixture
async def make_gateway():
    clients = []

    def _make(stub):
        http = httpx.AsyncClient(transport=httpx.MockTransport(stub))
        clients.append(http)
        return DarajaGateway(
            http,
            env="sandbox",
            consumer_key="key",
            consumer_secret="secret",
            shortcode="174379",
            passkey="passkey",
            callback_url="https://priella.test/cb",
        )

    yield _make
    for c in clients:
        await c.aclose()


class TestInitiate:

    async def test_sends_stk_push(self, make_gateway):
        stub = DarajaStub()
        gw = make_gateway(stub)

        res = await gw.initiate(
            "0712345678", 1000, "b1", TransactionType.BOOKING
        )

        assert res["checkout_request_id"] == "ws_CO_191220191020363925"
        assert res["merchant_request_id"] == "29115-34620561-1"
        assert res["phone_number"] == "254712345678"
        assert stub.paths() == [
            "/oauth/v1/generate", "/mpesa/stkpush/v1/processrequest",
        ]

        token_req, push_req = stub.requests
        assert token_req.url.host == "sandbox.safaricom.co.ke"
        assert token_req.headers["authorization"].startswith("Basic ")
        assert push_req.headers["authorization"] == "Bearer tok123"

        body = json.loads(push_req.content)
        assert body["PartyA"] == body["PhoneNumber"] == "254712345678"
        assert body["Amount"] == 1000
        assert body["AccountReference"] == "PRIELLA-b1"
        assert body["TransactionDesc"] == "Massage Booking Payment"
        assert body["TransactionType"] == "CustomerPayBillOnline"
        assert body["CallBackURL"] == "https://priella.test/cb"
        expected_pw = base64.b64encode(
            ("174379" + "passkey" + body["Timestamp"]).encode()
        ).decode()
        assert body["Password"] == expected_pw

    async def test_voucher_description(self, make_gateway):
        stub = DarajaStub()
        gw = make_gateway(stub)
        await gw.initiate("0712345678", 500, "v1", "gift_voucher")
        body = json.loads(stub.requests[-1].content)
        assert body["TransactionDesc"] == "Gift Voucher Payment"

    async def test_rejected_request(self, make_gateway):
        stub = DarajaStub(stk_response={
            "requestId": "1234-5678",
            "errorCode": "400.002.02",
            "errorMessage": "Bad Request - Invalid PhoneNumber",
        })
        gw = make_gateway(stub)
        with pytest.raises(GatewayRequestError) as exc:
            await gw.initiate("0712345678", 1000, "b1", "booking")
        assert exc.value.message == "Bad Request - Invalid PhoneNumber"

    async def test_non_zero_response_code(self, make_gateway):
        stub = DarajaStub(stk_response={
            "ResponseCode": "1",
            "ResponseDescription": "Rejected",
        })
        gw = make_gateway(stub)
        with pytest.raises(GatewayRequestError, match="Rejected"):
            await gw.initiate("0712345678", 1000, "b1", "booking")

    async def test_token_failure_stops_before_push(self, make_gateway):
        stub = DarajaStub(token_status=401)
        gw = make_gateway(stub)
        with pytest.raises(GatewayAuthError):
            await gw.initiate("0712345678", 1000, "b1", "booking")
        assert stub.paths() == ["/oauth/v1/generate"]

    async def test_transport_error(self, make_gateway):
        stub = DarajaStub(stk_error=httpx.ConnectError("connection refused"))
        gw = make_gateway(stub)
        with pytest.raises(GatewayRequestError):
            await gw.initiate("0712345678", 1000, "b1", "booking")

    @pytest.mark.parametrize("phone,amount,ref,tt", [
        ("12345", 1000, "b1", "booking"),
        ("0712345678", 0, "b1", "booking"),
        ("0712345678", 1000, "", "booking"),
        ("0712345678", 1000, "b1", "spa_day"),
    ])
    async def test_invalid_input_makes_no_call(
        self, make_gateway, phone, amount, ref, tt
    ):
        stub = DarajaStub()
        gw = make_gateway(stub)
        with pytest.raises(ValidationError):
            await gw.initiate(phone, amount, ref, tt)
        assert stub.requests == []


def test_timestamp_is_nairobi_time():
    gw = DarajaGateway(httpx.AsyncClient())
    utc = datetime(2024, 1, 1, 21, 0, 5, tzinfo=timezone.utc)
    assert gw._timestamp(utc) == "20240102000005"


def test_production_base_url():
    gw = DarajaGateway(httpx.AsyncClient(), env="production")
    assert gw.base_url == "https://api.safaricom.co.ke"


async def test_query(make_gateway):
    stub = DarajaStub()
    gw = make_gateway(stub)
    data = await gw.query("ws_CO_1")
    assert data["ResultCode"] == "1032"
    assert data["CheckoutRequestID"] == "ws_CO_1"
    body = json.loads(stub.requests[-1].content)
    assert body["BusinessShortCode"] == "174379"
