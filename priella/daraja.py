"""
M-Pesa Daraja client: OAuth token, STK push ("Lipa na M-Pesa Online") and
STK push query.

The client never retries on its own. A failed initiation surfaces as a
GatewayError and the customer starts again.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, TypedDict
import base64

import httpx
import structlog

from . import config
from .errors import GatewayAuthError, GatewayRequestError, ValidationError
from .helpers import EAT, normalize_phone
from .model.db import TransactionType

log = structlog.get_logger(__name__)

BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}

TRANSACTION_DESC = {
    TransactionType.BOOKING: "Massage Booking Payment",
    TransactionType.GIFT_VOUCHER: "Gift Voucher Payment",
}


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class InitiationResult(TypedDict):
    checkout_request_id: str
    merchant_request_id: Optional[str]
    customer_message: str
    phone_number: str


class PaymentGateway(ABC):
    @abstractmethod
    async def initiate(
        self, phone: str, amount: int, reference_id: str,
        transaction_type: TransactionType,
    ) -> InitiationResult: ...

    # raw gateway answer; the caller decides whether it is conclusive
    @abstractmethod
    async def query(self, checkout_request_id: str) -> dict: ...


# ----------------------------
# Daraja implementation
# ----------------------------
class DarajaGateway(PaymentGateway):

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        env: str = "sandbox",
        consumer_key: str = "",
        consumer_secret: str = "",
        shortcode: str = "174379",
        passkey: str = "",
        callback_url: str = "",
        timeout: float = 30.0,
    ) -> None:
        self.http = http
        self.base_url = BASE_URLS.get(env, BASE_URLS["sandbox"])
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.shortcode = shortcode
        self.passkey = passkey
        self.callback_url = callback_url
        self.timeout = timeout

    @classmethod
    def from_config(cls, http: httpx.AsyncClient) -> "DarajaGateway":
        return cls(
            http,
            env=config.MPESA_ENV,
            consumer_key=config.MPESA_CONSUMER_KEY,
            consumer_secret=config.MPESA_CONSUMER_SECRET,
            shortcode=config.MPESA_SHORTCODE,
            passkey=config.MPESA_PASSKEY,
            callback_url=config.MPESA_CALLBACK_URL,
            timeout=config.MPESA_HTTP_TIMEOUT,
        )

    def _timestamp(self, now: Optional[datetime] = None) -> str:
        now = now or datetime.now(tz=EAT)
        return now.astimezone(EAT).strftime("%Y%m%d%H%M%S")

    def _password(self, timestamp: str) -> str:
        raw = f"{self.shortcode}{self.passkey}{timestamp}".encode("utf-8")
        return base64.b64encode(raw).decode("utf-8")

    async def access_token(self) -> str:
        url = f"{self.base_url}/oauth/v1/generate"
        try:
            resp = await self.http.get(
                url,
                params={"grant_type": "client_credentials"},
                auth=(self.consumer_key, self.consumer_secret),
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            log.warning("daraja_token_transport_error", error=str(e))
            raise GatewayAuthError(
                "Could not reach M-Pesa, please try again"
            ) from e
        if resp.status_code != 200:
            log.warning("daraja_token_rejected", status=resp.status_code)
            raise GatewayAuthError("M-Pesa authentication failed")
        try:
            token = resp.json().get("access_token")
        except ValueError:
            token = None
        if not token:
            raise GatewayAuthError("M-Pesa authentication failed")
        return token

    async def _post(self, path: str, payload: dict, token: str) -> httpx.Response:
        try:
            return await self.http.post(
                f"{self.base_url}{path}",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            log.warning("daraja_transport_error", path=path, error=str(e))
            raise GatewayRequestError(
                "Could not reach M-Pesa, please try again"
            ) from e

    async def initiate(
        self, phone: str, amount: int, reference_id: str,
        transaction_type: TransactionType,
    ) -> InitiationResult:
        if not reference_id:
            raise ValidationError("reference_id is required")
        try:
            tt = TransactionType(transaction_type)
        except ValueError:
            raise ValidationError(
                f"Unknown transaction type: {transaction_type}"
            )
        try:
            amount = int(amount)
        except (TypeError, ValueError):
            raise ValidationError("Amount must be a whole number")
        if amount <= 0:
            raise ValidationError("Amount must be positive")
        msisdn = normalize_phone(phone)

        token = await self.access_token()
        timestamp = self._timestamp()
        payload = {
            "BusinessShortCode": self.shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": amount,
            "PartyA": msisdn,
            "PartyB": self.shortcode,
            "PhoneNumber": msisdn,
            "CallBackURL": self.callback_url,
            "AccountReference": f"PRIELLA-{reference_id}",
            "TransactionDesc": TRANSACTION_DESC[tt],
        }
        resp = await self._post("/mpesa/stkpush/v1/processrequest",
                                payload, token)
        try:
            data = resp.json()
        except ValueError:
            data = {}

        if str(data.get("ResponseCode")) != "0" or not data.get(
            "CheckoutRequestID"
        ):
            msg = (
                data.get("errorMessage")
                or data.get("ResponseDescription")
                or "STK Push failed"
            )
            log.warning(
                "daraja_stk_push_rejected",
                status=resp.status_code, reference_id=reference_id,
                error=msg,
            )
            raise GatewayRequestError(msg)

        log.info(
            "daraja_stk_push_sent",
            checkout_request_id=data["CheckoutRequestID"],
            reference_id=reference_id, transaction_type=tt.value,
        )
        return {
            "checkout_request_id": data["CheckoutRequestID"],
            "merchant_request_id": data.get("MerchantRequestID"),
            "customer_message": (
                data.get("CustomerMessage") or "STK Push sent successfully"
            ),
            "phone_number": msisdn,
        }

    async def query(self, checkout_request_id: str) -> dict:
        token = await self.access_token()
        timestamp = self._timestamp()
        resp = await self._post("/mpesa/stkpushquery/v1/query", {
            "BusinessShortCode": self.shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }, token)
        try:
            return resp.json()
        except ValueError as e:
            raise GatewayRequestError("Unreadable M-Pesa query response") from e
