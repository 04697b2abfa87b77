"""
Error taxonomy.

Every error the service surfaces to a caller derives from PriellaError and
carries the HTTP status it maps to plus a stable machine-readable code. The
callback endpoint is the exception: it acknowledges the gateway no matter
what and only logs these.
"""


class PriellaError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class ValidationError(PriellaError):
    """Bad input, caller's fault."""
    status_code = 400
    code = "validation_error"


class UnknownTransactionType(ValidationError):
    code = "unknown_transaction_type"


class NotFoundError(PriellaError):
    status_code = 404
    code = "not_found"


class ConflictError(PriellaError):
    status_code = 409
    code = "conflict"


class SlotUnavailableError(ConflictError):
    code = "slot_unavailable"


class InsufficientVoucherValue(ConflictError):
    code = "insufficient_voucher_value"


class VoucherExpiredError(ConflictError):
    code = "voucher_expired"


class InvalidTransition(ConflictError):
    code = "invalid_transition"


class GatewayError(PriellaError):
    """Upstream payment gateway failure; the user should try again."""
    status_code = 502
    code = "gateway_error"


class GatewayAuthError(GatewayError):
    code = "gateway_auth_error"


class GatewayRequestError(GatewayError):
    code = "gateway_request_error"


class AuthenticationError(PriellaError):
    status_code = 401
    code = "unauthenticated"
