import time
import re
from datetime import date, datetime, timedelta, timezone
import hmac
from typing import Optional

from .errors import ValidationError


COUNTRY_CODE = "254"

# business hours and calendar dates are Nairobi time
EAT = timezone(timedelta(hours=3))

# canonical MSISDN: 254 + 9 digits, subscriber number starting with 7 or 1
_CANONICAL_PHONE = re.compile(r"^254[17]\d{8}$")


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def eat_today(now: Optional[datetime] = None) -> date:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(EAT).date()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def normalize_phone(phone: str | int | None) -> str:
    """
    Bring a Kenyan phone number into the single form the gateway expects:
    254XXXXXXXXX.

    Accepted shapes: 07XXXXXXXX, 01XXXXXXXX, +2547XXXXXXXX, 2547XXXXXXXX and
    the bare 7XXXXXXXX. Spaces and dashes are ignored. Normalizing an
    already normalized number returns it unchanged.
    """
    if phone is None:
        raise ValidationError("Phone number is required")
    p = re.sub(r"[\s-]+", "", str(phone))
    if p.startswith("+"):
        p = p[1:]
    if p.startswith("0"):
        p = COUNTRY_CODE + p[1:]
    elif not p.startswith(COUNTRY_CODE):
        p = COUNTRY_CODE + p
    if not _CANONICAL_PHONE.match(p):
        raise ValidationError(
            "Please enter a valid Kenya phone number "
            "(e.g., +254712345678 or 0712345678)"
        )
    return p


def is_valid_phone(phone: Optional[str]) -> bool:
    try:
        normalize_phone(phone)
    except ValidationError:
        return False
    return True


def parse_mpesa_timestamp(value: str | int | None) -> Optional[float]:
    """YYYYMMDDHHmmss -> epoch seconds. Interpreted as UTC."""
    if value is None:
        return None
    s = str(value).strip()
    if len(s) != 14 or not s.isdigit():
        return None
    try:
        dt = datetime.strptime(s, "%Y%m%d%H%M%S")
    except ValueError:
        return None
    return dt.replace(tzinfo=timezone.utc).timestamp()


def add_months(ts: float, months: int) -> float:
    dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    y, m = divmod(dt.month - 1 + months, 12)
    year, month = dt.year + y, m + 1
    # clamp the day: Jan 31 + 1 month -> Feb 28/29
    day = dt.day
    while True:
        try:
            return dt.replace(year=year, month=month, day=day).timestamp()
        except ValueError:
            day -= 1
