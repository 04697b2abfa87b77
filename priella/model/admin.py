"""
Admin users and server-side sessions.

A session is a random token stored in `admin_sessions`. Every privileged
request calls `validate_session`, which re-checks expiry and the user's
`is_active` flag, so deactivating a user locks them out immediately.
"""
from __future__ import annotations
import hashlib
import secrets
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import AuthenticationError, ConflictError, ValidationError
from ..helpers import now_ts, is_valid_email, ct_equal
from .db import AdminUser, AdminSession

PBKDF2_ITERATIONS = 390000
ROLES = ("super_admin", "admin", "staff")


@dataclass(frozen=True)
class AdminContext:
    admin_id: str
    email: str
    name: str
    role: str
    token: str
    expires_at: float


def hash_password(password: str, iterations: int = PBKDF2_ITERATIONS) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256", password.encode(), salt.encode(), iterations
    )
    return f"pbkdf2_sha256${iterations}${salt}${digest.hex()}"


def verify_password(stored: str, provided: str) -> bool:
    try:
        algorithm, iterations, salt, hex_digest = stored.split("$")
        n = int(iterations)
    except ValueError:
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    candidate = hashlib.pbkdf2_hmac(
        "sha256", provided.encode(), salt.encode(), n
    )
    return ct_equal(candidate.hex(), hex_digest)


async def create_admin_user(
    db: AsyncSession,
    *,
    email: str,
    name: str,
    password: str,
    role: str = "admin",
) -> AdminUser:
    email = (email or "").strip().lower()
    if not is_valid_email(email):
        raise ValidationError("Please enter a valid email address")
    if len(password or "") < 8:
        raise ValidationError("Password must be at least 8 characters long")
    if role not in ROLES:
        raise ValidationError(f"Unknown role: {role}")
    user = AdminUser(
        id=uuid.uuid4().hex,
        email=email,
        name=(name or "").strip() or email,
        password_hash=hash_password(password),
        role=role,
        is_active=True,
        created_at=now_ts(),
    )
    db.add(user)
    try:
        await db.flush()
    except IntegrityError:
        raise ConflictError("An admin with this email already exists")
    return user


async def authenticate(
    db: AsyncSession, email: str, password: str
) -> dict:
    row = (await db.execute(text("""
        SELECT id, email, name, role, password_hash, is_active
        FROM admin_users WHERE email = :email
    """), {"email": (email or "").strip().lower()})).mappings().first()
    # same message for unknown user, wrong password and inactive account
    if (
        not row
        or not row["is_active"]
        or not verify_password(row["password_hash"], password or "")
    ):
        raise AuthenticationError("Invalid email or password")
    await db.execute(
        text("UPDATE admin_users SET last_login_at = :now WHERE id = :id"),
        {"now": now_ts(), "id": row["id"]},
    )
    return dict(row)


async def create_session(
    db: AsyncSession, admin_id: str, ttl_seconds: int
) -> AdminSession:
    ts = now_ts()
    s = AdminSession(
        token=secrets.token_urlsafe(32),
        admin_id=admin_id,
        created_at=ts,
        expires_at=ts + ttl_seconds,
    )
    db.add(s)
    return s


async def validate_session(
    db: AsyncSession, token: Optional[str], now: Optional[float] = None
) -> AdminContext:
    if not token:
        raise AuthenticationError("Admin session required")
    row = (await db.execute(text("""
        SELECT s.token, s.expires_at, u.id AS admin_id, u.email, u.name,
               u.role, u.is_active
        FROM admin_sessions AS s
        JOIN admin_users AS u ON u.id = s.admin_id
        WHERE s.token = :token
    """), {"token": token})).mappings().first()
    now = now_ts() if now is None else now
    if not row:
        raise AuthenticationError("Admin session required")
    if row["expires_at"] <= now:
        raise AuthenticationError("Admin session expired, please log in again")
    if not row["is_active"]:
        raise AuthenticationError("Admin account is disabled")
    return AdminContext(
        admin_id=row["admin_id"],
        email=row["email"],
        name=row["name"],
        role=row["role"],
        token=row["token"],
        expires_at=row["expires_at"],
    )


async def revoke_session(db: AsyncSession, token: Optional[str]) -> None:
    if not token:
        return
    await db.execute(
        text("DELETE FROM admin_sessions WHERE token = :token"),
        {"token": token},
    )
