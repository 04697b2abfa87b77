import enum
from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    ForeignKey,
    Index,
)


Base = declarative_base()


class TransactionType(str, enum.Enum):
    BOOKING = "booking"
    GIFT_VOUCHER = "gift_voucher"


class LedgerStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class VoucherStatus(str, enum.Enum):
    ACTIVE = "active"
    REDEEMED = "redeemed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class VoucherPaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"


# ----------------------------
# ORM models
# ----------------------------
class LedgerEntry(Base):
    """One STK push attempt and, eventually, its outcome."""
    __tablename__ = "mpesa_transactions"
    id = Column(String, primary_key=True)
    checkout_request_id = Column(String, nullable=False, unique=True)
    merchant_request_id = Column(String, nullable=True)
    amount = Column(Integer, nullable=False)
    phone_number = Column(String, nullable=False)  # 2547XXXXXXXX
    reference_id = Column(String, nullable=False)
    transaction_type = Column(String, nullable=False)

    # pending | completed | failed
    status = Column(String, nullable=False, default="pending")
    result_code = Column(Integer, nullable=True)
    result_desc = Column(String, nullable=True)
    mpesa_receipt_number = Column(String, nullable=True)
    transaction_date = Column(Float, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("idx_mpesa_status_created", "status", "created_at"),
    )


class Booking(Base):
    __tablename__ = "bookings"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    phone = Column(String, nullable=False)
    email = Column(String, nullable=True)
    date = Column(String, nullable=False)  # YYYY-MM-DD
    time = Column(String, nullable=False)  # HH:MM
    duration = Column(Integer, nullable=False)  # minutes
    branch = Column(String, nullable=False)
    total_amount = Column(Integer, nullable=False)
    notes = Column(Text, nullable=True)

    # pending | confirmed | completed | cancelled
    status = Column(String, nullable=False, default="pending")
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("idx_bookings_slot", "date", "branch", "time"),
    )


class GiftVoucher(Base):
    __tablename__ = "gift_vouchers"
    id = Column(String, primary_key=True)
    voucher_code = Column(String, nullable=False, unique=True)
    sender_name = Column(String, nullable=False)
    recipient_name = Column(String, nullable=False)
    recipient_phone = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    branch = Column(String, nullable=False)
    message = Column(Text, nullable=True)

    # active | redeemed | expired | cancelled
    status = Column(String, nullable=False, default="active")
    # pending | completed
    payment_status = Column(String, nullable=False, default="pending")
    expires_at = Column(Float, nullable=False)
    redeemed_at = Column(Float, nullable=True)
    redeemed_booking_id = Column(String, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class PaymentTransaction(Base):
    """Gateway-agnostic payment record kept for reconciliation/audit."""
    __tablename__ = "payment_transactions"
    id = Column(String, primary_key=True)
    reference_id = Column(String, nullable=False)
    transaction_type = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="KES")
    # mpesa | mpesa_manual
    payment_method = Column(String, nullable=False, default="mpesa")
    # pending | completed | failed
    status = Column(String, nullable=False, default="pending")
    transaction_id = Column(String, nullable=True)
    completed_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("idx_payment_tx_reference", "reference_id", "transaction_type"),
    )


class AdminUser(Base):
    __tablename__ = "admin_users"
    id = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    password_hash = Column(String, nullable=False)
    # super_admin | admin | staff
    role = Column(String, nullable=False, default="admin")
    is_active = Column(Boolean, nullable=False, default=True)
    last_login_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)


class AdminSession(Base):
    __tablename__ = "admin_sessions"
    token = Column(String, primary_key=True)
    admin_id = Column(
        String, ForeignKey("admin_users.id", ondelete="CASCADE"),
        nullable=False
    )
    created_at = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=False)


class CallbackGateRow(Base):
    # one row per checkout id currently being (or already) processed
    __tablename__ = "callback_gates"
    checkout_request_id = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False)
