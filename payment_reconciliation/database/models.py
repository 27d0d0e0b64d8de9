"""SQLAlchemy database models for payment reconciliation."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")
EventIdType = BigInteger().with_variant(Integer(), "sqlite")
MoneyType = Numeric(12, 2, asdecimal=True)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class PaymentStatus(str, Enum):
    """
    Payment lifecycle states.

    State machine:
    PENDING → COMPLETED → PARTIALLY_REFUNDED → REFUNDED
       ↓          ↘________________________↗
     FAILED
    """

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    """How the payment is settled."""

    RAZORPAY = "razorpay"
    PAYPAL = "paypal"
    COD = "cod"


class OrderPaymentStatus(str, Enum):
    """Subset of the order's payment status written by this service."""

    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"


REFUNDABLE_STATUSES = (PaymentStatus.COMPLETED.value, PaymentStatus.PARTIALLY_REFUNDED.value)
REFUND_STATUSES = (PaymentStatus.PARTIALLY_REFUNDED.value, PaymentStatus.REFUNDED.value)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Payment(Base):
    """
    Payment records table.

    One row per payment attempt against an order. At most one row per order
    may be completed and at most one may be pending, each enforced by a
    partial unique index. The version column turns every ORM write into a
    compare-and-set.
    """

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    order_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=PaymentStatus.PENDING.value, index=True
    )

    # Gateway correlation
    razorpay_order_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    razorpay_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    paypal_order_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    paypal_capture_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Refund accounting
    refund_amount: Mapped[Decimal | None] = mapped_column(MoneyType, nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_metadata: Mapped[Dict[str, Any] | None] = mapped_column(
        "metadata", JSONType, nullable=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'partially_refunded', 'refunded')",
            name="valid_status",
        ),
        CheckConstraint("method IN ('razorpay', 'paypal', 'cod')", name="valid_method"),
        CheckConstraint(
            "refund_amount IS NULL OR (refund_amount > 0 AND refund_amount <= amount)",
            name="refund_within_amount",
        ),
        Index(
            "uq_payments_order_completed",
            "order_id",
            unique=True,
            postgresql_where=text("status = 'completed'"),
            sqlite_where=text("status = 'completed'"),
        ),
        Index(
            "uq_payments_order_pending",
            "order_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("idx_payments_user_created", "user_id", "created_at"),
    )

    @property
    def refunded_so_far(self) -> Decimal:
        return self.refund_amount or Decimal("0")

    @property
    def remaining_balance(self) -> Decimal:
        return self.amount - self.refunded_so_far

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(id={self.id}, order_id={self.order_id}, "
            f"amount={self.amount} {self.currency}, status={self.status})>"
        )


class Order(Base):
    """
    Orders table.

    Owned by the ordering workflow; this service only reads existence, owner
    and total, and writes the payment/refund fields.
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(128), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    total: Mapped[Decimal] = mapped_column(MoneyType, nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="pending_payment")
    payment_status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=OrderPaymentStatus.PENDING.value
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, status={self.status}, "
            f"payment_status={self.payment_status})>"
        )


class PaymentEvent(Base):
    """
    Payment events audit trail table.

    Written in the same transaction as the payment change it describes.
    Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(EventIdType, primary_key=True, autoincrement=True)
    payment_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    correlation_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    __table_args__ = (Index("idx_payment_events_type", "event_type"),)

    def __repr__(self) -> str:
        """String representation of PaymentEvent."""
        return (
            f"<PaymentEvent(id={self.id}, payment_id={self.payment_id}, "
            f"type={self.event_type})>"
        )
