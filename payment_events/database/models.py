"""SQLAlchemy database models for the payment event core."""
import uuid
from datetime import datetime
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
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER primary keys
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class WebhookStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class CommissionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    CANCELED = "canceled"


class AffiliateStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    SUSPENDED = "suspended"


class PointsReason(str, Enum):
    PURCHASE = "purchase"
    REFUND = "refund"


class AuditSeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class WebhookEvent(Base):
    """
    Received webhook events.

    The unique constraint on provider_event_id is the idempotency gate.
    Rows are never deleted; they are the audit trail of every delivery
    that passed signature verification.
    """

    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    provider_event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    raw_payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    processing_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=WebhookStatus.PENDING.value
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "processing_status IN ('pending', 'processed', 'failed')",
            name="valid_webhook_status",
        ),
        Index("idx_webhook_events_status_received", "processing_status", "received_at"),
        Index("idx_webhook_events_type", "type"),
    )

    def __repr__(self) -> str:
        return (
            f"<WebhookEvent(provider_event_id={self.provider_event_id}, "
            f"type={self.type}, status={self.processing_status})>"
        )


class Order(Base):
    """
    Orders created at checkout initiation.

    Rows are inserted by the checkout collaborator in `pending`; every
    later status transition is made by the reconciler.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    external_payment_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BRL")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=OrderStatus.PENDING.value, index=True
    )
    customer_email: Mapped[str] = mapped_column(String(320), nullable=False)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    affiliate_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_order_amount"),
        CheckConstraint(
            "status IN ('pending', 'paid', 'failed', 'refunded')",
            name="valid_order_status",
        ),
        CheckConstraint("length(currency) = 3", name="valid_order_currency"),
    )

    def __repr__(self) -> str:
        return f"<Order(id={self.id}, amount={self.amount}, status={self.status})>"


class Subscription(Base):
    """Provider-side subscriptions mirrored from lifecycle events."""

    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    external_subscription_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False
    )
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    customer_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    plan: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    current_period_end: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'past_due', 'canceled')",
            name="valid_subscription_status",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(external_id={self.external_subscription_id}, "
            f"status={self.status})>"
        )


class Affiliate(Base):
    """Affiliates, maintained by the affiliate portal. Read-only here."""

    __tablename__ = "affiliates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AffiliateStatus.PENDING.value
    )
    # Overrides the configured default rate when set
    commission_rate_percent: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'suspended')",
            name="valid_affiliate_status",
        ),
    )


class AffiliateCommission(Base):
    """
    Referral commissions.

    One row per paid order at most, enforced by the unique order_id.
    """

    __tablename__ = "affiliate_commissions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, nullable=False)
    affiliate_code: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    rate_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CommissionStatus.PENDING.value
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="non_negative_commission"),
        CheckConstraint(
            "status IN ('pending', 'approved', 'canceled')",
            name="valid_commission_status",
        ),
    )


class PointsLedgerEntry(Base):
    """
    Loyalty points ledger.

    Append-only. Corrections are new offsetting entries, never updates.
    """

    __tablename__ = "points_ledger"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("user_id", "order_id", "reason", name="uq_points_user_order_reason"),
        CheckConstraint("reason IN ('purchase', 'refund')", name="valid_points_reason"),
    )


class PaymentAuditRecord(Base):
    """
    Anomalies that need operator follow-up.

    Immutable once written.
    """

    __tablename__ = "payment_audit_log"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    provider_event_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str] = mapped_column(String(100), nullable=False)
    details: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    __table_args__ = (
        CheckConstraint("severity IN ('warning', 'critical')", name="valid_audit_severity"),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentAuditRecord(event={self.provider_event_id}, "
            f"severity={self.severity}, reason={self.reason})>"
        )
