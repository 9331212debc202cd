"""Database package for the payment event core."""
from .connection import Database
from .models import (
    Affiliate,
    AffiliateCommission,
    AffiliateStatus,
    AuditSeverity,
    Base,
    CommissionStatus,
    Order,
    OrderStatus,
    PaymentAuditRecord,
    PointsLedgerEntry,
    PointsReason,
    Subscription,
    SubscriptionStatus,
    WebhookEvent,
    WebhookStatus,
)

__all__ = [
    "Base",
    "Database",
    "Affiliate",
    "AffiliateCommission",
    "AffiliateStatus",
    "AuditSeverity",
    "CommissionStatus",
    "Order",
    "OrderStatus",
    "PaymentAuditRecord",
    "PointsLedgerEntry",
    "PointsReason",
    "Subscription",
    "SubscriptionStatus",
    "WebhookEvent",
    "WebhookStatus",
]
