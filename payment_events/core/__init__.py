"""Core webhook processing logic."""
from .classifier import ClassifiedEvent, EventCategory, EventClassifier
from .ledger import Admission, IdempotencyLedger
from .notifications import NotificationDispatcher, NotificationTemplate, select_template
from .pipeline import PipelineResult, WebhookPipeline
from .reconciler import PaymentReconciler, ReconcileOutcome
from .rewards import RewardsEngine

__all__ = [
    "Admission",
    "ClassifiedEvent",
    "EventCategory",
    "EventClassifier",
    "IdempotencyLedger",
    "NotificationDispatcher",
    "NotificationTemplate",
    "PaymentReconciler",
    "PipelineResult",
    "ReconcileOutcome",
    "RewardsEngine",
    "WebhookPipeline",
    "select_template",
]
