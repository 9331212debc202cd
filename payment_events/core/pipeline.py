"""
Webhook processing pipeline.

verify -> parse -> classify -> ledger admission -> reconcile -> rewards
-> ledger complete. Notifications are returned to the caller for
dispatch after the acknowledgement.
"""
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

import structlog

from payment_events.core.classifier import ClassifiedEvent, EventCategory, EventClassifier
from payment_events.core.events import parse_envelope
from payment_events.core.ledger import Admission, IdempotencyLedger
from payment_events.core.notifications import EmailNotification
from payment_events.core.reconciler import PaymentReconciler, ReconcileOutcome
from payment_events.core.rewards import RewardsEngine
from payment_events.exceptions import TRANSIENT_STORE_ERRORS, StoreUnavailableError
from payment_events.integrations.signature import SignatureVerifier
from payment_events.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Handler = Callable[[ClassifiedEvent], Awaitable[ReconcileOutcome]]


class ProcessingStatus:
    PROCESSED = "processed"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    IN_FLIGHT = "in_flight"
    ESCALATED = "escalated"


@dataclass
class PipelineResult:
    """Outcome of one delivery, as reported to the provider."""

    status: str
    event_id: str
    event_type: str
    action: Optional[str] = None
    notifications: List[EmailNotification] = field(default_factory=list)


class WebhookPipeline:
    """
    Runs one verified delivery through every processing step.

    Each category maps to exactly one handler. Steps commit independently;
    a crash between steps leaves the ledger row pending, and the redelivery
    re-runs steps that are themselves idempotent.
    """

    def __init__(
        self,
        verifier: SignatureVerifier,
        classifier: EventClassifier,
        ledger: IdempotencyLedger,
        reconciler: PaymentReconciler,
        rewards: RewardsEngine,
    ):
        self.verifier = verifier
        self.classifier = classifier
        self.ledger = ledger
        self.reconciler = reconciler
        self.rewards = rewards
        self._handlers: Dict[EventCategory, Handler] = {}
        self._register_default_handlers()

    def _register_default_handlers(self) -> None:
        self.register_handler(EventCategory.CHECKOUT_COMPLETED, self.reconciler.settle_payment)
        self.register_handler(EventCategory.ASYNC_PAYMENT_SUCCEEDED, self.reconciler.settle_payment)
        self.register_handler(EventCategory.ASYNC_PAYMENT_FAILED, self.reconciler.fail_payment)
        self.register_handler(EventCategory.PAYMENT_INTENT_SUCCEEDED, self.reconciler.settle_payment)
        self.register_handler(EventCategory.PAYMENT_INTENT_FAILED, self.reconciler.fail_payment)
        self.register_handler(EventCategory.SUBSCRIPTION_UPSERTED, self.reconciler.upsert_subscription)
        self.register_handler(EventCategory.SUBSCRIPTION_DELETED, self.reconciler.cancel_subscription)
        self.register_handler(EventCategory.INVOICE_PAID, self.reconciler.record_invoice_paid)
        self.register_handler(EventCategory.INVOICE_PAYMENT_FAILED, self.reconciler.record_invoice_failed)
        self.register_handler(EventCategory.CHARGE_REFUNDED, self.reconciler.refund_charge)
        self.register_handler(EventCategory.UNRECOGNIZED, self.reconciler.acknowledge)

    def register_handler(self, category: EventCategory, handler: Handler) -> None:
        """
        Register the handler for a category, replacing any previous one.

        Args:
            category: Event category
            handler: Async callable returning a ReconcileOutcome
        """
        self._handlers[category] = handler
        logger.debug("webhook_handler_registered", category=category.value)

    def parse(self, payload: bytes, signature_header: Optional[str]) -> ClassifiedEvent:
        """
        Authenticate and classify a raw delivery. Nothing is persisted.

        Raises:
            InvalidSignatureError: If the signature does not verify
            MalformedPayloadError: If the body or its data object is malformed
        """
        self.verifier.verify(payload, signature_header)
        envelope, raw = parse_envelope(payload)
        return self.classifier.classify(envelope, raw)

    async def process(self, event: ClassifiedEvent) -> PipelineResult:
        """
        Process a classified event exactly once.

        Args:
            event: Verified, classified event

        Returns:
            PipelineResult: Status to acknowledge with, plus notifications to send

        Raises:
            StoreUnavailableError: If the store cannot be reached
            Exception: Any other processing failure, after marking the event failed
        """
        start_time = time.time()
        log = logger.bind(
            event_id=event.event_id,
            event_type=event.event_type,
            category=event.category.value,
        )

        try:
            admission = await self.ledger.begin_processing(event)
        except TRANSIENT_STORE_ERRORS as e:
            log.error("webhook_ledger_unavailable", error=str(e))
            metrics.record_webhook_event(event.event_type, "failed", time.time() - start_time)
            raise StoreUnavailableError(str(e)) from e

        if admission is not Admission.ADMITTED:
            status = (
                ProcessingStatus.DUPLICATE
                if admission is Admission.ALREADY_PROCESSED
                else ProcessingStatus.IN_FLIGHT
            )
            metrics.record_webhook_event(event.event_type, status, time.time() - start_time)
            return PipelineResult(status=status, event_id=event.event_id, event_type=event.event_type)

        try:
            outcome = await self._handlers[event.category](event)
            notifications = list(outcome.notifications)

            if outcome.award_rewards and outcome.order is not None:
                rewards = await self.rewards.apply_for_paid_order(outcome.order)
                notifications.extend(rewards.notifications)
            if outcome.reverse_rewards and outcome.order is not None:
                await self.rewards.reverse_for_refund(outcome.order)

            await self.ledger.mark_complete(event.event_id, note=outcome.note)
        except TRANSIENT_STORE_ERRORS as e:
            log.error("webhook_store_unavailable", error=str(e))
            await self._mark_failed(event, f"store unavailable: {e}")
            metrics.record_webhook_event(event.event_type, "failed", time.time() - start_time)
            raise StoreUnavailableError(str(e)) from e
        except Exception as e:
            log.exception("webhook_processing_failed", error=str(e))
            await self._mark_failed(event, f"{type(e).__name__}: {e}")
            metrics.record_webhook_event(event.event_type, "failed", time.time() - start_time)
            raise

        if outcome.escalated:
            status = ProcessingStatus.ESCALATED
        elif event.category is EventCategory.UNRECOGNIZED:
            status = ProcessingStatus.IGNORED
        else:
            status = ProcessingStatus.PROCESSED

        duration = time.time() - start_time
        metrics.record_webhook_event(event.event_type, status, duration)
        log.info(
            "webhook_event_processed",
            status=status,
            action=outcome.action,
            notifications=len(notifications),
            duration_ms=round(duration * 1000, 2),
        )
        return PipelineResult(
            status=status,
            event_id=event.event_id,
            event_type=event.event_type,
            action=outcome.action,
            notifications=notifications,
        )

    async def _mark_failed(self, event: ClassifiedEvent, reason: str) -> None:
        try:
            await self.ledger.mark_failed(event.event_id, reason)
        except TRANSIENT_STORE_ERRORS as e:
            # Row stays pending; the stale threshold re-admits it
            logger.error("webhook_mark_failed_error", event_id=event.event_id, error=str(e))
