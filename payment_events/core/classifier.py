"""Event classification: provider type tag -> closed set of categories."""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Type

import structlog
from pydantic import BaseModel, ValidationError

from payment_events.core.events import (
    ChargeObject,
    CheckoutSessionObject,
    InvoiceObject,
    PaymentIntentObject,
    SubscriptionObject,
    WebhookEnvelope,
)
from payment_events.exceptions import MalformedPayloadError

logger = structlog.get_logger(__name__)


class EventCategory(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    ASYNC_PAYMENT_SUCCEEDED = "async_payment_succeeded"
    ASYNC_PAYMENT_FAILED = "async_payment_failed"
    SUBSCRIPTION_UPSERTED = "subscription_upserted"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAID = "invoice_paid"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    CHARGE_REFUNDED = "charge_refunded"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent_succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent_failed"
    UNRECOGNIZED = "unrecognized"


EVENT_TYPE_CATEGORIES: Dict[str, EventCategory] = {
    "checkout.session.completed": EventCategory.CHECKOUT_COMPLETED,
    "checkout.session.async_payment_succeeded": EventCategory.ASYNC_PAYMENT_SUCCEEDED,
    "checkout.session.async_payment_failed": EventCategory.ASYNC_PAYMENT_FAILED,
    "customer.subscription.created": EventCategory.SUBSCRIPTION_UPSERTED,
    "customer.subscription.updated": EventCategory.SUBSCRIPTION_UPSERTED,
    "customer.subscription.deleted": EventCategory.SUBSCRIPTION_DELETED,
    "invoice.paid": EventCategory.INVOICE_PAID,
    "invoice.payment_failed": EventCategory.INVOICE_PAYMENT_FAILED,
    "charge.refunded": EventCategory.CHARGE_REFUNDED,
    "payment_intent.succeeded": EventCategory.PAYMENT_INTENT_SUCCEEDED,
    "payment_intent.payment_failed": EventCategory.PAYMENT_INTENT_FAILED,
}

CATEGORY_PAYLOADS: Dict[EventCategory, Type[BaseModel]] = {
    EventCategory.CHECKOUT_COMPLETED: CheckoutSessionObject,
    EventCategory.ASYNC_PAYMENT_SUCCEEDED: CheckoutSessionObject,
    EventCategory.ASYNC_PAYMENT_FAILED: CheckoutSessionObject,
    EventCategory.SUBSCRIPTION_UPSERTED: SubscriptionObject,
    EventCategory.SUBSCRIPTION_DELETED: SubscriptionObject,
    EventCategory.INVOICE_PAID: InvoiceObject,
    EventCategory.INVOICE_PAYMENT_FAILED: InvoiceObject,
    EventCategory.CHARGE_REFUNDED: ChargeObject,
    EventCategory.PAYMENT_INTENT_SUCCEEDED: PaymentIntentObject,
    EventCategory.PAYMENT_INTENT_FAILED: PaymentIntentObject,
}


@dataclass(frozen=True)
class ClassifiedEvent:
    """A verified, parsed and categorised notification."""

    envelope: WebhookEnvelope
    category: EventCategory
    payload: Optional[BaseModel]
    raw: Dict[str, Any]

    @property
    def event_id(self) -> str:
        return self.envelope.id

    @property
    def event_type(self) -> str:
        return self.envelope.type


class EventClassifier:
    """
    Maps provider type tags to categories and validates the nested object.

    Unknown tags classify as UNRECOGNIZED with no payload model; they are
    acknowledged downstream, never rejected.
    """

    def __init__(self, type_categories: Optional[Mapping[str, EventCategory]] = None):
        self.type_categories = dict(type_categories or EVENT_TYPE_CATEGORIES)

    def category_for(self, event_type: str) -> EventCategory:
        return self.type_categories.get(event_type, EventCategory.UNRECOGNIZED)

    def classify(self, envelope: WebhookEnvelope, raw: Dict[str, Any]) -> ClassifiedEvent:
        """
        Classify an envelope and validate its data object.

        Args:
            envelope: Parsed webhook envelope
            raw: Decoded JSON document, kept for the audit trail

        Returns:
            ClassifiedEvent: Event with its typed payload

        Raises:
            MalformedPayloadError: If the data object lacks required fields
        """
        category = self.category_for(envelope.type)
        if category is EventCategory.UNRECOGNIZED:
            logger.info(
                "webhook_event_type_unrecognized",
                event_id=envelope.id,
                event_type=envelope.type,
            )
            return ClassifiedEvent(envelope=envelope, category=category, payload=None, raw=raw)

        model = CATEGORY_PAYLOADS[category]
        try:
            payload = model.model_validate(envelope.data.object)
        except ValidationError as e:
            logger.warning(
                "webhook_payload_malformed",
                event_id=envelope.id,
                event_type=envelope.type,
                errors=e.errors(include_url=False),
            )
            raise MalformedPayloadError(
                f"Event {envelope.id} ({envelope.type}) is missing required fields"
            ) from e

        return ClassifiedEvent(envelope=envelope, category=category, payload=payload, raw=raw)
