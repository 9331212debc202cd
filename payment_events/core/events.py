"""
Pydantic models for the webhook envelope and the provider objects we read.

Only the fields the reconciler needs are declared; everything else in the
provider payload is ignored so new provider fields never break parsing.
"""
import json
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Optional, Tuple

from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
)

from payment_events.exceptions import MalformedPayloadError


def _expandable_id(value: Any) -> Any:
    """Provider references may arrive expanded into full objects."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _none_to_empty(value: Any) -> Any:
    return {} if value is None else value


ExpandableId = Annotated[Optional[str], BeforeValidator(_expandable_id)]
RequiredExpandableId = Annotated[str, BeforeValidator(_expandable_id)]
Metadata = Annotated[Dict[str, Any], BeforeValidator(_none_to_empty)]


def timestamp_to_datetime(value: Optional[int]) -> Optional[datetime]:
    """Convert a provider unix timestamp to an aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _representable_timestamp(value: Optional[int]) -> Optional[int]:
    """Reject timestamps that cannot become a datetime at parse time."""
    try:
        timestamp_to_datetime(value)
    except (OverflowError, OSError, ValueError) as e:
        raise ValueError(f"timestamp {value} is out of range") from e
    return value


UnixTimestamp = Annotated[Optional[int], AfterValidator(_representable_timestamp)]


class ProviderObject(BaseModel):
    model_config = ConfigDict(extra="ignore")


class EventData(ProviderObject):
    object: Dict[str, Any]


class WebhookEnvelope(ProviderObject):
    """Top-level notification: `{id, type, created, data: {object}}`."""

    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    created: Optional[int] = None
    livemode: bool = False
    data: EventData


class CustomerDetails(ProviderObject):
    email: Optional[str] = None
    name: Optional[str] = None


class CheckoutSessionObject(ProviderObject):
    """Checkout session carried by checkout.session.* events."""

    id: str = Field(..., min_length=1)
    payment_intent: ExpandableId = None
    payment_status: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    customer_email: Optional[str] = None
    customer_details: Optional[CustomerDetails] = None
    metadata: Metadata = Field(default_factory=dict)
    mode: Optional[str] = None
    subscription: ExpandableId = None

    @property
    def order_correlation_id(self) -> Optional[str]:
        return self.metadata.get("order_id")

    @property
    def email(self) -> Optional[str]:
        if self.customer_email:
            return self.customer_email
        return self.customer_details.email if self.customer_details else None

    @property
    def customer_name(self) -> Optional[str]:
        if self.customer_details and self.customer_details.name:
            return self.customer_details.name
        return self.metadata.get("customer_name")


class Price(ProviderObject):
    id: Optional[str] = None
    nickname: Optional[str] = None
    product: ExpandableId = None


class SubscriptionItem(ProviderObject):
    price: Optional[Price] = None
    current_period_end: UnixTimestamp = None


class SubscriptionItems(ProviderObject):
    data: List[SubscriptionItem] = Field(default_factory=list)


class SubscriptionObject(ProviderObject):
    """Subscription carried by customer.subscription.* events."""

    id: str = Field(..., min_length=1)
    customer: RequiredExpandableId
    status: str = Field(..., min_length=1)
    current_period_end: UnixTimestamp = None
    items: Optional[SubscriptionItems] = None
    metadata: Metadata = Field(default_factory=dict)

    @property
    def first_item(self) -> Optional[SubscriptionItem]:
        if self.items and self.items.data:
            return self.items.data[0]
        return None

    @property
    def plan(self) -> str:
        item = self.first_item
        if item and item.price:
            return item.price.nickname or item.price.product or item.price.id or "unknown"
        return str(self.metadata.get("plan") or "unknown")

    @property
    def period_end(self) -> Optional[datetime]:
        # Newer API versions moved the period onto the subscription item
        if self.current_period_end is not None:
            return timestamp_to_datetime(self.current_period_end)
        item = self.first_item
        return timestamp_to_datetime(item.current_period_end if item else None)


class InvoicePeriod(ProviderObject):
    start: UnixTimestamp = None
    end: UnixTimestamp = None


class InvoiceLine(ProviderObject):
    period: Optional[InvoicePeriod] = None


class InvoiceLines(ProviderObject):
    data: List[InvoiceLine] = Field(default_factory=list)


class SubscriptionDetails(ProviderObject):
    subscription: ExpandableId = None


class InvoiceParent(ProviderObject):
    subscription_details: Optional[SubscriptionDetails] = None


class InvoiceObject(ProviderObject):
    """Invoice carried by invoice.* events."""

    id: str = Field(..., min_length=1)
    subscription: ExpandableId = None
    parent: Optional[InvoiceParent] = None
    customer: ExpandableId = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: Optional[str] = None
    billing_reason: Optional[str] = None
    lines: Optional[InvoiceLines] = None

    @property
    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        if self.parent and self.parent.subscription_details:
            return self.parent.subscription_details.subscription
        return None

    @property
    def period_end(self) -> Optional[datetime]:
        if self.lines and self.lines.data and self.lines.data[0].period:
            return timestamp_to_datetime(self.lines.data[0].period.end)
        return None


class ChargeObject(ProviderObject):
    """Charge carried by charge.refunded."""

    id: str = Field(..., min_length=1)
    payment_intent: ExpandableId = None
    amount: int = 0
    amount_refunded: int = 0
    refunded: bool = False
    currency: Optional[str] = None
    metadata: Metadata = Field(default_factory=dict)

    @property
    def order_correlation_id(self) -> Optional[str]:
        return self.metadata.get("order_id")


class PaymentError(ProviderObject):
    code: Optional[str] = None
    message: Optional[str] = None


class PaymentIntentObject(ProviderObject):
    """PaymentIntent carried by payment_intent.* events (direct card flow)."""

    id: str = Field(..., min_length=1)
    amount: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    receipt_email: Optional[str] = None
    last_payment_error: Optional[PaymentError] = None
    metadata: Metadata = Field(default_factory=dict)

    @property
    def order_correlation_id(self) -> Optional[str]:
        return self.metadata.get("order_id")

    @property
    def email(self) -> Optional[str]:
        return self.metadata.get("customer_email") or self.receipt_email

    @property
    def customer_name(self) -> Optional[str]:
        return self.metadata.get("customer_name")

    @property
    def failure_message(self) -> Optional[str]:
        return self.last_payment_error.message if self.last_payment_error else None


def parse_envelope(payload: bytes) -> Tuple[WebhookEnvelope, Dict[str, Any]]:
    """
    Parse a verified request body.

    Args:
        payload: Raw request body

    Returns:
        Tuple of the validated envelope and the decoded JSON document

    Raises:
        MalformedPayloadError: If the body is not a JSON webhook envelope
    """
    try:
        document = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedPayloadError(f"Body is not valid JSON: {e}") from e

    if not isinstance(document, dict):
        raise MalformedPayloadError("Body must be a JSON object")

    try:
        envelope = WebhookEnvelope.model_validate(document)
    except ValidationError as e:
        raise MalformedPayloadError(f"Invalid webhook envelope: {e.error_count()} error(s)") from e

    return envelope, document
