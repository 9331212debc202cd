"""
Customer and affiliate notifications.

Template selection is a pure function of the event category and the
resulting state. Dispatch is best-effort: a failed or slow send is logged
and counted, and never changes the outcome of webhook processing.
"""
import asyncio
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple

import structlog
from jinja2 import Environment, PackageLoader, select_autoescape
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from payment_events.core.classifier import EventCategory
from payment_events.exceptions import NotificationError
from payment_events.integrations.email_client import EmailClient
from payment_events.monitoring.logging import mask_email
from payment_events.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class NotificationTemplate(str, Enum):
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    REFUND_PROCESSED = "refund_processed"
    COMMISSION_EARNED = "commission_earned"


@dataclass(frozen=True)
class EmailNotification:
    """A notification waiting to be rendered and sent."""

    template: NotificationTemplate
    recipient: str
    variables: Dict[str, Any] = field(default_factory=dict)
    order_id: Optional[str] = None


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str


_TEMPLATE_BY_OUTCOME: Dict[Tuple[EventCategory, str], NotificationTemplate] = {
    (EventCategory.CHECKOUT_COMPLETED, "paid"): NotificationTemplate.PAYMENT_SUCCESS,
    (EventCategory.ASYNC_PAYMENT_SUCCEEDED, "paid"): NotificationTemplate.PAYMENT_SUCCESS,
    (EventCategory.ASYNC_PAYMENT_FAILED, "failed"): NotificationTemplate.PAYMENT_FAILED,
    (EventCategory.PAYMENT_INTENT_SUCCEEDED, "paid"): NotificationTemplate.PAYMENT_SUCCESS,
    (EventCategory.PAYMENT_INTENT_FAILED, "failed"): NotificationTemplate.PAYMENT_FAILED,
    (EventCategory.INVOICE_PAYMENT_FAILED, "past_due"): NotificationTemplate.PAYMENT_FAILED,
    (EventCategory.INVOICE_PAID, "active"): NotificationTemplate.SUBSCRIPTION_RENEWAL,
    (EventCategory.SUBSCRIPTION_DELETED, "canceled"): NotificationTemplate.SUBSCRIPTION_CANCELED,
    (EventCategory.CHARGE_REFUNDED, "refunded"): NotificationTemplate.REFUND_PROCESSED,
}


def select_template(
    category: EventCategory, resulting_status: str
) -> Optional[NotificationTemplate]:
    """
    Pick the template for an event outcome.

    Args:
        category: Event category that produced the state change
        resulting_status: Order or subscription status after the change

    Returns:
        Optional[NotificationTemplate]: None if the outcome sends nothing
    """
    return _TEMPLATE_BY_OUTCOME.get((category, resulting_status))


def format_amount(amount_minor: Optional[int], currency: Optional[str]) -> str:
    """Format minor units for display: (10000, "brl") -> "BRL 100.00"."""
    if amount_minor is None:
        return ""
    value = (Decimal(amount_minor) / Decimal(100)).quantize(Decimal("0.01"))
    return f"{(currency or '').upper()} {value}".strip()


_SUBJECTS: Dict[NotificationTemplate, str] = {
    NotificationTemplate.PAYMENT_SUCCESS: "Payment confirmed - order {{ order_id }}",
    NotificationTemplate.PAYMENT_FAILED: "Payment failed - action required",
    NotificationTemplate.SUBSCRIPTION_RENEWAL: "Subscription renewed - {{ plan }}",
    NotificationTemplate.SUBSCRIPTION_CANCELED: "Subscription canceled - {{ plan }}",
    NotificationTemplate.REFUND_PROCESSED: "Refund processed - {{ amount }}",
    NotificationTemplate.COMMISSION_EARNED: "New commission - {{ amount }}",
}

# HTML bodies autoescape; subjects are plain text rendered from strings
_environment = Environment(
    loader=PackageLoader("payment_events", "templates/email"),
    autoescape=select_autoescape(enabled_extensions=("html",), default_for_string=False),
    trim_blocks=True,
    lstrip_blocks=True,
)


def render(notification: EmailNotification) -> RenderedEmail:
    """
    Render a notification to subject and HTML.

    Missing variables render as empty strings rather than failing.
    """
    variables: Dict[str, Any] = {"name": "there", "order_id": notification.order_id or ""}
    variables.update({k: v for k, v in notification.variables.items() if v is not None})

    subject = _environment.from_string(_SUBJECTS[notification.template]).render(variables)
    body = _environment.get_template(f"{notification.template.value}.html").render(variables)
    return RenderedEmail(subject=subject.strip(" -"), html=body)


class NotificationDispatcher:
    """
    Best-effort notification delivery.

    Each send is bounded by a timeout covering all attempts and retried a
    bounded number of times on NotificationError. dispatch() never raises.
    """

    def __init__(
        self,
        email_client: EmailClient,
        timeout_seconds: float = 5.0,
        max_attempts: int = 2,
        retry_backoff_seconds: float = 0.5,
    ):
        """
        Initialize the dispatcher.

        Args:
            email_client: Delivery channel
            timeout_seconds: Upper bound on one dispatch, retries included
            max_attempts: Send attempts per notification
            retry_backoff_seconds: Base of the exponential backoff between attempts
        """
        self.email_client = email_client
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.retry_backoff_seconds = retry_backoff_seconds

    async def _send_with_retry(self, notification: EmailNotification, email: RenderedEmail) -> str:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff_seconds, max=2),
            retry=retry_if_exception_type(NotificationError),
            reraise=True,
        ):
            with attempt:
                return await self.email_client.send(
                    notification.recipient, email.subject, email.html
                )
        raise NotificationError("Retry loop exited without a result")

    async def dispatch(self, notification: EmailNotification) -> bool:
        """
        Send one notification.

        Args:
            notification: Notification to send

        Returns:
            bool: True if the channel accepted the message
        """
        start_time = time.time()
        log = logger.bind(
            template=notification.template.value,
            order_id=notification.order_id,
            recipient=mask_email(notification.recipient),
        )

        try:
            email = render(notification)
            message_id = await asyncio.wait_for(
                self._send_with_retry(notification, email), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            log.error("notification_timed_out", timeout_seconds=self.timeout_seconds)
            metrics.record_notification(
                notification.template.value, "timeout", time.time() - start_time
            )
            return False
        except NotificationError as e:
            log.error("notification_failed", error=str(e))
            metrics.record_notification(
                notification.template.value, "failed", time.time() - start_time
            )
            return False
        except Exception as e:
            # Delivery must never break webhook processing
            log.exception("notification_unexpected_error", error=str(e))
            metrics.record_notification(
                notification.template.value, "failed", time.time() - start_time
            )
            return False

        log.info("notification_sent", message_id=message_id)
        metrics.record_notification(notification.template.value, "sent", time.time() - start_time)
        return True

    async def dispatch_all(self, notifications: Iterable[EmailNotification]) -> int:
        """
        Send notifications one after another.

        Returns:
            int: Number of notifications accepted by the channel
        """
        sent = 0
        for notification in notifications:
            if await self.dispatch(notification):
                sent += 1
        return sent
