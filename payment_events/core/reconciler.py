"""
Payment reconciliation.

Applies classified provider events to orders and subscriptions:
- checkout completed / async payment succeeded / payment intent succeeded -> order paid
- async payment failed / payment intent failed -> order failed
- charge refunded -> order refunded
- subscription created/updated/deleted -> subscription mirror
- invoice paid / payment failed -> subscription renewal or past_due

Every status change is a compare-and-set UPDATE against the current row,
so concurrent or out-of-order deliveries for the same order converge on
a single transition. Anomalies are written to the payment audit log.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_events.core.classifier import ClassifiedEvent, EventCategory
from payment_events.core.clock import as_utc, utcnow
from payment_events.core.events import (
    ChargeObject,
    CheckoutSessionObject,
    InvoiceObject,
    PaymentIntentObject,
    SubscriptionObject,
)
from payment_events.core.notifications import EmailNotification, format_amount, select_template
from payment_events.database.models import (
    AuditSeverity,
    Order,
    OrderStatus,
    Subscription,
    SubscriptionStatus,
)
from payment_events.database.repositories import (
    AuditRepository,
    OrderRepository,
    SubscriptionRepository,
)
from payment_events.monitoring.logging import mask_email
from payment_events.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Provider subscription status -> local status
SUBSCRIPTION_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}

OPEN_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.PAST_DUE.value,
)


def map_subscription_status(provider_status: str) -> SubscriptionStatus:
    """
    Map a provider subscription status onto the local status set.

    Unknown statuses map to past_due: no entitlement until the provider
    reports an active state.
    """
    status = SUBSCRIPTION_STATUS_MAP.get(provider_status)
    if status is None:
        logger.warning("subscription_status_unmapped", provider_status=provider_status)
        return SubscriptionStatus.PAST_DUE
    return status


def _format_date(value: Optional[datetime]) -> str:
    value = as_utc(value)
    return value.strftime("%Y-%m-%d") if value else ""


@dataclass(frozen=True)
class OrderSnapshot:
    """Detached copy of the order fields later pipeline steps need."""

    id: uuid.UUID
    amount: int
    currency: str
    status: str
    customer_email: str
    customer_name: Optional[str]
    user_id: Optional[uuid.UUID]
    affiliate_code: Optional[str]

    @classmethod
    def from_model(cls, order: Order) -> "OrderSnapshot":
        return cls(
            id=order.id,
            amount=order.amount,
            currency=order.currency,
            status=order.status,
            customer_email=order.customer_email,
            customer_name=order.customer_name,
            user_id=order.user_id,
            affiliate_code=order.affiliate_code,
        )


@dataclass(frozen=True)
class PaymentReference:
    """How a payment event points at its order, for either payment flow."""

    provider_id: str
    by_payment_intent: bool
    payment_intent_id: Optional[str]
    correlation_id: Optional[str]
    amount: Optional[int]
    email: Optional[str]
    customer_name: Optional[str]
    failure_message: Optional[str] = None

    @classmethod
    def from_payload(
        cls, payload: Union[CheckoutSessionObject, PaymentIntentObject]
    ) -> "PaymentReference":
        if isinstance(payload, PaymentIntentObject):
            return cls(
                provider_id=payload.id,
                by_payment_intent=True,
                payment_intent_id=payload.id,
                correlation_id=payload.order_correlation_id,
                amount=payload.amount,
                email=payload.email,
                customer_name=payload.customer_name,
                failure_message=payload.failure_message,
            )
        return cls(
            provider_id=payload.id,
            by_payment_intent=False,
            payment_intent_id=payload.payment_intent,
            correlation_id=payload.order_correlation_id,
            amount=payload.amount_total,
            email=payload.email,
            customer_name=payload.customer_name,
        )


@dataclass
class ReconcileOutcome:
    """What reconciliation did, and what the pipeline should do next."""

    action: str
    order: Optional[OrderSnapshot] = None
    transitioned: bool = False
    award_rewards: bool = False
    reverse_rewards: bool = False
    escalated: bool = False
    note: Optional[str] = None
    notifications: List[EmailNotification] = field(default_factory=list)


class PaymentReconciler:
    """Applies provider events to persisted orders and subscriptions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _audit(
        self,
        db: AsyncSession,
        event: ClassifiedEvent,
        severity: AuditSeverity,
        reason: str,
        details: Dict[str, Any],
    ) -> None:
        """Write an audit record in the caller's transaction and log it."""
        await AuditRepository(db).add(
            provider_event_id=event.event_id,
            event_type=event.event_type,
            severity=severity.value,
            reason=reason,
            details=details,
        )
        metrics.record_anomaly(reason, severity.value)
        log = logger.critical if severity is AuditSeverity.CRITICAL else logger.warning
        log(
            "payment_anomaly_recorded",
            event_id=event.event_id,
            event_type=event.event_type,
            reason=reason,
            details=details,
        )

    async def _find_order(
        self,
        orders: OrderRepository,
        primary_id: Optional[str],
        correlation_id: Optional[str],
        by_payment_intent: bool = False,
    ) -> Optional[Order]:
        """
        Resolve the order for an event.

        The provider identifier wins; the order id carried in metadata is
        the fallback. A metadata value that is not a UUID counts as absent.
        """
        order = None
        if primary_id:
            if by_payment_intent:
                order = await orders.get_by_payment_intent_id(primary_id)
            else:
                order = await orders.get_by_external_payment_id(primary_id)
        if order is not None or not correlation_id:
            return order

        try:
            order_id = uuid.UUID(str(correlation_id))
        except ValueError:
            logger.warning("order_correlation_id_invalid", correlation_id=correlation_id)
            return None
        return await orders.get(order_id)

    @staticmethod
    def _order_notification(
        category: EventCategory, order: OrderSnapshot, reason: Optional[str] = None
    ) -> List[EmailNotification]:
        template = select_template(category, order.status)
        if template is None or not order.customer_email:
            return []
        return [
            EmailNotification(
                template=template,
                recipient=order.customer_email,
                order_id=str(order.id),
                variables={
                    "name": order.customer_name,
                    "amount": format_amount(order.amount, order.currency),
                    "reason": reason,
                },
            )
        ]

    @staticmethod
    def _subscription_notification(
        category: EventCategory,
        subscription: Subscription,
        recipient: Optional[str],
        name: Optional[str] = None,
        amount: str = "",
    ) -> List[EmailNotification]:
        template = select_template(category, subscription.status)
        if template is None or not recipient:
            return []
        return [
            EmailNotification(
                template=template,
                recipient=recipient,
                variables={
                    "name": name,
                    "plan": subscription.plan,
                    "amount": amount,
                    "period_end": _format_date(subscription.current_period_end),
                },
            )
        ]

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def settle_payment(self, event: ClassifiedEvent) -> ReconcileOutcome:
        """
        Move an order to paid.

        Handles checkout completed, async payment succeeded and payment intent
        succeeded; whichever arrives first performs the transition, the others
        are no-ops.

        Args:
            event: A payment-success event

        Returns:
            ReconcileOutcome: award_rewards is set whenever the order ends paid
        """
        ref = PaymentReference.from_payload(event.payload)
        log = logger.bind(event_id=event.event_id, payment_reference=ref.provider_id)

        if (
            event.category is EventCategory.CHECKOUT_COMPLETED
            and event.payload.payment_status == "unpaid"
        ):
            # Delayed payment methods settle through a later async event
            log.info("checkout_awaiting_async_payment")
            return ReconcileOutcome(action="awaiting_async_payment")

        async with self.session_factory() as db:
            orders = OrderRepository(db)
            order = await self._find_order(
                orders, ref.provider_id, ref.correlation_id, by_payment_intent=ref.by_payment_intent
            )

            if order is None:
                details = {
                    "payment_reference": ref.provider_id,
                    "correlation_order_id": ref.correlation_id,
                    "amount": ref.amount,
                    "customer_email": mask_email(ref.email),
                }
                await self._audit(db, event, AuditSeverity.CRITICAL, "order_not_found", details)
                await db.commit()
                return ReconcileOutcome(
                    action="escalated",
                    escalated=True,
                    note=f"order_not_found: {ref.provider_id}",
                )

            if ref.amount is not None and ref.amount != order.amount:
                await self._audit(
                    db,
                    event,
                    AuditSeverity.WARNING,
                    "amount_mismatch",
                    {
                        "order_id": str(order.id),
                        "order_amount": order.amount,
                        "paid_amount": ref.amount,
                    },
                )

            transitioned = False
            if order.status == OrderStatus.PENDING.value:
                transitioned = await orders.transition(
                    order.id,
                    OrderStatus.PENDING.value,
                    OrderStatus.PAID.value,
                    paid_at=utcnow(),
                    payment_intent_id=ref.payment_intent_id or order.payment_intent_id,
                    customer_name=order.customer_name or ref.customer_name,
                )
            await db.commit()

            order = await orders.get(order.id)
            if order.status != OrderStatus.PAID.value:
                await self._audit(
                    db,
                    event,
                    AuditSeverity.WARNING,
                    "success_for_closed_order",
                    {"order_id": str(order.id), "status": order.status},
                )
                await db.commit()
                return ReconcileOutcome(
                    action="ignored_closed_order", order=OrderSnapshot.from_model(order)
                )

            snapshot = OrderSnapshot.from_model(order)

        if not transitioned:
            log.info("order_already_paid", order_id=str(snapshot.id))
            return ReconcileOutcome(action="already_paid", order=snapshot, award_rewards=True)

        metrics.record_order_transition(OrderStatus.PENDING.value, OrderStatus.PAID.value)
        log.info("order_paid", order_id=str(snapshot.id), amount=snapshot.amount)
        return ReconcileOutcome(
            action="order_paid",
            order=snapshot,
            transitioned=True,
            award_rewards=True,
            notifications=self._order_notification(event.category, snapshot),
        )

    async def fail_payment(self, event: ClassifiedEvent) -> ReconcileOutcome:
        """
        Move a pending order to failed.

        A failure for an order that is already paid or refunded is a late,
        contradicted notification: it is audited and ignored.
        """
        ref = PaymentReference.from_payload(event.payload)
        log = logger.bind(event_id=event.event_id, payment_reference=ref.provider_id)

        async with self.session_factory() as db:
            orders = OrderRepository(db)
            order = await self._find_order(
                orders, ref.provider_id, ref.correlation_id, by_payment_intent=ref.by_payment_intent
            )

            if order is None:
                await self._audit(
                    db,
                    event,
                    AuditSeverity.WARNING,
                    "failure_for_unknown_order",
                    {"payment_reference": ref.provider_id},
                )
                await db.commit()
                return ReconcileOutcome(action="ignored_unknown_order")

            transitioned = False
            if order.status == OrderStatus.PENDING.value:
                transitioned = await orders.transition(
                    order.id, OrderStatus.PENDING.value, OrderStatus.FAILED.value
                )
            await db.commit()

            order = await orders.get(order.id)
            snapshot = OrderSnapshot.from_model(order)

            if not transitioned and order.status != OrderStatus.FAILED.value:
                await self._audit(
                    db,
                    event,
                    AuditSeverity.WARNING,
                    "late_failure_ignored",
                    {"order_id": str(order.id), "status": order.status},
                )
                await db.commit()
                return ReconcileOutcome(action="ignored_late_failure", order=snapshot)

        if not transitioned:
            log.info("order_already_failed", order_id=str(snapshot.id))
            return ReconcileOutcome(action="already_failed", order=snapshot)

        metrics.record_order_transition(OrderStatus.PENDING.value, OrderStatus.FAILED.value)
        log.info("order_failed", order_id=str(snapshot.id), reason=ref.failure_message)
        return ReconcileOutcome(
            action="order_failed",
            order=snapshot,
            transitioned=True,
            notifications=self._order_notification(
                event.category, snapshot, reason=ref.failure_message
            ),
        )

    async def refund_charge(self, event: ClassifiedEvent) -> ReconcileOutcome:
        """
        Move a paid order to refunded.

        Only full refunds change the order; partial refunds are audited for
        manual handling. reverse_rewards is set whenever the order ends refunded.
        """
        charge: ChargeObject = event.payload
        log = logger.bind(event_id=event.event_id, charge_id=charge.id)

        async with self.session_factory() as db:
            orders = OrderRepository(db)

            if not charge.refunded:
                await self._audit(
                    db,
                    event,
                    AuditSeverity.WARNING,
                    "partial_refund",
                    {
                        "charge_id": charge.id,
                        "amount": charge.amount,
                        "amount_refunded": charge.amount_refunded,
                    },
                )
                await db.commit()
                return ReconcileOutcome(action="ignored_partial_refund")

            order = await self._find_order(
                orders, charge.payment_intent, charge.order_correlation_id, by_payment_intent=True
            )
            if order is None:
                await self._audit(
                    db,
                    event,
                    AuditSeverity.WARNING,
                    "refund_for_unknown_order",
                    {"charge_id": charge.id, "payment_intent": charge.payment_intent},
                )
                await db.commit()
                return ReconcileOutcome(action="ignored_unknown_order")

            transitioned = False
            if order.status == OrderStatus.PAID.value:
                transitioned = await orders.transition(
                    order.id,
                    OrderStatus.PAID.value,
                    OrderStatus.REFUNDED.value,
                    refunded_at=utcnow(),
                )
            await db.commit()

            order = await orders.get(order.id)
            snapshot = OrderSnapshot.from_model(order)

            if order.status != OrderStatus.REFUNDED.value:
                await self._audit(
                    db,
                    event,
                    AuditSeverity.WARNING,
                    "refund_for_unpaid_order",
                    {"order_id": str(order.id), "status": order.status},
                )
                await db.commit()
                return ReconcileOutcome(action="ignored_unpaid_order", order=snapshot)

        if not transitioned:
            log.info("order_already_refunded", order_id=str(snapshot.id))
            return ReconcileOutcome(action="already_refunded", order=snapshot, reverse_rewards=True)

        metrics.record_order_transition(OrderStatus.PAID.value, OrderStatus.REFUNDED.value)
        log.info("order_refunded", order_id=str(snapshot.id))
        return ReconcileOutcome(
            action="order_refunded",
            order=snapshot,
            transitioned=True,
            reverse_rewards=True,
            notifications=self._order_notification(event.category, snapshot),
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def upsert_subscription(self, event: ClassifiedEvent) -> ReconcileOutcome:
        """
        Create or update a subscription from created/updated events.

        A created event for a row that already exists is stale (an update got
        here first) and is ignored. canceled is terminal.
        """
        sub: SubscriptionObject = event.payload
        status = map_subscription_status(sub.status)
        log = logger.bind(event_id=event.event_id, subscription_id=sub.id)

        async with self.session_factory() as db:
            repo = SubscriptionRepository(db)
            existing = await repo.get_by_external_id(sub.id)

            if existing is None:
                try:
                    await repo.add(
                        Subscription(
                            external_subscription_id=sub.id,
                            customer_id=sub.customer,
                            customer_email=sub.metadata.get("customer_email"),
                            plan=sub.plan,
                            status=status.value,
                            current_period_end=sub.period_end,
                        )
                    )
                    await db.commit()
                    metrics.record_subscription_update(status.value)
                    log.info("subscription_created", status=status.value, plan=sub.plan)
                    return ReconcileOutcome(action="subscription_created")
                except IntegrityError:
                    await db.rollback()
                    # Only a unique-key race leaves a row behind
                    if await repo.get_by_external_id(sub.id) is None:
                        raise
                    log.info("subscription_created_concurrently")
            elif event.event_type == "customer.subscription.created":
                log.info("subscription_created_event_stale", status=existing.status)
                return ReconcileOutcome(action="ignored_stale_create")

            updated = await repo.update_where_status(
                sub.id,
                OPEN_SUBSCRIPTION_STATUSES,
                period_end=sub.period_end,
                status=status.value,
                plan=sub.plan,
                customer_id=sub.customer,
            )
            if not updated:
                await self._audit(
                    db,
                    event,
                    AuditSeverity.WARNING,
                    "update_for_canceled_subscription",
                    {"subscription_id": sub.id, "provider_status": sub.status},
                )
                await db.commit()
                return ReconcileOutcome(action="ignored_canceled_subscription")
            await db.commit()

        metrics.record_subscription_update(status.value)
        log.info("subscription_updated", status=status.value, plan=sub.plan)
        return ReconcileOutcome(action="subscription_updated")

    async def cancel_subscription(self, event: ClassifiedEvent) -> ReconcileOutcome:
        """
        Cancel a subscription.

        Deleting a subscription we never saw records a canceled stub so a
        late created/updated event cannot resurrect it.
        """
        sub: SubscriptionObject = event.payload
        log = logger.bind(event_id=event.event_id, subscription_id=sub.id)

        async with self.session_factory() as db:
            repo = SubscriptionRepository(db)
            existing = await repo.get_by_external_id(sub.id)

            if existing is None:
                try:
                    await repo.add(
                        Subscription(
                            external_subscription_id=sub.id,
                            customer_id=sub.customer,
                            customer_email=sub.metadata.get("customer_email"),
                            plan=sub.plan,
                            status=SubscriptionStatus.CANCELED.value,
                            current_period_end=sub.period_end,
                        )
                    )
                    await self._audit(
                        db,
                        event,
                        AuditSeverity.WARNING,
                        "canceled_unknown_subscription",
                        {"subscription_id": sub.id, "customer_id": sub.customer},
                    )
                    await db.commit()
                    metrics.record_subscription_update(SubscriptionStatus.CANCELED.value)
                    return ReconcileOutcome(action="canceled_stub_created")
                except IntegrityError:
                    await db.rollback()
                    # Only a unique-key race leaves a row behind
                    if await repo.get_by_external_id(sub.id) is None:
                        raise
                    log.info("subscription_created_concurrently")

            updated = await repo.update_where_status(
                sub.id,
                OPEN_SUBSCRIPTION_STATUSES,
                period_end=sub.period_end,
                status=SubscriptionStatus.CANCELED.value,
            )
            await db.commit()
            if not updated:
                log.info("subscription_already_canceled")
                return ReconcileOutcome(action="already_canceled")

            subscription = await repo.get_by_external_id(sub.id)

        metrics.record_subscription_update(SubscriptionStatus.CANCELED.value)
        log.info("subscription_canceled")
        return ReconcileOutcome(
            action="subscription_canceled",
            notifications=self._subscription_notification(
                event.category, subscription, subscription.customer_email
            ),
        )

    async def record_invoice_paid(self, event: ClassifiedEvent) -> ReconcileOutcome:
        """
        Extend a subscription after a paid invoice.

        past_due returns to active and the period end moves forward. Renewal
        emails go out only for billing cycle invoices.
        """
        invoice: InvoiceObject = event.payload
        subscription_id = invoice.subscription_id
        log = logger.bind(event_id=event.event_id, invoice_id=invoice.id)

        if subscription_id is None:
            log.info("invoice_not_for_subscription")
            return ReconcileOutcome(action="ignored_non_subscription_invoice")

        async with self.session_factory() as db:
            repo = SubscriptionRepository(db)
            existing = await repo.get_by_external_id(subscription_id)
            if existing is None:
                await self._audit(
                    db,
                    event,
                    AuditSeverity.WARNING,
                    "invoice_for_unknown_subscription",
                    {"invoice_id": invoice.id, "subscription_id": subscription_id},
                )
                await db.commit()
                return ReconcileOutcome(action="ignored_unknown_subscription")

            values: Dict[str, Any] = {"status": SubscriptionStatus.ACTIVE.value}
            if invoice.customer_email:
                values["customer_email"] = invoice.customer_email
            updated = await repo.update_where_status(
                subscription_id,
                OPEN_SUBSCRIPTION_STATUSES,
                period_end=invoice.period_end,
                **values,
            )
            if not updated:
                await self._audit(
                    db,
                    event,
                    AuditSeverity.WARNING,
                    "invoice_paid_for_canceled_subscription",
                    {"invoice_id": invoice.id, "subscription_id": subscription_id},
                )
                await db.commit()
                return ReconcileOutcome(action="ignored_canceled_subscription")
            await db.commit()

            subscription = await repo.get_by_external_id(subscription_id)

        metrics.record_subscription_update(SubscriptionStatus.ACTIVE.value)
        log.info("subscription_renewed", subscription_id=subscription_id)

        notifications: List[EmailNotification] = []
        if invoice.billing_reason == "subscription_cycle":
            notifications = self._subscription_notification(
                event.category,
                subscription,
                invoice.customer_email or subscription.customer_email,
                name=invoice.customer_name,
                amount=format_amount(invoice.amount_paid, invoice.currency),
            )
        return ReconcileOutcome(action="subscription_renewed", notifications=notifications)

    async def record_invoice_failed(self, event: ClassifiedEvent) -> ReconcileOutcome:
        """Mark a subscription past_due after a failed invoice and notify the customer."""
        invoice: InvoiceObject = event.payload
        subscription_id = invoice.subscription_id
        log = logger.bind(event_id=event.event_id, invoice_id=invoice.id)

        if subscription_id is None:
            log.info("invoice_not_for_subscription")
            return ReconcileOutcome(action="ignored_non_subscription_invoice")

        async with self.session_factory() as db:
            repo = SubscriptionRepository(db)
            existing = await repo.get_by_external_id(subscription_id)
            if existing is None:
                await self._audit(
                    db,
                    event,
                    AuditSeverity.WARNING,
                    "invoice_for_unknown_subscription",
                    {"invoice_id": invoice.id, "subscription_id": subscription_id},
                )
                await db.commit()
                return ReconcileOutcome(action="ignored_unknown_subscription")

            updated = await repo.update_where_status(
                subscription_id,
                (SubscriptionStatus.ACTIVE.value,),
                status=SubscriptionStatus.PAST_DUE.value,
            )
            await db.commit()
            subscription = await repo.get_by_external_id(subscription_id)

            if subscription.status == SubscriptionStatus.CANCELED.value:
                await self._audit(
                    db,
                    event,
                    AuditSeverity.WARNING,
                    "invoice_failed_for_canceled_subscription",
                    {"invoice_id": invoice.id, "subscription_id": subscription_id},
                )
                await db.commit()
                return ReconcileOutcome(action="ignored_canceled_subscription")

        if updated:
            metrics.record_subscription_update(SubscriptionStatus.PAST_DUE.value)
        log.info("subscription_past_due", subscription_id=subscription_id, changed=updated)
        return ReconcileOutcome(
            action="subscription_past_due",
            notifications=self._subscription_notification(
                event.category,
                subscription,
                invoice.customer_email or subscription.customer_email,
                name=invoice.customer_name,
                amount=format_amount(invoice.amount_due, invoice.currency),
            ),
        )

    async def acknowledge(self, event: ClassifiedEvent) -> ReconcileOutcome:
        """Unrecognized event types are recorded and acknowledged, nothing else."""
        logger.info(
            "webhook_event_ignored",
            event_id=event.event_id,
            event_type=event.event_type,
        )
        return ReconcileOutcome(action="ignored_unrecognized")
