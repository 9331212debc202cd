"""
Typed repositories, one per entity.

Each repository wraps a caller-owned AsyncSession; committing is the
caller's job so a pipeline step can group its writes in one transaction.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from payment_events.database.models import (
    Affiliate,
    AffiliateCommission,
    AffiliateStatus,
    CommissionStatus,
    Order,
    PaymentAuditRecord,
    PointsLedgerEntry,
    Subscription,
    WebhookEvent,
    WebhookStatus,
)


class WebhookEventRepository:
    """Access to the webhook_events idempotency ledger."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def insert_pending(
        self,
        provider_event_id: str,
        event_type: str,
        raw_payload: Dict[str, Any],
        received_at: datetime,
    ) -> WebhookEvent:
        """
        Insert a pending ledger row.

        Raises:
            IntegrityError: If the provider event id is already recorded
        """
        event = WebhookEvent(
            provider_event_id=provider_event_id,
            type=event_type,
            raw_payload=raw_payload,
            processing_status=WebhookStatus.PENDING.value,
            received_at=received_at,
            attempts=1,
        )
        self.session.add(event)
        await self.session.flush()
        return event

    async def get(self, provider_event_id: str) -> Optional[WebhookEvent]:
        stmt = select(WebhookEvent).where(WebhookEvent.provider_event_id == provider_event_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def readmit_stale(
        self, provider_event_id: str, cutoff: datetime, now: datetime
    ) -> bool:
        """Take over a pending row older than cutoff. Only one caller can win."""
        stmt = (
            update(WebhookEvent)
            .where(
                WebhookEvent.provider_event_id == provider_event_id,
                WebhookEvent.processing_status == WebhookStatus.PENDING.value,
                WebhookEvent.received_at < cutoff,
            )
            .values(received_at=now, attempts=WebhookEvent.attempts + 1)
        )
        stmt = stmt.execution_options(synchronize_session=False)
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def readmit_failed(self, provider_event_id: str, now: datetime) -> bool:
        """Move a failed row back to pending for a redelivery."""
        stmt = (
            update(WebhookEvent)
            .where(
                WebhookEvent.provider_event_id == provider_event_id,
                WebhookEvent.processing_status == WebhookStatus.FAILED.value,
            )
            .values(
                processing_status=WebhookStatus.PENDING.value,
                received_at=now,
                attempts=WebhookEvent.attempts + 1,
            )
        )
        stmt = stmt.execution_options(synchronize_session=False)
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def finish(
        self,
        provider_event_id: str,
        status: WebhookStatus,
        processed_at: Optional[datetime],
        error_message: Optional[str] = None,
    ) -> bool:
        """Transition pending -> processed/failed."""
        stmt = (
            update(WebhookEvent)
            .where(
                WebhookEvent.provider_event_id == provider_event_id,
                WebhookEvent.processing_status == WebhookStatus.PENDING.value,
            )
            .values(
                processing_status=status.value,
                processed_at=processed_at,
                error_message=error_message,
            )
        )
        stmt = stmt.execution_options(synchronize_session=False)
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def list_stuck(self, stale_cutoff: datetime, limit: int = 100) -> List[WebhookEvent]:
        """Pending rows older than the cutoff plus every failed row."""
        stmt = (
            select(WebhookEvent)
            .where(
                or_(
                    (WebhookEvent.processing_status == WebhookStatus.PENDING.value)
                    & (WebhookEvent.received_at < stale_cutoff),
                    WebhookEvent.processing_status == WebhookStatus.FAILED.value,
                )
            )
            .order_by(WebhookEvent.received_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class OrderRepository:
    """Access to orders. Status changes go through transition() only."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, order_id: uuid.UUID) -> Optional[Order]:
        return await self.session.get(Order, order_id, populate_existing=True)

    async def get_by_external_payment_id(self, external_payment_id: str) -> Optional[Order]:
        stmt = select(Order).where(Order.external_payment_id == external_payment_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_payment_intent_id(self, payment_intent_id: str) -> Optional[Order]:
        stmt = select(Order).where(
            or_(
                Order.payment_intent_id == payment_intent_id,
                Order.external_payment_id == payment_intent_id,
            )
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def transition(
        self,
        order_id: uuid.UUID,
        expected_status: str,
        new_status: str,
        **values: Any,
    ) -> bool:
        """
        Compare-and-set the order status.

        Args:
            order_id: Order to update
            expected_status: Status the row must currently hold
            new_status: Status to write
            **values: Extra columns to set in the same statement

        Returns:
            bool: True if this call performed the transition
        """
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.status == expected_status)
            .values(status=new_status, updated_at=func.now(), **values)
        )
        stmt = stmt.execution_options(synchronize_session=False)
        result = await self.session.execute(stmt)
        return result.rowcount == 1


class SubscriptionRepository:
    """Access to subscriptions keyed by the provider subscription id."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        stmt = select(Subscription).where(
            Subscription.external_subscription_id == external_subscription_id
        ).execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add(self, subscription: Subscription) -> Subscription:
        """
        Raises:
            IntegrityError: If the provider subscription id already exists
        """
        self.session.add(subscription)
        await self.session.flush()
        return subscription

    async def update_where_status(
        self,
        external_subscription_id: str,
        allowed_statuses: Sequence[str],
        period_end: Optional[datetime] = None,
        **values: Any,
    ) -> bool:
        """
        Conditionally update a subscription.

        The row is only touched while its status is one of allowed_statuses,
        and current_period_end never moves backwards.

        Args:
            external_subscription_id: Provider subscription id
            allowed_statuses: Statuses the row may currently hold
            period_end: Candidate new period end
            **values: Other columns to set

        Returns:
            bool: True if a row was updated
        """
        if period_end is not None:
            values["current_period_end"] = case(
                (Subscription.current_period_end.is_(None), period_end),
                (Subscription.current_period_end < period_end, period_end),
                else_=Subscription.current_period_end,
            )
        stmt = (
            update(Subscription)
            .where(
                Subscription.external_subscription_id == external_subscription_id,
                Subscription.status.in_(list(allowed_statuses)),
            )
            .values(updated_at=func.now(), **values)
        )
        stmt = stmt.execution_options(synchronize_session=False)
        result = await self.session.execute(stmt)
        return result.rowcount == 1


class AffiliateRepository:
    """Read-only lookups of affiliates."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_approved(self, code: str) -> Optional[Affiliate]:
        stmt = select(Affiliate).where(
            Affiliate.code == code.strip().upper(),
            Affiliate.status == AffiliateStatus.APPROVED.value,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()


class CommissionRepository:
    """Access to affiliate commissions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_order(self, order_id: uuid.UUID) -> Optional[AffiliateCommission]:
        stmt = select(AffiliateCommission).where(AffiliateCommission.order_id == order_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add(self, commission: AffiliateCommission) -> AffiliateCommission:
        """
        Raises:
            IntegrityError: If the order already has a commission
        """
        self.session.add(commission)
        await self.session.flush()
        return commission

    async def cancel_pending(self, order_id: uuid.UUID) -> bool:
        stmt = (
            update(AffiliateCommission)
            .where(
                AffiliateCommission.order_id == order_id,
                AffiliateCommission.status == CommissionStatus.PENDING.value,
            )
            .values(status=CommissionStatus.CANCELED.value)
        )
        stmt = stmt.execution_options(synchronize_session=False)
        result = await self.session.execute(stmt)
        return result.rowcount == 1


class PointsRepository:
    """Append-only access to the points ledger."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(
        self, user_id: uuid.UUID, order_id: uuid.UUID, reason: str
    ) -> Optional[PointsLedgerEntry]:
        stmt = select(PointsLedgerEntry).where(
            PointsLedgerEntry.user_id == user_id,
            PointsLedgerEntry.order_id == order_id,
            PointsLedgerEntry.reason == reason,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add(self, entry: PointsLedgerEntry) -> PointsLedgerEntry:
        """
        Raises:
            IntegrityError: If the (user, order, reason) entry already exists
        """
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def balance(self, user_id: uuid.UUID) -> int:
        stmt = select(func.coalesce(func.sum(PointsLedgerEntry.points), 0)).where(
            PointsLedgerEntry.user_id == user_id
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())


class AuditRepository:
    """Append-only anomaly trail."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(
        self,
        provider_event_id: str,
        event_type: str,
        severity: str,
        reason: str,
        details: Dict[str, Any],
    ) -> PaymentAuditRecord:
        record = PaymentAuditRecord(
            provider_event_id=provider_event_id,
            event_type=event_type,
            severity=severity,
            reason=reason,
            details=details,
        )
        self.session.add(record)
        await self.session.flush()
        return record

    async def list_for_event(self, provider_event_id: str) -> List[PaymentAuditRecord]:
        stmt = (
            select(PaymentAuditRecord)
            .where(PaymentAuditRecord.provider_event_id == provider_event_id)
            .order_by(PaymentAuditRecord.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
