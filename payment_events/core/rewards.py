"""
Affiliate commissions and loyalty points.

Both are keyed by unique constraints (one commission per order, one points
entry per user/order/reason), so running a step twice for the same order is
a no-op rather than a double credit. The points ledger is append-only: a
refund adds an offsetting negative entry.
"""
import uuid
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Union

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_events.core.notifications import (
    EmailNotification,
    NotificationTemplate,
    format_amount,
)
from payment_events.core.reconciler import OrderSnapshot
from payment_events.database.models import (
    AffiliateCommission,
    CommissionStatus,
    PointsLedgerEntry,
    PointsReason,
)
from payment_events.database.repositories import (
    AffiliateRepository,
    CommissionRepository,
    PointsRepository,
)
from payment_events.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def calculate_commission(amount_minor: int, rate_percent: Union[Decimal, float, str]) -> int:
    """
    Commission in minor units, rounded half up.

    Args:
        amount_minor: Order amount in minor units
        rate_percent: Commission percentage, e.g. 10 for 10%

    Returns:
        int: Commission in minor units
    """
    rate = Decimal(str(rate_percent))
    commission = Decimal(amount_minor) * rate / Decimal(100)
    return int(commission.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_points(amount_minor: int, unit_minor: int) -> int:
    """One point per full unit of the order amount."""
    return amount_minor // unit_minor


@dataclass(frozen=True)
class CommissionAward:
    order_id: uuid.UUID
    affiliate_code: str
    affiliate_email: str
    affiliate_name: Optional[str]
    amount: int
    currency: str
    rate_percent: Decimal


@dataclass
class RewardsResult:
    commission: Optional[CommissionAward] = None
    points: Optional[int] = None
    notifications: List[EmailNotification] = field(default_factory=list)


class RewardsEngine:
    """
    Credits rewards for paid orders and reverses them on refund.

    Each operation runs in its own short transaction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        commission_rate_percent: Union[Decimal, float] = 10,
        points_unit_minor: int = 100,
    ):
        """
        Initialize the engine.

        Args:
            session_factory: Factory for database sessions
            commission_rate_percent: Affiliate commission percentage
            points_unit_minor: Order amount worth one point
        """
        self.session_factory = session_factory
        self.commission_rate_percent = Decimal(str(commission_rate_percent))
        self.points_unit_minor = points_unit_minor

    async def apply_for_paid_order(self, order: OrderSnapshot) -> RewardsResult:
        """
        Record commission and points for a paid order.

        Args:
            order: Order that is now paid

        Returns:
            RewardsResult: What was newly credited, plus the commission email
        """
        result = RewardsResult()
        result.commission = await self.record_commission(order)
        result.points = await self.award_points(order)

        if result.commission is not None:
            award = result.commission
            result.notifications.append(
                EmailNotification(
                    template=NotificationTemplate.COMMISSION_EARNED,
                    recipient=award.affiliate_email,
                    order_id=str(award.order_id),
                    variables={
                        "name": award.affiliate_name,
                        "amount": format_amount(award.amount, award.currency),
                        "rate": f"{float(award.rate_percent):g}",
                    },
                )
            )
        return result

    async def record_commission(self, order: OrderSnapshot) -> Optional[CommissionAward]:
        """
        Record the affiliate commission for an order.

        Skipped when the order has no affiliate code or the code does not
        belong to an approved affiliate. An affiliate-specific rate wins over
        the configured default.

        Returns:
            Optional[CommissionAward]: The new commission, None if skipped or duplicate
        """
        log = logger.bind(order_id=str(order.id))
        code = (order.affiliate_code or "").strip().upper()
        if not code:
            metrics.record_commission("skipped")
            return None

        async with self.session_factory() as db:
            affiliate = await AffiliateRepository(db).get_approved(code)
            if affiliate is None:
                log.info("commission_skipped_unknown_affiliate", affiliate_code=code)
                metrics.record_commission("skipped")
                return None

            commissions = CommissionRepository(db)
            if await commissions.get_by_order(order.id) is not None:
                log.info("commission_already_recorded")
                metrics.record_commission("duplicate")
                return None

            rate = self.commission_rate_percent
            if affiliate.commission_rate_percent is not None:
                rate = Decimal(str(affiliate.commission_rate_percent))
            amount = calculate_commission(order.amount, rate)
            try:
                await commissions.add(
                    AffiliateCommission(
                        order_id=order.id,
                        affiliate_code=code,
                        amount=amount,
                        rate_percent=rate,
                        status=CommissionStatus.PENDING.value,
                    )
                )
                await db.commit()
            except IntegrityError:
                # A concurrent delivery recorded it first
                await db.rollback()
                log.info("commission_already_recorded")
                metrics.record_commission("duplicate")
                return None

            log.info("commission_recorded", affiliate_code=code, amount=amount, rate=str(rate))
            metrics.record_commission("created")
            return CommissionAward(
                order_id=order.id,
                affiliate_code=code,
                affiliate_email=affiliate.email,
                affiliate_name=affiliate.name,
                amount=amount,
                currency=order.currency,
                rate_percent=rate,
            )

    async def award_points(self, order: OrderSnapshot) -> Optional[int]:
        """
        Credit purchase points for an order.

        Returns:
            Optional[int]: Points credited, None if skipped or already credited
        """
        if order.user_id is None:
            metrics.record_points_entry(PointsReason.PURCHASE.value, "skipped")
            return None

        points = calculate_points(order.amount, self.points_unit_minor)
        if points <= 0:
            metrics.record_points_entry(PointsReason.PURCHASE.value, "skipped")
            return None

        inserted = await self._append_points(
            order.user_id, order.id, points, PointsReason.PURCHASE
        )
        if not inserted:
            return None
        logger.info("points_awarded", order_id=str(order.id), points=points)
        return points

    async def reverse_for_refund(self, order: OrderSnapshot) -> None:
        """
        Undo rewards for a refunded order.

        Cancels a still-pending commission and offsets any purchase points
        with a negative entry.
        """
        log = logger.bind(order_id=str(order.id))

        async with self.session_factory() as db:
            canceled = await CommissionRepository(db).cancel_pending(order.id)
            await db.commit()
        if canceled:
            log.info("commission_canceled")
            metrics.record_commission("canceled")

        if order.user_id is None:
            return

        async with self.session_factory() as db:
            purchase = await PointsRepository(db).get(
                order.user_id, order.id, PointsReason.PURCHASE.value
            )
        if purchase is None:
            return

        if await self._append_points(order.user_id, order.id, -purchase.points, PointsReason.REFUND):
            log.info("points_reversed", points=-purchase.points)

    async def _append_points(
        self, user_id: uuid.UUID, order_id: uuid.UUID, points: int, reason: PointsReason
    ) -> bool:
        async with self.session_factory() as db:
            repo = PointsRepository(db)
            if await repo.get(user_id, order_id, reason.value) is not None:
                metrics.record_points_entry(reason.value, "duplicate")
                return False
            try:
                await repo.add(
                    PointsLedgerEntry(
                        user_id=user_id,
                        order_id=order_id,
                        points=points,
                        reason=reason.value,
                    )
                )
                await db.commit()
            except IntegrityError:
                await db.rollback()
                metrics.record_points_entry(reason.value, "duplicate")
                return False
        metrics.record_points_entry(reason.value, "created")
        return True

    async def points_balance(self, user_id: uuid.UUID) -> int:
        """Sum of all ledger entries for a user."""
        async with self.session_factory() as db:
            return await PointsRepository(db).balance(user_id)
