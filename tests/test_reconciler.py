"""
Tests for payment reconciliation against persisted orders and subscriptions.
"""
from datetime import datetime, timezone
from typing import Any

import pytest
from sqlalchemy.exc import IntegrityError

from factories import (
    build_event,
    checkout_session,
    classify,
    invoice_object,
    payment_intent_object,
    subscription_object,
)
from payment_events.core.clock import as_utc
from payment_events.core.notifications import NotificationTemplate
from payment_events.core.reconciler import PaymentReconciler, map_subscription_status
from payment_events.database.models import SubscriptionStatus
from payment_events.database.repositories import (
    AuditRepository,
    OrderRepository,
    SubscriptionRepository,
)


async def _order(session_factory: Any, order_id: Any) -> Any:
    async with session_factory() as db:
        return await OrderRepository(db).get(order_id)


async def _subscription(session_factory: Any, external_id: str = "sub_test_123") -> Any:
    async with session_factory() as db:
        return await SubscriptionRepository(db).get_by_external_id(external_id)


async def _audit_reasons(session_factory: Any, event_id: str) -> list:
    async with session_factory() as db:
        return [r.reason for r in await AuditRepository(db).list_for_event(event_id)]


class TestOrderReconciliation:
    """Order state machine: pending -> paid -> refunded, pending -> failed."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_checkout_completed_marks_paid(
        self, session_factory: Any, create_order: Any
    ) -> None:
        order = await create_order(external_payment_id="cs_paid")
        reconciler = PaymentReconciler(session_factory)

        outcome = await reconciler.settle_payment(
            classify(build_event("checkout.session.completed", checkout_session("cs_paid")))
        )

        assert outcome.action == "order_paid"
        assert outcome.transitioned is True
        assert outcome.award_rewards is True
        assert [n.template for n in outcome.notifications] == [NotificationTemplate.PAYMENT_SUCCESS]

        stored = await _order(session_factory, order.id)
        assert stored.status == "paid"
        assert stored.paid_at is not None
        assert stored.payment_intent_id == "pi_test_123"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_success_is_noop(self, session_factory: Any, create_order: Any) -> None:
        """Checkout completed and async succeeded both claim success; only one transitions."""
        await create_order(external_payment_id="cs_twice")
        reconciler = PaymentReconciler(session_factory)

        first = await reconciler.settle_payment(
            classify(build_event("checkout.session.completed", checkout_session("cs_twice")))
        )
        second = await reconciler.settle_payment(
            classify(
                build_event("checkout.session.async_payment_succeeded", checkout_session("cs_twice"))
            )
        )

        assert first.transitioned is True
        assert second.transitioned is False
        assert second.action == "already_paid"
        assert second.notifications == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unpaid_checkout_waits_for_async_event(
        self, session_factory: Any, create_order: Any
    ) -> None:
        order = await create_order(external_payment_id="cs_boleto")
        reconciler = PaymentReconciler(session_factory)

        outcome = await reconciler.settle_payment(
            classify(
                build_event(
                    "checkout.session.completed",
                    checkout_session("cs_boleto", payment_status="unpaid"),
                )
            )
        )

        assert outcome.action == "awaiting_async_payment"
        assert (await _order(session_factory, order.id)).status == "pending"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fallback_to_metadata_order_id(
        self, session_factory: Any, create_order: Any
    ) -> None:
        order = await create_order(external_payment_id="cs_original")
        reconciler = PaymentReconciler(session_factory)

        outcome = await reconciler.settle_payment(
            classify(
                build_event(
                    "checkout.session.completed",
                    checkout_session("cs_other", order_id=str(order.id)),
                )
            )
        )

        assert outcome.action == "order_paid"
        assert outcome.order.id == order.id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_order_escalated(self, session_factory: Any) -> None:
        reconciler = PaymentReconciler(session_factory)
        event = classify(
            build_event(
                "checkout.session.completed",
                checkout_session("cs_missing", order_id="not-a-uuid"),
                event_id="evt_missing",
            )
        )

        outcome = await reconciler.settle_payment(event)

        assert outcome.escalated is True
        assert outcome.award_rewards is False
        assert "cs_missing" in outcome.note
        assert await _audit_reasons(session_factory, "evt_missing") == ["order_not_found"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_amount_mismatch_audited(self, session_factory: Any, create_order: Any) -> None:
        await create_order(external_payment_id="cs_mismatch", amount=10000)
        reconciler = PaymentReconciler(session_factory)
        event = classify(
            build_event(
                "checkout.session.completed",
                checkout_session("cs_mismatch", amount_total=9000),
                event_id="evt_mismatch",
            )
        )

        outcome = await reconciler.settle_payment(event)

        assert outcome.action == "order_paid"
        assert await _audit_reasons(session_factory, "evt_mismatch") == ["amount_mismatch"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_late_failure_does_not_regress_paid(
        self, session_factory: Any, create_order: Any
    ) -> None:
        order = await create_order(external_payment_id="cs_late", status="paid")
        reconciler = PaymentReconciler(session_factory)
        event = classify(
            build_event(
                "checkout.session.async_payment_failed",
                checkout_session("cs_late"),
                event_id="evt_late",
            )
        )

        outcome = await reconciler.fail_payment(event)

        assert outcome.action == "ignored_late_failure"
        assert outcome.notifications == []
        assert (await _order(session_factory, order.id)).status == "paid"
        assert await _audit_reasons(session_factory, "evt_late") == ["late_failure_ignored"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_async_failure_marks_failed(
        self, session_factory: Any, create_order: Any
    ) -> None:
        order = await create_order(external_payment_id="cs_fail")
        reconciler = PaymentReconciler(session_factory)

        outcome = await reconciler.fail_payment(
            classify(build_event("checkout.session.async_payment_failed", checkout_session("cs_fail")))
        )

        assert outcome.action == "order_failed"
        assert [n.template for n in outcome.notifications] == [NotificationTemplate.PAYMENT_FAILED]
        assert (await _order(session_factory, order.id)).status == "failed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_for_failed_order_audited(
        self, session_factory: Any, create_order: Any
    ) -> None:
        order = await create_order(external_payment_id="cs_closed", status="failed")
        reconciler = PaymentReconciler(session_factory)

        outcome = await reconciler.settle_payment(
            classify(build_event("checkout.session.completed", checkout_session("cs_closed")))
        )

        assert outcome.action == "ignored_closed_order"
        assert outcome.award_rewards is False
        assert (await _order(session_factory, order.id)).status == "failed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_intent_succeeded_marks_paid(
        self, session_factory: Any, create_order: Any
    ) -> None:
        """Orders from the direct card flow are found by payment intent id."""
        order = await create_order(
            external_payment_id="ord_direct_1", payment_intent_id="pi_direct_1"
        )
        reconciler = PaymentReconciler(session_factory)

        outcome = await reconciler.settle_payment(
            classify(build_event("payment_intent.succeeded", payment_intent_object("pi_direct_1")))
        )

        assert outcome.action == "order_paid"
        assert outcome.award_rewards is True
        assert [n.template for n in outcome.notifications] == [NotificationTemplate.PAYMENT_SUCCESS]
        assert (await _order(session_factory, order.id)).status == "paid"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_intent_falls_back_to_metadata_order_id(
        self, session_factory: Any, create_order: Any
    ) -> None:
        order = await create_order(external_payment_id="ord_direct_2")
        reconciler = PaymentReconciler(session_factory)

        outcome = await reconciler.settle_payment(
            classify(
                build_event(
                    "payment_intent.succeeded",
                    payment_intent_object("pi_unlinked", order_id=str(order.id)),
                )
            )
        )

        assert outcome.action == "order_paid"
        stored = await _order(session_factory, order.id)
        assert stored.status == "paid"
        assert stored.payment_intent_id == "pi_unlinked"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_intent_failed_marks_failed(
        self, session_factory: Any, create_order: Any
    ) -> None:
        order = await create_order(
            external_payment_id="ord_direct_3", payment_intent_id="pi_declined"
        )
        reconciler = PaymentReconciler(session_factory)

        outcome = await reconciler.fail_payment(
            classify(
                build_event(
                    "payment_intent.payment_failed",
                    payment_intent_object(
                        "pi_declined",
                        status="requires_payment_method",
                        failure_message="Your card was declined.",
                    ),
                )
            )
        )

        assert outcome.action == "order_failed"
        assert [n.template for n in outcome.notifications] == [NotificationTemplate.PAYMENT_FAILED]
        assert outcome.notifications[0].variables["reason"] == "Your card was declined."
        assert (await _order(session_factory, order.id)).status == "failed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_full_refund(self, session_factory: Any, create_order: Any) -> None:
        order = await create_order(
            external_payment_id="cs_refund", payment_intent_id="pi_refund", status="paid"
        )
        reconciler = PaymentReconciler(session_factory)
        charge = {
            "id": "ch_1",
            "payment_intent": "pi_refund",
            "amount": 10000,
            "amount_refunded": 10000,
            "refunded": True,
        }

        outcome = await reconciler.refund_charge(classify(build_event("charge.refunded", charge)))

        assert outcome.action == "order_refunded"
        assert outcome.reverse_rewards is True
        assert [n.template for n in outcome.notifications] == [NotificationTemplate.REFUND_PROCESSED]
        stored = await _order(session_factory, order.id)
        assert stored.status == "refunded"
        assert stored.refunded_at is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_refund_leaves_order_paid(
        self, session_factory: Any, create_order: Any
    ) -> None:
        order = await create_order(payment_intent_id="pi_partial", status="paid")
        reconciler = PaymentReconciler(session_factory)
        charge = {
            "id": "ch_2",
            "payment_intent": "pi_partial",
            "amount": 10000,
            "amount_refunded": 2500,
            "refunded": False,
        }

        outcome = await reconciler.refund_charge(
            classify(build_event("charge.refunded", charge, event_id="evt_partial"))
        )

        assert outcome.action == "ignored_partial_refund"
        assert (await _order(session_factory, order.id)).status == "paid"
        assert await _audit_reasons(session_factory, "evt_partial") == ["partial_refund"]


class TestSubscriptionReconciliation:
    """Subscription mirror: active <-> past_due, canceled is terminal."""

    @pytest.mark.unit
    def test_status_mapping(self) -> None:
        assert map_subscription_status("trialing") is SubscriptionStatus.ACTIVE
        assert map_subscription_status("unpaid") is SubscriptionStatus.PAST_DUE
        assert map_subscription_status("incomplete_expired") is SubscriptionStatus.CANCELED
        assert map_subscription_status("something_new") is SubscriptionStatus.PAST_DUE

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_created_then_updated(self, session_factory: Any) -> None:
        reconciler = PaymentReconciler(session_factory)

        created = await reconciler.upsert_subscription(
            classify(build_event("customer.subscription.created", subscription_object()))
        )
        updated = await reconciler.upsert_subscription(
            classify(
                build_event(
                    "customer.subscription.updated", subscription_object(status="past_due")
                )
            )
        )

        assert created.action == "subscription_created"
        assert updated.action == "subscription_updated"
        stored = await _subscription(session_factory)
        assert stored.status == "past_due"
        assert stored.plan == "Pro Monthly"
        assert stored.customer_email == "jane.doe@example.com"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_null_plan_metadata_still_creates_row(self, session_factory: Any) -> None:
        raw = subscription_object(subscription_id="sub_no_plan")
        raw["items"] = {"data": []}
        raw["metadata"] = {"plan": None}
        reconciler = PaymentReconciler(session_factory)

        outcome = await reconciler.upsert_subscription(
            classify(build_event("customer.subscription.created", raw))
        )

        assert outcome.action == "subscription_created"
        assert (await _subscription(session_factory, "sub_no_plan")).plan == "unknown"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_insert_failure_without_row_is_raised(
        self, session_factory: Any, mocker: Any
    ) -> None:
        """Only a lost unique-key race is absorbed; other constraint errors surface."""
        mocker.patch.object(
            SubscriptionRepository,
            "add",
            side_effect=IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed")),
        )
        reconciler = PaymentReconciler(session_factory)

        with pytest.raises(IntegrityError):
            await reconciler.upsert_subscription(
                classify(build_event("customer.subscription.created", subscription_object()))
            )
        with pytest.raises(IntegrityError):
            await reconciler.cancel_subscription(
                classify(
                    build_event(
                        "customer.subscription.deleted", subscription_object(status="canceled")
                    )
                )
            )
        assert await _subscription(session_factory) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_created_event_ignored(
        self, session_factory: Any, create_subscription: Any
    ) -> None:
        await create_subscription(status="past_due")
        reconciler = PaymentReconciler(session_factory)

        outcome = await reconciler.upsert_subscription(
            classify(build_event("customer.subscription.created", subscription_object()))
        )

        assert outcome.action == "ignored_stale_create"
        assert (await _subscription(session_factory)).status == "past_due"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_deleted_unknown_subscription_creates_canceled_stub(
        self, session_factory: Any
    ) -> None:
        reconciler = PaymentReconciler(session_factory)
        deleted = classify(
            build_event(
                "customer.subscription.deleted",
                subscription_object(subscription_id="sub_ghost", status="canceled"),
                event_id="evt_ghost",
            )
        )

        outcome = await reconciler.cancel_subscription(deleted)

        assert outcome.action == "canceled_stub_created"
        assert (await _subscription(session_factory, "sub_ghost")).status == "canceled"
        assert await _audit_reasons(session_factory, "evt_ghost") == [
            "canceled_unknown_subscription"
        ]

        # A late update cannot resurrect it
        late = await reconciler.upsert_subscription(
            classify(
                build_event(
                    "customer.subscription.updated", subscription_object(subscription_id="sub_ghost")
                )
            )
        )
        assert late.action == "ignored_canceled_subscription"
        assert (await _subscription(session_factory, "sub_ghost")).status == "canceled"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_sends_notification_once(
        self, session_factory: Any, create_subscription: Any
    ) -> None:
        await create_subscription()
        reconciler = PaymentReconciler(session_factory)
        deleted = build_event("customer.subscription.deleted", subscription_object(status="canceled"))

        first = await reconciler.cancel_subscription(classify(deleted))
        second = await reconciler.cancel_subscription(classify(deleted))

        assert first.action == "subscription_canceled"
        assert [n.template for n in first.notifications] == [
            NotificationTemplate.SUBSCRIPTION_CANCELED
        ]
        assert second.action == "already_canceled"
        assert second.notifications == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invoice_paid_reactivates_and_extends(
        self, session_factory: Any, create_subscription: Any
    ) -> None:
        await create_subscription(
            status="past_due",
            current_period_end=datetime(2030, 1, 1, tzinfo=timezone.utc),
        )
        reconciler = PaymentReconciler(session_factory)

        outcome = await reconciler.record_invoice_paid(
            classify(build_event("invoice.paid", invoice_object(period_end=1_910_000_000)))
        )

        assert outcome.action == "subscription_renewed"
        assert [n.template for n in outcome.notifications] == [
            NotificationTemplate.SUBSCRIPTION_RENEWAL
        ]
        stored = await _subscription(session_factory)
        assert stored.status == "active"
        assert as_utc(stored.current_period_end) == datetime.fromtimestamp(
            1_910_000_000, tz=timezone.utc
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_period_end_never_moves_backwards(
        self, session_factory: Any, create_subscription: Any
    ) -> None:
        later = datetime(2031, 1, 1, tzinfo=timezone.utc)
        await create_subscription(current_period_end=later)
        reconciler = PaymentReconciler(session_factory)

        await reconciler.record_invoice_paid(
            classify(build_event("invoice.paid", invoice_object(period_end=1_900_000_000)))
        )

        assert as_utc((await _subscription(session_factory)).current_period_end) == later

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_first_invoice_sends_no_renewal(
        self, session_factory: Any, create_subscription: Any
    ) -> None:
        await create_subscription()
        reconciler = PaymentReconciler(session_factory)

        outcome = await reconciler.record_invoice_paid(
            classify(
                build_event("invoice.paid", invoice_object(billing_reason="subscription_create"))
            )
        )

        assert outcome.action == "subscription_renewed"
        assert outcome.notifications == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invoice_failed_marks_past_due(
        self, session_factory: Any, create_subscription: Any
    ) -> None:
        await create_subscription()
        reconciler = PaymentReconciler(session_factory)

        outcome = await reconciler.record_invoice_failed(
            classify(build_event("invoice.payment_failed", invoice_object()))
        )

        assert outcome.action == "subscription_past_due"
        assert [n.template for n in outcome.notifications] == [NotificationTemplate.PAYMENT_FAILED]
        assert (await _subscription(session_factory)).status == "past_due"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invoice_for_canceled_subscription_ignored(
        self, session_factory: Any, create_subscription: Any
    ) -> None:
        await create_subscription(status="canceled")
        reconciler = PaymentReconciler(session_factory)

        paid = await reconciler.record_invoice_paid(
            classify(build_event("invoice.paid", invoice_object()))
        )
        failed = await reconciler.record_invoice_failed(
            classify(build_event("invoice.payment_failed", invoice_object()))
        )

        assert paid.action == "ignored_canceled_subscription"
        assert failed.action == "ignored_canceled_subscription"
        assert failed.notifications == []
        assert (await _subscription(session_factory)).status == "canceled"
