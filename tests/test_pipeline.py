"""
Tests for the webhook processing pipeline.
"""
import json
from typing import Any

import pytest

from factories import build_event, checkout_session, classify, sign_payload
from payment_events.core.classifier import EventCategory
from payment_events.core.pipeline import ProcessingStatus
from payment_events.core.reconciler import ReconcileOutcome
from payment_events.exceptions import InvalidSignatureError, MalformedPayloadError
from payment_events.services import Services


class TestWebhookPipeline:
    """Test suite for WebhookPipeline."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_parse_verifies_before_parsing(self, services: Services) -> None:
        """An unsigned garbage body is a signature failure, not a parse failure."""
        with pytest.raises(InvalidSignatureError):
            services.pipeline.parse(b"not json", "t=1,v1=abc")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_parse_signed_garbage(self, services: Services) -> None:
        body = b"not json"
        with pytest.raises(MalformedPayloadError):
            services.pipeline.parse(body, sign_payload(body))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_parse_classifies(self, services: Services) -> None:
        body = json.dumps(
            build_event("checkout.session.completed", checkout_session("cs_1"))
        ).encode()
        event = services.pipeline.parse(body, sign_payload(body))
        assert event.category is EventCategory.CHECKOUT_COMPLETED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_registered_handler_replaces_default(self, services: Services) -> None:
        async def custom(event: Any) -> ReconcileOutcome:
            return ReconcileOutcome(action="custom")

        services.pipeline.register_handler(EventCategory.UNRECOGNIZED, custom)
        result = await services.pipeline.process(classify(build_event("customer.created", {})))

        assert result.action == "custom"
        assert result.status == ProcessingStatus.IGNORED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_crash_before_rewards_healed_by_redelivery(
        self,
        services: Services,
        create_order: Any,
        create_affiliate: Any,
        mocker: Any,
    ) -> None:
        """
        The order is paid but rewards failed; the redelivery credits them.

        The second run finds the order already paid and still applies rewards.
        """
        await create_affiliate("AF1")
        order = await create_order(external_payment_id="cs_heal", affiliate_code="AF1")
        event = classify(build_event("checkout.session.completed", checkout_session("cs_heal")))
        rewards = services.pipeline.rewards
        original = rewards.apply_for_paid_order
        calls = []

        async def crash_once(snapshot: Any) -> Any:
            calls.append(snapshot)
            if len(calls) == 1:
                raise RuntimeError("crash")
            return await original(snapshot)

        mocker.patch.object(rewards, "apply_for_paid_order", side_effect=crash_once)

        with pytest.raises(RuntimeError):
            await services.pipeline.process(event)

        result = await services.pipeline.process(event)

        assert result.status == ProcessingStatus.PROCESSED
        assert result.action == "already_paid"
        assert [n.template.value for n in result.notifications] == ["commission_earned"]
        assert await rewards.points_balance(order.user_id) == 100
