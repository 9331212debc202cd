"""
Tests for notification template selection, rendering and dispatch.
"""
import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from payment_events.core.classifier import EventCategory
from payment_events.core.notifications import (
    EmailNotification,
    NotificationDispatcher,
    NotificationTemplate,
    format_amount,
    render,
    select_template,
)
from payment_events.exceptions import NotificationError
from payment_events.integrations.email_client import ResendEmailClient


def _notification(**overrides) -> EmailNotification:
    values = {
        "template": NotificationTemplate.PAYMENT_SUCCESS,
        "recipient": "jane.doe@example.com",
        "order_id": "ord_123",
        "variables": {"name": "Jane", "amount": "BRL 100.00"},
    }
    values.update(overrides)
    return EmailNotification(**values)


class TestTemplates:
    """Test suite for template selection and rendering."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "category,status,expected",
        [
            (EventCategory.CHECKOUT_COMPLETED, "paid", NotificationTemplate.PAYMENT_SUCCESS),
            (EventCategory.ASYNC_PAYMENT_SUCCEEDED, "paid", NotificationTemplate.PAYMENT_SUCCESS),
            (EventCategory.ASYNC_PAYMENT_FAILED, "failed", NotificationTemplate.PAYMENT_FAILED),
            (EventCategory.INVOICE_PAYMENT_FAILED, "past_due", NotificationTemplate.PAYMENT_FAILED),
            (EventCategory.INVOICE_PAID, "active", NotificationTemplate.SUBSCRIPTION_RENEWAL),
            (EventCategory.SUBSCRIPTION_DELETED, "canceled", NotificationTemplate.SUBSCRIPTION_CANCELED),
            (EventCategory.CHARGE_REFUNDED, "refunded", NotificationTemplate.REFUND_PROCESSED),
            (EventCategory.ASYNC_PAYMENT_FAILED, "paid", None),
            (EventCategory.SUBSCRIPTION_UPSERTED, "active", None),
            (EventCategory.UNRECOGNIZED, "paid", None),
        ],
    )
    def test_select_template(self, category, status, expected) -> None:
        assert select_template(category, status) is expected

    @pytest.mark.unit
    def test_format_amount(self) -> None:
        assert format_amount(10000, "brl") == "BRL 100.00"
        assert format_amount(5, "usd") == "USD 0.05"
        assert format_amount(None, "usd") == ""

    @pytest.mark.unit
    def test_render_escapes_variables(self) -> None:
        email = render(_notification(variables={"name": "<script>", "amount": "BRL 1.00"}))

        assert email.subject == "Payment confirmed - order ord_123"
        assert "&lt;script&gt;" in email.html
        assert "<script>" not in email.html
        assert "BRL 1.00" in email.html

    @pytest.mark.unit
    def test_render_missing_variables(self) -> None:
        """Absent variables render empty instead of raising."""
        email = render(
            EmailNotification(
                template=NotificationTemplate.SUBSCRIPTION_RENEWAL,
                recipient="jane.doe@example.com",
            )
        )
        assert email.subject == "Subscription renewed"
        assert "Hi there," in email.html

    @pytest.mark.unit
    def test_subject_is_plain_text(self) -> None:
        email = render(
            _notification(
                template=NotificationTemplate.SUBSCRIPTION_RENEWAL,
                variables={"plan": "Pro & Team"},
            )
        )
        assert email.subject == "Subscription renewed - Pro & Team"
        assert "Pro &amp; Team" in email.html

    @pytest.mark.unit
    def test_payment_failed_shows_decline_reason(self) -> None:
        email = render(
            _notification(
                template=NotificationTemplate.PAYMENT_FAILED,
                variables={"amount": "BRL 50.00", "reason": "Your card was declined."},
            )
        )
        assert "Your card was declined." in email.html
        assert "Reason given" not in render(
            _notification(template=NotificationTemplate.PAYMENT_FAILED)
        ).html

    @pytest.mark.unit
    @pytest.mark.parametrize("template", list(NotificationTemplate))
    def test_every_template_renders(self, template: NotificationTemplate) -> None:
        email = render(_notification(template=template))
        assert email.subject
        assert email.html.startswith("<!DOCTYPE html>")


class TestNotificationDispatcher:
    """Test suite for NotificationDispatcher."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dispatch_success(self) -> None:
        email_client = AsyncMock()
        email_client.send.return_value = "msg_1"
        dispatcher = NotificationDispatcher(email_client)

        assert await dispatcher.dispatch(_notification()) is True
        to, subject, body = email_client.send.await_args.args
        assert to == "jane.doe@example.com"
        assert subject == "Payment confirmed - order ord_123"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retry_then_success(self) -> None:
        email_client = AsyncMock()
        email_client.send.side_effect = [NotificationError("503"), "msg_2"]
        dispatcher = NotificationDispatcher(
            email_client, max_attempts=2, retry_backoff_seconds=0.01
        )

        assert await dispatcher.dispatch(_notification()) is True
        assert email_client.send.await_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_is_bounded_and_swallowed(self) -> None:
        email_client = AsyncMock()
        email_client.send.side_effect = NotificationError("down")
        dispatcher = NotificationDispatcher(
            email_client, max_attempts=2, retry_backoff_seconds=0.01
        )

        assert await dispatcher.dispatch(_notification()) is False
        assert email_client.send.await_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_slow_channel_times_out(self) -> None:
        """A hung email provider cannot stall dispatch beyond the timeout."""

        async def hang(*args):
            await asyncio.sleep(10)

        email_client = AsyncMock()
        email_client.send.side_effect = hang
        dispatcher = NotificationDispatcher(email_client, timeout_seconds=0.05)

        assert await dispatcher.dispatch(_notification()) is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unexpected_error_swallowed(self) -> None:
        email_client = AsyncMock()
        email_client.send.side_effect = RuntimeError("bug")
        dispatcher = NotificationDispatcher(email_client, max_attempts=3)

        assert await dispatcher.dispatch(_notification()) is False
        # Only NotificationError is retried
        assert email_client.send.await_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dispatch_all_isolates_failures(self) -> None:
        email_client = AsyncMock()
        email_client.send.side_effect = [RuntimeError("bug"), "msg_3"]
        dispatcher = NotificationDispatcher(email_client, max_attempts=1)

        sent = await dispatcher.dispatch_all([_notification(), _notification()])

        assert sent == 1


class TestResendEmailClient:
    """Test suite for ResendEmailClient."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_send_posts_message(self) -> None:
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["request"] = request
            return httpx.Response(200, json={"id": "re_msg_1"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            client = ResendEmailClient("re_key", "billing@example.com", http_client)
            message_id = await client.send("jane.doe@example.com", "Hi", "<p>Hi</p>")

        request = captured["request"]
        assert message_id == "re_msg_1"
        assert request.headers["Authorization"] == "Bearer re_key"
        assert request.url == "https://api.resend.com/emails"
        assert b'"to":["jane.doe@example.com"]' in request.content.replace(b" ", b"")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_api_error_raises(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(422, json={}))
        async with httpx.AsyncClient(transport=transport) as http_client:
            client = ResendEmailClient("re_key", "billing@example.com", http_client)
            with pytest.raises(NotificationError, match="422"):
                await client.send("jane.doe@example.com", "Hi", "<p>Hi</p>")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transport_error_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            client = ResendEmailClient("re_key", "billing@example.com", http_client)
            with pytest.raises(NotificationError, match="transport"):
                await client.send("jane.doe@example.com", "Hi", "<p>Hi</p>")
