"""
Pytest configuration and fixtures.
"""
import json
import uuid
from decimal import Decimal
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from factories import WEBHOOK_SECRET, sign_payload
from payment_events.api.main import create_app
from payment_events.config import Settings
from payment_events.database.connection import Database
from payment_events.database.models import Affiliate, Order, Subscription
from payment_events.services import Services


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings backed by a file SQLite database."""
    return Settings(
        stripe_webhook_secret=WEBHOOK_SECRET,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'payments_test.db'}",
        resend_api_key="re_test_fake_key",
        notification_from_address="Payments <billing@example.com>",
        notification_timeout_seconds=1.0,
        app_name="payment-events-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def database(test_settings: Settings) -> AsyncGenerator[Database, Any]:
    """Create test database with all tables."""
    db = Database.from_settings(test_settings)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def session_factory(database: Database) -> async_sessionmaker[AsyncSession]:
    return database.session_factory


@pytest.fixture
def email_client() -> AsyncMock:
    """Email channel that accepts everything."""
    client = AsyncMock()
    client.send.return_value = "msg_test_123"
    return client


@pytest.fixture
def services(test_settings: Settings, database: Database, email_client: AsyncMock) -> Services:
    return Services.build(test_settings, database=database, email_client=email_client)


@pytest_asyncio.fixture
async def client(test_settings: Settings, services: Services) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(test_settings, services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def deliver(client: AsyncClient) -> Callable[..., Awaitable[Any]]:
    """POST a signed event to the webhook endpoint."""

    async def _deliver(raw: Dict[str, Any], signature: Optional[str] = None) -> Any:
        body = json.dumps(raw).encode("utf-8")
        return await client.post(
            "/webhooks/stripe",
            content=body,
            headers={
                "Content-Type": "application/json",
                "Stripe-Signature": signature or sign_payload(body),
            },
        )

    return _deliver


@pytest.fixture
def create_order(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Order]]:
    """Insert an order the way the checkout service does."""

    async def _create_order(**overrides: Any) -> Order:
        values: Dict[str, Any] = {
            "external_payment_id": f"cs_test_{uuid.uuid4().hex[:12]}",
            "amount": 10000,
            "currency": "BRL",
            "status": "pending",
            "customer_email": "jane.doe@example.com",
            "customer_name": "Jane Doe",
            "user_id": uuid.uuid4(),
        }
        values.update(overrides)
        order = Order(**values)
        async with session_factory() as db:
            db.add(order)
            await db.commit()
        return order

    return _create_order


@pytest.fixture
def create_affiliate(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Affiliate]]:
    async def _create_affiliate(
        code: str = "AF1",
        status: str = "approved",
        email: str = "partner@example.com",
        commission_rate_percent: Optional[Decimal] = None,
    ) -> Affiliate:
        affiliate = Affiliate(
            code=code,
            email=email,
            name="Partner",
            status=status,
            commission_rate_percent=commission_rate_percent,
        )
        async with session_factory() as db:
            db.add(affiliate)
            await db.commit()
        return affiliate

    return _create_affiliate


@pytest.fixture
def create_subscription(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Subscription]]:
    async def _create_subscription(**overrides: Any) -> Subscription:
        values: Dict[str, Any] = {
            "external_subscription_id": "sub_test_123",
            "customer_id": "cus_test_123",
            "customer_email": "jane.doe@example.com",
            "plan": "Pro Monthly",
            "status": "active",
        }
        values.update(overrides)
        subscription = Subscription(**values)
        async with session_factory() as db:
            db.add(subscription)
            await db.commit()
        return subscription

    return _create_subscription
