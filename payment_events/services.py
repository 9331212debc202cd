"""
Process-wide service graph.

Everything a request or worker needs is built once from Settings and
passed down explicitly; no component reads module-level globals.
"""
from dataclasses import dataclass
from typing import Optional

import httpx
import redis.asyncio as aioredis
import structlog

from payment_events.config import Settings
from payment_events.core.classifier import EventClassifier
from payment_events.core.ledger import IdempotencyLedger
from payment_events.core.notifications import NotificationDispatcher
from payment_events.core.pipeline import WebhookPipeline
from payment_events.core.reconciler import PaymentReconciler
from payment_events.core.rewards import RewardsEngine
from payment_events.database.connection import Database
from payment_events.integrations.email_client import (
    EmailClient,
    ResendEmailClient,
    create_http_client,
)
from payment_events.integrations.signature import SignatureVerifier
from payment_events.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    database: Database
    ledger: IdempotencyLedger
    pipeline: WebhookPipeline
    dispatcher: NotificationDispatcher
    health: HealthCheck
    http_client: Optional[httpx.AsyncClient] = None
    redis_client: Optional[aioredis.Redis] = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        database: Optional[Database] = None,
        email_client: Optional[EmailClient] = None,
        redis_client: Optional[aioredis.Redis] = None,
    ) -> "Services":
        """
        Wire every component from settings.

        Args:
            settings: Validated application settings
            database: Existing database handle (built from settings if omitted)
            email_client: Delivery channel (Resend over httpx if omitted)
            redis_client: Redis client (built from settings.redis_url if omitted)

        Returns:
            Services: Fully wired service graph
        """
        database = database or Database.from_settings(settings)

        http_client = None
        if email_client is None:
            http_client = create_http_client(settings.notification_timeout_seconds)
            email_client = ResendEmailClient(
                api_key=settings.resend_api_key,
                from_address=settings.notification_from_address,
                http_client=http_client,
                api_url=settings.resend_api_url,
            )

        if redis_client is None and settings.redis_url:
            redis_client = aioredis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )

        session_factory = database.session_factory
        ledger = IdempotencyLedger(
            session_factory,
            stale_after_seconds=settings.ledger_stale_after_seconds,
            redis_client=redis_client,
            processed_ttl_seconds=settings.redis_processed_ttl_seconds,
        )
        pipeline = WebhookPipeline(
            verifier=SignatureVerifier(
                settings.stripe_webhook_secret,
                tolerance_seconds=settings.stripe_signature_tolerance_seconds,
            ),
            classifier=EventClassifier(),
            ledger=ledger,
            reconciler=PaymentReconciler(session_factory),
            rewards=RewardsEngine(
                session_factory,
                commission_rate_percent=settings.commission_rate_percent,
                points_unit_minor=settings.points_unit_minor,
            ),
        )
        dispatcher = NotificationDispatcher(
            email_client,
            timeout_seconds=settings.notification_timeout_seconds,
            max_attempts=settings.notification_max_attempts,
        )

        logger.info(
            "services_built",
            redis_enabled=redis_client is not None,
            app_env=settings.app_env,
        )
        return cls(
            settings=settings,
            database=database,
            ledger=ledger,
            pipeline=pipeline,
            dispatcher=dispatcher,
            health=HealthCheck(database, redis_client, ledger),
            http_client=http_client,
            redis_client=redis_client,
        )

    async def close(self) -> None:
        """Release network resources."""
        if self.http_client is not None:
            await self.http_client.aclose()
        if self.redis_client is not None:
            await self.redis_client.aclose()
        await self.database.dispose()
