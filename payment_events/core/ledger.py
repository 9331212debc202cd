"""
Idempotency ledger for webhook deliveries.

This module implements a two-tier ledger:
1. Redis markers for fast rejection of already-processed events (optional)
2. The webhook_events table, whose unique provider_event_id is the real gate

A delivery is admitted at most once while another delivery of the same
event is in flight. A pending row older than the stale threshold, or a
row marked failed, may be taken over by a redelivery.
"""
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_events.core.classifier import ClassifiedEvent
from payment_events.core.clock import utcnow
from payment_events.database.models import WebhookEvent, WebhookStatus
from payment_events.database.repositories import WebhookEventRepository
from payment_events.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class Admission(str, Enum):
    ADMITTED = "admitted"
    ALREADY_PROCESSED = "already_processed"
    IN_FLIGHT = "in_flight"


class IdempotencyLedger:
    """
    Records every verified delivery and decides whether it may run.

    Uses:
    - INSERT into webhook_events; the unique constraint decides races
    - Conditional UPDATEs to re-admit stale or failed rows
    - Redis `webhook:processed:{id}` markers as a read-through cache
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        stale_after_seconds: int = 300,
        redis_client: Optional[aioredis.Redis] = None,
        processed_ttl_seconds: int = 86400 * 7,
    ):
        """
        Initialize the ledger.

        Args:
            session_factory: Factory for database sessions
            stale_after_seconds: Age after which a pending row may be re-admitted
            redis_client: Optional Redis client for the processed fast path
            processed_ttl_seconds: TTL of Redis processed markers
        """
        self.session_factory = session_factory
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.redis_client = redis_client
        self.processed_ttl_seconds = processed_ttl_seconds

    @staticmethod
    def _cache_key(provider_event_id: str) -> str:
        return f"webhook:processed:{provider_event_id}"

    async def _is_cached_processed(self, provider_event_id: str) -> bool:
        if self.redis_client is None:
            return False
        try:
            return bool(await self.redis_client.exists(self._cache_key(provider_event_id)))
        except RedisError as e:
            logger.warning(
                "redis_cache_error",
                error=str(e),
                provider_event_id=provider_event_id,
            )
            return False

    async def _cache_processed(self, provider_event_id: str) -> None:
        if self.redis_client is None:
            return
        try:
            await self.redis_client.setex(
                self._cache_key(provider_event_id), self.processed_ttl_seconds, "1"
            )
        except RedisError as e:
            logger.warning(
                "redis_cache_set_error",
                error=str(e),
                provider_event_id=provider_event_id,
            )

    async def begin_processing(self, event: ClassifiedEvent) -> Admission:
        """
        Record a delivery and decide whether it may be processed.

        Args:
            event: Verified, classified event

        Returns:
            Admission: ADMITTED if this caller owns processing,
                ALREADY_PROCESSED or IN_FLIGHT otherwise
        """
        event_id = event.event_id

        if await self._is_cached_processed(event_id):
            logger.info("webhook_already_processed", event_id=event_id, source="redis")
            metrics.record_ledger_admission(Admission.ALREADY_PROCESSED.value, source="redis")
            return Admission.ALREADY_PROCESSED

        now = utcnow()
        async with self.session_factory() as session:
            repo = WebhookEventRepository(session)

            try:
                await repo.insert_pending(event_id, event.event_type, event.raw, received_at=now)
                await session.commit()
                logger.info(
                    "webhook_event_admitted",
                    event_id=event_id,
                    event_type=event.event_type,
                )
                metrics.record_ledger_admission(Admission.ADMITTED.value)
                return Admission.ADMITTED
            except IntegrityError:
                await session.rollback()

            existing = await repo.get(event_id)
            admission = await self._decide_existing(session, repo, existing, now)

        metrics.record_ledger_admission(admission.value)
        if admission is Admission.ALREADY_PROCESSED:
            logger.info("webhook_already_processed", event_id=event_id, source="database")
            await self._cache_processed(event_id)
        elif admission is Admission.IN_FLIGHT:
            logger.info("webhook_event_in_flight", event_id=event_id)
        else:
            logger.warning("webhook_event_readmitted", event_id=event_id)
        return admission

    async def _decide_existing(
        self,
        session: AsyncSession,
        repo: WebhookEventRepository,
        existing: Optional[WebhookEvent],
        now: datetime,
    ) -> Admission:
        if existing is None:
            # Unique violation but no row visible: the inserting
            # transaction is still open elsewhere
            return Admission.IN_FLIGHT

        if existing.processing_status == WebhookStatus.PROCESSED.value:
            return Admission.ALREADY_PROCESSED

        if existing.processing_status == WebhookStatus.FAILED.value:
            won = await repo.readmit_failed(existing.provider_event_id, now)
        else:
            won = await repo.readmit_stale(
                existing.provider_event_id, cutoff=now - self.stale_after, now=now
            )

        if won:
            await session.commit()
            return Admission.ADMITTED

        await session.rollback()
        return Admission.IN_FLIGHT

    async def mark_complete(self, provider_event_id: str, note: Optional[str] = None) -> None:
        """
        Mark an admitted event processed.

        Args:
            provider_event_id: Provider event id
            note: Optional operator note (e.g. an escalation reason)
        """
        async with self.session_factory() as session:
            repo = WebhookEventRepository(session)
            updated = await repo.finish(
                provider_event_id,
                WebhookStatus.PROCESSED,
                processed_at=utcnow(),
                error_message=note,
            )
            await session.commit()

        if not updated:
            logger.warning("webhook_complete_without_pending_row", event_id=provider_event_id)
        logger.info("webhook_event_completed", event_id=provider_event_id)
        await self._cache_processed(provider_event_id)

    async def mark_failed(self, provider_event_id: str, reason: str) -> None:
        """
        Mark an admitted event failed so a redelivery can re-admit it.

        Args:
            provider_event_id: Provider event id
            reason: Error description stored on the row
        """
        async with self.session_factory() as session:
            repo = WebhookEventRepository(session)
            await repo.finish(
                provider_event_id,
                WebhookStatus.FAILED,
                processed_at=None,
                error_message=reason[:2000],
            )
            await session.commit()
        logger.warning("webhook_event_failed", event_id=provider_event_id, reason=reason)

    async def find_stuck(self, limit: int = 100) -> List[WebhookEvent]:
        """
        Events pending past the stale threshold, or failed.

        Args:
            limit: Maximum rows to return

        Returns:
            List[WebhookEvent]: Oldest first
        """
        async with self.session_factory() as session:
            repo = WebhookEventRepository(session)
            return await repo.list_stuck(utcnow() - self.stale_after, limit=limit)
