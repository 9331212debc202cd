"""
Dependency checks behind /health, /health/live and /health/ready.

The database is required: without it no delivery can be admitted. Redis
and the ledger backlog only degrade the service.
"""
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from payment_events.database.connection import Database

if TYPE_CHECKING:
    from payment_events.core.ledger import IdempotencyLedger

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when a dependency check fails."""

    pass


class HealthCheck:
    """Runs dependency checks and folds them into one status."""

    def __init__(
        self,
        database: Database,
        redis_client: Optional[aioredis.Redis] = None,
        ledger: Optional["IdempotencyLedger"] = None,
    ):
        self.database = database
        self.redis_client = redis_client
        self.ledger = ledger

    async def check_database(self) -> Dict[str, Any]:
        """
        Round-trip a trivial query.

        Raises:
            HealthCheckError: If the store cannot be reached
        """
        try:
            async with self.database.session_factory() as db:
                await db.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            raise HealthCheckError(f"Database unreachable: {e}") from e
        return {"status": "healthy", "service": "database"}

    async def check_redis(self) -> Dict[str, Any]:
        """
        Ping the processed-marker cache.

        Raises:
            HealthCheckError: If Redis does not answer
        """
        try:
            await self.redis_client.ping()
        except (RedisError, OSError) as e:
            raise HealthCheckError(f"Redis unreachable: {e}") from e
        return {"status": "healthy", "service": "redis"}

    async def check_ledger(self) -> Dict[str, Any]:
        """
        Report the backlog of stuck webhook events.

        A non-empty backlog means deliveries are failing or handlers died;
        the service still accepts webhooks, so this is only degraded.
        """
        try:
            stuck = await self.ledger.find_stuck(limit=1000)
        except (SQLAlchemyError, OSError) as e:
            raise HealthCheckError(f"Ledger query failed: {e}") from e
        return {
            "status": "degraded" if stuck else "healthy",
            "service": "ledger",
            "stuck_events": len(stuck),
        }

    async def _run(
        self, name: str, check: Callable[[], Awaitable[Dict[str, Any]]], failed_status: str
    ) -> Dict[str, Any]:
        try:
            return await check()
        except HealthCheckError as e:
            logger.error("health_check_failed", service=name, error=str(e))
            return {"status": failed_status, "service": name, "error": str(e)}

    async def check_all(self) -> Dict[str, Any]:
        """
        Run every configured check.

        Returns:
            Dict[str, Any]: "unhealthy" only when the database check fails
        """
        checks = {"database": await self._run("database", self.check_database, "unhealthy")}
        if self.redis_client is not None:
            checks["redis"] = await self._run("redis", self.check_redis, "degraded")
        if self.ledger is not None:
            checks["ledger"] = await self._run("ledger", self.check_ledger, "degraded")

        healthy = checks["database"]["status"] == "healthy"
        return {"status": "healthy" if healthy else "unhealthy", "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        """The process is up; dependencies are not consulted."""
        return {"status": "alive", "message": "Application is running"}

    async def readiness(self) -> Dict[str, Any]:
        """Ready when the required dependencies answer."""
        return await self.check_all()
