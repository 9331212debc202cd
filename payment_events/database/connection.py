"""Database connection and session management."""
from typing import Any, Dict

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from payment_events.config import Settings
from payment_events.database.models import Base

logger = structlog.get_logger(__name__)


class Database:
    """
    Process-wide handle on the durable store.

    Created once at startup and passed to every component that needs a
    session; nothing in the request path touches module globals.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        """
        Build the engine from settings.

        Args:
            settings: Application settings

        Returns:
            Database: Handle wrapping a new async engine
        """
        engine_kwargs: Dict[str, Any] = {"echo": settings.database_echo}
        if not settings.uses_sqlite:
            engine_kwargs.update(
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                pool_pre_ping=True,  # Verify connections before using
                pool_recycle=3600,  # Recycle connections after 1 hour
            )
        engine = create_async_engine(settings.database_url, **engine_kwargs)
        logger.info("database_engine_created", dialect=engine.dialect.name)
        return cls(engine)

    async def create_all(self) -> None:
        """
        Initialize database tables.

        Creates all tables defined in models if they don't exist. Production
        deployments run the Alembic migration instead.
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        """Close database connections and dispose of the engine."""
        await self.engine.dispose()
        logger.info("database_connections_closed")
