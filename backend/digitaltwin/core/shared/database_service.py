# backend/digitaltwin/core/shared/database_service.py
"""
Database service for async SQLAlchemy session management.

Provides a singleton service for managing database connections, sessions and
table creation for the asset metadata store. PostgreSQL (asyncpg) is the
production backend; SQLite (aiosqlite) URLs are accepted for local runs and
tests.

Usage:
    from digitaltwin.core.shared.database_service import database_service

    async with database_service.get_session() as session:
        record = await session.get(AssetRecord, record_id)

    await database_service.init_db()

PostgreSQL Configuration:
    Connection pooling is configured via environment variables:
    - DB_POOL_SIZE: Number of connections to maintain (default: 20)
    - DB_MAX_OVERFLOW: Extra connections allowed during peak load (default: 40)
    - DB_POOL_RECYCLE: Recycle connections after N seconds (default: 3600)
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from digitaltwin.config import settings
from digitaltwin.core.database.base import Base


def _is_celery_worker() -> bool:
    """Check if we're running inside a Celery worker process."""
    return (
        os.getenv("CELERY_WORKER") == "1" or
        "celery" in os.getenv("_", "").lower() or
        os.getenv("FORKED_BY_MULTIPROCESSING") == "1"
    )


class DatabaseService:
    """
    Database service for managing async SQLAlchemy sessions.

    Attributes:
        _engine: Async SQLAlchemy engine
        _session_factory: Async session factory
        _logger: Logger instance

    Methods:
        get_session(): Get async database session (context manager)
        init_db(): Initialize database (create all tables)
        health_check(): Check database connectivity
        close(): Close database engine and connections
    """

    def __init__(self, database_url: Optional[str] = None):
        self._logger = logging.getLogger("digitaltwin.database")
        self._database_url = database_url or settings.database_url
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None
        self._initialize_engine()

    @property
    def engine(self) -> Optional[AsyncEngine]:
        return self._engine

    def _initialize_engine(self) -> None:
        """
        Create the async engine.

        Celery workers get a NullPool because every task runs inside its own
        ``asyncio.run`` loop; pooled connections would be bound to a dead loop.
        """
        database_url = self._database_url

        safe_url = database_url.split("@")[-1] if "@" in database_url else database_url
        self._logger.info(f"Initializing metadata database: {safe_url}")

        if database_url.startswith("sqlite"):
            self._engine = create_async_engine(database_url, echo=settings.debug)
        elif _is_celery_worker():
            self._engine = create_async_engine(
                database_url,
                poolclass=NullPool,
                echo=settings.debug,
            )
            self._logger.info("Database configured with NullPool for Celery worker")
        else:
            self._engine = create_async_engine(
                database_url,
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_pre_ping=True,
                pool_recycle=settings.db_pool_recycle,
                echo=settings.debug,
            )
            self._logger.info(
                f"Connection pool: size={settings.db_pool_size}, "
                f"max_overflow={settings.db_max_overflow}, recycle={settings.db_pool_recycle}s"
            )

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get async database session as context manager.

        Automatically handles commit on success and rollback on error.

        Yields:
            AsyncSession: Async database session

        Raises:
            RuntimeError: If database is not initialized
        """
        if not self._session_factory:
            raise RuntimeError("Database not initialized")

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init_db(self) -> None:
        """
        Create all tables defined on ``Base`` if they don't exist.

        Safe to call multiple times.
        """
        if not self._engine:
            raise RuntimeError("Database engine not initialized")

        self._logger.info("Creating database tables...")

        async with self._engine.begin() as conn:
            # Import models so they're registered with Base
            from digitaltwin.core.database import models  # noqa: F401

            await conn.run_sync(Base.metadata.create_all)

        self._logger.info("Database tables created successfully")

    async def health_check(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict with ``status`` ("healthy" | "unhealthy"), ``connected`` and
            ``error`` when unhealthy.
        """
        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))
            return {"status": "healthy", "connected": True}
        except Exception as e:
            self._logger.error(f"Database health check failed: {e}")
            return {"status": "unhealthy", "connected": False, "error": str(e)}

    async def close(self) -> None:
        """Dispose of the engine and close pooled connections."""
        if self._engine:
            await self._engine.dispose()
            self._logger.info("Database connections closed")


# Global database service instance
database_service = DatabaseService()
