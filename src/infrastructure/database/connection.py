# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Database connection management using SQLAlchemy async.

This module provides async database connections for the tuition database,
which stores ledgers, processed payment references, the event outbox and
read-only snapshots of students, institutions and enrollments.

Uses SQLAlchemy 2.0 async API with asyncpg driver.

Dramatiq worker threads each run their own event loop (see
``src.infrastructure.background.tasks.base``), and asyncpg connections cannot
cross loops, so each worker thread obtains its own engine and sessionmaker
through get_worker_sessionmaker().

Example:
    from src.infrastructure.database.connection import (
        get_worker_sessionmaker,
        session_scope,
    )

    sessionmaker = get_worker_sessionmaker(settings)
    async with session_scope(sessionmaker) as session:
        result = await session.execute(select(TuitionLedger))
        ledgers = result.scalars().all()
"""

import logging
import threading
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncIterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

if TYPE_CHECKING:
    from src.core.config.settings import Settings

logger = logging.getLogger(__name__)

# Per-thread state for Dramatiq worker threads
_thread_local = threading.local()


class DatabaseError(Exception):
    """Base exception for database operations.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying SQLAlchemy or database error.
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None) -> None:
        """Initialize the database error.

        Args:
            message: Human-readable error description.
            original_error: The underlying exception that caused this error.
        """
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.original_error:
            return f"{self.message}: {self.original_error}"
        return self.message


def create_engine_from_settings(settings: "Settings") -> AsyncEngine:
    """Create an async engine configured from settings.

    Args:
        settings: Application settings containing database configuration.

    Returns:
        A new SQLAlchemy async engine.
    """
    return create_async_engine(
        settings.database.url,
        pool_size=settings.database.pool_size,
        max_overflow=settings.database.max_overflow,
        pool_timeout=settings.database.connect_timeout,
        pool_pre_ping=True,
        pool_recycle=1800,
        connect_args={"timeout": settings.database.connect_timeout},
        echo=False,
    )


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the sessionmaker used by all tuition services.

    Args:
        engine: Engine to bind sessions to.

    Returns:
        Configured async sessionmaker.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_worker_sessionmaker(settings: "Settings") -> async_sessionmaker[AsyncSession]:
    """Get the sessionmaker bound to the current worker thread.

    The engine is created lazily the first time a thread asks for it and
    lives as long as that thread's event loop.

    Args:
        settings: Application settings containing database configuration.

    Returns:
        Thread-local async sessionmaker.
    """
    sessionmaker = getattr(_thread_local, "sessionmaker", None)
    if sessionmaker is None:
        engine = create_engine_from_settings(settings)
        sessionmaker = create_sessionmaker(engine)
        _thread_local.engine = engine
        _thread_local.sessionmaker = sessionmaker
        logger.debug(
            "Created database engine for thread %s",
            threading.current_thread().name,
        )
    return sessionmaker


def clear_worker_sessionmaker() -> None:
    """Forget the current thread's engine.

    Called when a worker thread replaces its event loop, since pooled
    connections belong to the previous loop.
    """
    _thread_local.engine = None
    _thread_local.sessionmaker = None


@asynccontextmanager
async def session_scope(
    sessionmaker: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Run a unit of work in one transaction.

    The session is committed on success and rolled back on exception.
    SQLAlchemy failures are wrapped in DatabaseError with the original
    exception preserved for callers that need to inspect it.

    Args:
        sessionmaker: Sessionmaker to open the session from.

    Yields:
        AsyncSession for database operations.

    Raises:
        DatabaseError: If a database operation or the commit fails.
    """
    async with sessionmaker() as session:
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            raise DatabaseError("Database operation failed", e) from e
        except Exception:
            await session.rollback()
            raise


async def create_tables(engine: AsyncEngine) -> None:
    """Create any missing tuition tables.

    Args:
        engine: Engine bound to the target database.
    """
    from src.infrastructure.database.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured")
