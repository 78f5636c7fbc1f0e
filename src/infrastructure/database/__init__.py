# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Database infrastructure for the tuition database.

This package provides SQLAlchemy async database connections and the ORM
models for ledgers, payment references, the outbox and the read-only
student/institution/enrollment snapshots.

Example:
    from src.infrastructure.database import get_worker_sessionmaker, session_scope

    async with session_scope(get_worker_sessionmaker(settings)) as session:
        result = await session.execute(select(TuitionLedger))
"""

from src.infrastructure.database.connection import (
    DatabaseError,
    clear_worker_sessionmaker,
    create_engine_from_settings,
    create_sessionmaker,
    create_tables,
    get_worker_sessionmaker,
    session_scope,
)

__all__ = [
    "DatabaseError",
    "clear_worker_sessionmaker",
    "create_engine_from_settings",
    "create_sessionmaker",
    "create_tables",
    "get_worker_sessionmaker",
    "session_scope",
]
