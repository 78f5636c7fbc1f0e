# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Async bridge for Dramatiq payment actors.

Dramatiq actors are synchronous and each worker thread (--threads N) handles
one message at a time. The payment pipeline is async because it talks to
PostgreSQL through asyncpg, whose connections are bound to the event loop
that opened them.

Each worker thread therefore keeps one event loop for its whole lifetime and
pairs it with its own SQLAlchemy engine (see get_worker_sessionmaker()).
When the loop is replaced, the engine goes with it.
"""

import asyncio
import logging
import threading
from typing import Any, Coroutine, TypeVar

from src.infrastructure.database.connection import clear_worker_sessionmaker

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Thread-local storage for event loops
_thread_local = threading.local()


def _get_thread_event_loop() -> asyncio.AbstractEventLoop:
    """Get or create a persistent event loop for the current thread.

    Each Dramatiq worker thread maintains its own event loop that persists
    for the lifetime of the thread. This ensures SQLAlchemy async engines
    and asyncpg connections remain bound to the correct event loop across
    multiple task executions.

    When a new loop is created (first task in thread or after loop closure),
    the thread-local database engine is dropped so a fresh one is built on
    the new loop.

    Returns:
        Event loop for current thread.
    """
    loop = getattr(_thread_local, "event_loop", None)

    if loop is None or loop.is_closed():
        # Create new event loop for this thread
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        _thread_local.event_loop = loop

        # Pooled connections belong to the previous loop
        clear_worker_sessionmaker()

        logger.debug(
            "Created new event loop for thread %s",
            threading.current_thread().name,
        )

    return loop


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run async coroutine in sync Dramatiq worker context.

    Uses thread-local persistent event loops to ensure SQLAlchemy
    async engines remain properly bound across task executions within
    the same thread.

    This is the standard way to bridge sync Dramatiq actors with
    async database operations. Each worker thread maintains its own
    event loop and database connection pool.

    Args:
        coro: Coroutine to run.

    Returns:
        Result of coroutine.

    Example:
        @dramatiq.actor
        def my_task(message: dict):
            async def _process():
                pipeline = get_payment_pipeline()
                return await pipeline.handle_transaction_event(message)
            return run_async(_process()).to_dict()
    """
    loop = _get_thread_event_loop()
    return loop.run_until_complete(coro)
