# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Fixtures for integration tests against the SQLite tuition database."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.domains.tuition.ledger import TuitionLedgerService
from src.domains.tuition.pipeline import TuitionPaymentPipeline
from src.domains.tuition.resolution import ReferenceResolver
from src.infrastructure.events.outbox import TransactionalOutbox
from src.infrastructure.events.publisher import StubEventPublisher


@pytest.fixture
def ledger_service(sessionmaker: async_sessionmaker[AsyncSession]) -> TuitionLedgerService:
    """Provide a ledger service with a short conflict budget."""
    return TuitionLedgerService(sessionmaker, conflict_retries=2, timeout=5.0)


@pytest.fixture
def resolver(sessionmaker: async_sessionmaker[AsyncSession]) -> ReferenceResolver:
    """Provide a reference resolver."""
    return ReferenceResolver(sessionmaker, timeout=5.0)


@pytest.fixture
def outbox(
    sessionmaker: async_sessionmaker[AsyncSession],
    stub_publisher: StubEventPublisher,
) -> TransactionalOutbox:
    """Provide an outbox relaying to the stub publisher."""
    return TransactionalOutbox(sessionmaker, stub_publisher, timeout=5.0)


@pytest.fixture
def pipeline(
    resolver: ReferenceResolver,
    ledger_service: TuitionLedgerService,
    outbox: TransactionalOutbox,
    stub_publisher: StubEventPublisher,
) -> TuitionPaymentPipeline:
    """Provide a fully wired payment pipeline."""
    return TuitionPaymentPipeline(
        resolver=resolver,
        ledger=ledger_service,
        outbox=outbox,
        publisher=stub_publisher,
    )
