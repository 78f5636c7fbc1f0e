# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Pytest configuration and shared fixtures.

This module provides fixtures used across all test types:
- Unit tests
- Integration tests (SQLite database, stub broker)

Tests never need RabbitMQ or PostgreSQL: the broker runs as Dramatiq's
StubBroker and the tuition database is a throwaway SQLite file.
"""

import os

# Must be set before any src module builds the broker or reads settings
os.environ.setdefault("DRAMATIQ_TEST_MODE", "true")
os.environ.setdefault("TUITION_RETRY_BASE_DELAY_MS", "10")
os.environ.setdefault("TUITION_MESSAGING_DECLARE_TOPOLOGY", "false")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

from collections.abc import AsyncGenerator
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from src.infrastructure.database.connection import create_sessionmaker, create_tables
from src.infrastructure.database.models import (
    Enrollment,
    Institution,
    Student,
    TuitionLedger,
)
from src.infrastructure.events.publisher import StubEventPublisher
from src.models.tuition import InstitutionStatus, PaymentStatus

MATRICULE = "PI-24-0001"
OTHER_MATRICULE = "PI-24-0002"
STUDENT_ID = "S1"
TUITION_EXCHANGE = "payiskoul.tuition.exchange"
ROUTING_KEYS = {
    "TuitionPaymentConfirmed": "tuition.payment.confirmed",
    "TuitionPaymentFailed": "tuition.payment.failed",
}


# =============================================================================
# Marker Configuration
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test (database or broker)"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Provide an engine on a fresh SQLite database with all tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tuition.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Provide a sessionmaker configured like production."""
    return create_sessionmaker(engine)


@pytest_asyncio.fixture
async def seeded(sessionmaker: async_sessionmaker[AsyncSession]) -> dict[str, Any]:
    """Seed students, institutions, enrollments and one open ledger.

    - I1: active with account ACC1
    - I2: inactive with account ACC2
    - I3: active without account
    - E1: enrollment at I1 with an open ledger (250000 XOF, nothing paid)
    - E2: enrollment at I1 without a ledger (100000 XOF)
    """
    async with sessionmaker() as session:
        session.add_all(
            [
                Student(id=STUDENT_ID, matricule=MATRICULE, full_name="Awa Kone"),
                Student(id="S2", matricule=OTHER_MATRICULE, full_name="Yao Koffi"),
                Institution(
                    id="I1", name="Institut Polytechnique", status=InstitutionStatus.ACTIVE, account_id="ACC1"
                ),
                Institution(id="I2", name="Ecole Fermee", status=InstitutionStatus.INACTIVE, account_id="ACC2"),
                Institution(id="I3", name="Ecole Sans Compte", status=InstitutionStatus.ACTIVE, account_id=None),
                Enrollment(
                    id="E1",
                    student_id=STUDENT_ID,
                    institution_id="I1",
                    offer_id="O1",
                    matricule=MATRICULE,
                    tuition_amount=Decimal("250000"),
                    currency="XOF",
                ),
                Enrollment(
                    id="E2",
                    student_id=STUDENT_ID,
                    institution_id="I1",
                    offer_id="O2",
                    matricule=MATRICULE,
                    tuition_amount=Decimal("100000"),
                    currency="XOF",
                ),
                TuitionLedger(
                    enrollment_id="E1",
                    student_id=STUDENT_ID,
                    matricule=MATRICULE,
                    total_amount=Decimal("250000"),
                    paid_amount=Decimal("0"),
                    remaining_amount=Decimal("250000"),
                    currency="XOF",
                    payment_status=PaymentStatus.UNPAID,
                ),
            ]
        )
        await session.commit()

    return {"matricule": MATRICULE, "student_id": STUDENT_ID}


# =============================================================================
# Messaging Fixtures
# =============================================================================


@pytest.fixture
def stub_publisher() -> StubEventPublisher:
    """Provide an in-memory event publisher."""
    return StubEventPublisher(TUITION_EXCHANGE, dict(ROUTING_KEYS))


# =============================================================================
# Helper Fixtures
# =============================================================================


def make_transaction_event(
    *,
    reference: str = "R1",
    amount: str = "100000",
    currency: str = "XOF",
    matricule: str | None = MATRICULE,
    description: str | None = "Frais de scolarite, enrollmentId=E1, institutionId=I1",
    category: str = "TUITION_PAYMENT",
    event_id: str = "evt-1",
    transaction_id: str = "TX-1",
) -> dict[str, Any]:
    """Build a TransactionCreated message body as the transaction service sends it."""
    return {
        "eventId": event_id,
        "eventType": "TransactionCreated",
        "eventDate": "2024-10-01T08:30:00Z",
        "payload": {
            "transactionId": transaction_id,
            "accountId": "PAYER-ACC",
            "transactionType": "TRANSFER",
            "status": "SUCCESS",
            "category": category,
            "reference": reference,
            "amountReceived": amount,
            "currencyCode": currency,
            "phoneNumber": matricule,
            "description": description,
            "transactionDate": "2024-10-01T08:29:55Z",
        },
    }


def make_payment_notification(
    *,
    reference: str = "N1",
    amount: str = "50000",
    currency: str = "XOF",
    enrollment_id: str = "E1",
    institution_account_id: str | None = "ACC1",
    institution_id: str | None = None,
    matricule: str = MATRICULE,
) -> dict[str, Any]:
    """Build a PaymentNotification message body."""
    return {
        "enrollmentId": enrollment_id,
        "institutionAccountId": institution_account_id,
        "institutionId": institution_id,
        "matricule": matricule,
        "amount": amount,
        "currency": currency,
        "reference": reference,
        "transactionId": f"TX-{reference}",
    }


@pytest.fixture
def transaction_event() -> dict[str, Any]:
    """Provide the reference TransactionCreated event (R1, 100000 XOF, E1/I1)."""
    return make_transaction_event()


@pytest.fixture
def make_event():
    """Provide the TransactionCreated message factory."""
    return make_transaction_event


@pytest.fixture
def make_notification():
    """Provide the PaymentNotification message factory."""
    return make_payment_notification
