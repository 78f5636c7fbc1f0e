# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tuition ledger, payment reference and outbox models.

These are the only tables the payment pipeline writes to:
- tuition_ledgers: one running balance per enrollment
- payment_references: one row per processed upstream payment reference
- tuition_outbox: outbound events staged with the ledger update
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, DateTime, Enum, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from src.infrastructure.database.models.base import Base, IdMixin
from src.models.tuition import PaymentStatus
from src.utils.datetime import utc_now

MONEY = Numeric(18, 2)


class TuitionLedger(IdMixin, Base):
    """Cumulative tuition payment record for one enrollment.

    The ``version`` column is SQLAlchemy's optimistic concurrency counter:
    every UPDATE is issued with ``WHERE version = :loaded_version`` and raises
    StaleDataError when another worker committed first.
    """

    __tablename__ = "tuition_ledgers"

    enrollment_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    student_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    matricule: Mapped[str] = mapped_column(String(64), index=True)
    total_amount: Mapped[Decimal] = mapped_column(MONEY)
    paid_amount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))
    remaining_amount: Mapped[Decimal] = mapped_column(MONEY)
    currency: Mapped[str] = mapped_column(String(3))
    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, native_enum=False, length=32),
        default=PaymentStatus.UNPAID,
    )
    last_updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    archived_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_archived(self) -> bool:
        """Check if the ledger has been archived."""
        return self.archived_at is not None


class PaymentReference(IdMixin, Base):
    """Processed upstream payment reference.

    Presence of a row is the authoritative "already processed" signal. Rows
    are inserted in the same transaction as the ledger update and are never
    modified afterwards.
    """

    __tablename__ = "payment_references"

    reference: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    matricule: Mapped[str] = mapped_column(String(64))
    enrollment_id: Mapped[str] = mapped_column(String(64), index=True)
    account_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    amount: Mapped[Decimal] = mapped_column(MONEY)
    currency: Mapped[str] = mapped_column(String(3))
    payment_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )


class OutboxEvent(IdMixin, Base):
    """Outbound event waiting to be handed to the broker."""

    __tablename__ = "tuition_outbox"

    event_id: Mapped[str] = mapped_column(String(64), unique=True)
    reference: Mapped[str | None] = mapped_column(String(128), index=True, nullable=True)
    event_type: Mapped[str] = mapped_column(String(64))
    routing_key: Mapped[str] = mapped_column(String(128))
    payload: Mapped[dict[str, Any]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    published_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )

    @property
    def is_published(self) -> bool:
        """Check if the event has been handed to the broker."""
        return self.published_at is not None
