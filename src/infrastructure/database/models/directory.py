# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Read models for students, institutions and enrollments.

The institution service owns these records; the payment pipeline only reads
their current snapshot once per message.
"""

from decimal import Decimal

from sqlalchemy import Enum, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from src.infrastructure.database.models.base import Base, IdMixin, TimestampMixin
from src.models.tuition import InstitutionStatus


class Student(IdMixin, TimestampMixin, Base):
    """Student identified by a human-readable matricule."""

    __tablename__ = "students"

    matricule: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    full_name: Mapped[str] = mapped_column(String(255), default="")


class Institution(IdMixin, TimestampMixin, Base):
    """Institution and its settlement account binding."""

    __tablename__ = "institutions"

    name: Mapped[str] = mapped_column(String(255))
    status: Mapped[InstitutionStatus] = mapped_column(
        Enum(InstitutionStatus, native_enum=False, length=16),
        default=InstitutionStatus.ACTIVE,
    )
    account_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    @property
    def can_receive_payments(self) -> bool:
        """Check if the institution is active with a settlement account."""
        return self.status == InstitutionStatus.ACTIVE and bool((self.account_id or "").strip())


class Enrollment(IdMixin, TimestampMixin, Base):
    """Student enrollment in a training offer, with the offer's tuition."""

    __tablename__ = "enrollments"

    student_id: Mapped[str] = mapped_column(String(64), index=True)
    institution_id: Mapped[str] = mapped_column(String(64), index=True)
    offer_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    matricule: Mapped[str] = mapped_column(String(64), index=True)
    tuition_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2))
    currency: Mapped[str] = mapped_column(String(3))
    status: Mapped[str] = mapped_column(String(32), default="ACTIVE")
