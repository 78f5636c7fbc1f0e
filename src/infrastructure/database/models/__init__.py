# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""ORM models for the tuition database."""

from src.infrastructure.database.models.base import Base, IdMixin, TimestampMixin
from src.infrastructure.database.models.directory import Enrollment, Institution, Student
from src.infrastructure.database.models.tuition import (
    OutboxEvent,
    PaymentReference,
    TuitionLedger,
)

__all__ = [
    "Base",
    "IdMixin",
    "TimestampMixin",
    "Student",
    "Institution",
    "Enrollment",
    "TuitionLedger",
    "PaymentReference",
    "OutboxEvent",
]
