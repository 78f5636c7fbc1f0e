# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tuition payment domain.

Modules:
    errors: Permanent and transient payment errors.
    status: Payment status derivation.
    correlation: Enrollment and institution key extraction.
    directory: Student and institution lookups.
    resolution: Validation chain for incoming payments.
    ledger: Tuition ledger state machine.
    pipeline: End-to-end handling of payment messages.

Services are imported from their modules, e.g.
``from src.domains.tuition.ledger import TuitionLedgerService``.
"""

from src.domains.tuition.errors import (
    ErrorCode,
    PermanentPaymentError,
    TransientPaymentError,
    TuitionPaymentError,
)
from src.domains.tuition.status import derive_payment_status

__all__ = [
    "ErrorCode",
    "PermanentPaymentError",
    "TransientPaymentError",
    "TuitionPaymentError",
    "derive_payment_status",
]
