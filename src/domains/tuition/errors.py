# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tuition payment error taxonomy.

Errors fall into two families that drive message disposition:

- PermanentPaymentError: bad business input. Never redelivered; the pipeline
  publishes a TuitionPaymentFailed event and acknowledges the message.
- TransientPaymentError: infrastructure trouble. Raised out of the actor so
  the retry middleware redelivers the message with backoff.

Duplicate delivery is not an error and has no exception type.
"""

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes."""

    INVALID_PAYMENT_DATA = "INVALID_PAYMENT_DATA"
    STUDENT_NOT_FOUND = "STUDENT_NOT_FOUND"
    INSTITUTION_NOT_FOUND = "INSTITUTION_NOT_FOUND"
    INSTITUTION_UNAVAILABLE = "INSTITUTION_UNAVAILABLE"
    ENROLLMENT_NOT_FOUND = "ENROLLMENT_NOT_FOUND"
    CURRENCY_MISMATCH = "CURRENCY_MISMATCH"
    LEDGER_FROZEN = "LEDGER_FROZEN"
    INVALID_LEDGER_OPERATION = "INVALID_LEDGER_OPERATION"
    LEDGER_CONFLICT = "LEDGER_CONFLICT"
    SERVICE_TIMEOUT = "SERVICE_TIMEOUT"
    PUBLISH_FAILED = "PUBLISH_FAILED"


class TuitionPaymentError(Exception):
    """Base exception for tuition payment errors.

    Attributes:
        message: Human-readable description, used as the failure reason.
        details: Structured context for logs.
    """

    code: ErrorCode = ErrorCode.INVALID_PAYMENT_DATA

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class PermanentPaymentError(TuitionPaymentError):
    """Business rule violation; retrying cannot succeed."""

    pass


class TransientPaymentError(TuitionPaymentError):
    """Infrastructure failure; safe to retry."""

    pass


class InvalidPaymentDataError(PermanentPaymentError):
    """Raised when the upstream message is malformed or incomplete."""

    code = ErrorCode.INVALID_PAYMENT_DATA


class StudentNotFoundError(PermanentPaymentError):
    """Raised when no student has the payment's matricule."""

    code = ErrorCode.STUDENT_NOT_FOUND


class InstitutionNotFoundError(PermanentPaymentError):
    """Raised when the referenced institution does not exist."""

    code = ErrorCode.INSTITUTION_NOT_FOUND


class InstitutionUnavailableError(PermanentPaymentError):
    """Raised when the institution is inactive or has no settlement account."""

    code = ErrorCode.INSTITUTION_UNAVAILABLE


class EnrollmentNotFoundError(PermanentPaymentError):
    """Raised when neither a ledger nor an enrollment exists for the payment."""

    code = ErrorCode.ENROLLMENT_NOT_FOUND


class CurrencyMismatchError(PermanentPaymentError):
    """Raised when the payment currency differs from the ledger currency."""

    code = ErrorCode.CURRENCY_MISMATCH


class LedgerFrozenError(PermanentPaymentError):
    """Raised when the ledger is archived or under an administrative status."""

    code = ErrorCode.LEDGER_FROZEN


class InvalidLedgerOperationError(PermanentPaymentError):
    """Raised for administrative operations the ledger does not allow."""

    code = ErrorCode.INVALID_LEDGER_OPERATION


class LedgerConflictError(TransientPaymentError):
    """Raised when optimistic concurrency retries are exhausted."""

    code = ErrorCode.LEDGER_CONFLICT


class DatastoreTimeoutError(TransientPaymentError):
    """Raised when a ledger unit of work exceeds its time budget."""

    code = ErrorCode.SERVICE_TIMEOUT


class EventPublishError(TransientPaymentError):
    """Raised when an outbound event cannot be handed to the broker."""

    code = ErrorCode.PUBLISH_FAILED
