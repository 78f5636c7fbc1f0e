# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tuition payment enums and message schemas.

Inbound messages come from the transaction service and outbound messages go
to any consumer of the tuition exchange, so every schema serializes with
camelCase aliases while Python code uses snake_case attributes.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.utils.datetime import utc_now


class PaymentStatus(str, Enum):
    """Payment status of a tuition ledger."""

    UNPAID = "UNPAID"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"
    OVERPAID = "OVERPAID"
    # Administrative statuses, never derived from amounts
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"
    PENDING_VALIDATION = "PENDING_VALIDATION"


class InstitutionStatus(str, Enum):
    """Institution activation status."""

    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class MessageModel(BaseModel):
    """Base model for broker messages (camelCase on the wire)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# =============================================================================
# Inbound
# =============================================================================


class TransactionEventPayload(MessageModel):
    """Payload of a transaction event published by the transaction service.

    The student matricule travels in ``phone_number`` and the enrollment and
    institution identifiers are embedded in ``description``.
    """

    transaction_id: str | None = None
    account_id: str | None = None
    receiver_account_id: str | None = None
    transaction_type: str | None = None
    status: str | None = None
    category: str | None = None
    reference: str = Field(..., min_length=1)
    amount_received: Decimal = Field(..., decimal_places=2)
    currency_code: str = Field(..., min_length=1)
    phone_number: str | None = None
    description: str | None = None
    transaction_date: datetime | None = None


class TransactionCreatedEvent(MessageModel):
    """TransactionCreated envelope."""

    event_id: str | None = None
    event_type: str | None = None
    event_date: datetime | None = None
    payload: TransactionEventPayload


class PaymentNotification(MessageModel):
    """Direct payment notification with the enrollment linkage already known."""

    enrollment_id: str = Field(..., min_length=1)
    institution_account_id: str | None = None
    institution_id: str | None = None
    matricule: str = Field(..., min_length=1)
    amount: Decimal = Field(..., decimal_places=2)
    currency: str = Field(..., min_length=1)
    reference: str = Field(..., min_length=1)
    payment_date: datetime | None = None
    transaction_id: str | None = None


# =============================================================================
# Outbound
# =============================================================================


def new_event_id() -> str:
    """Generate an outbound event identifier."""
    return uuid4().hex


class TuitionPaymentEvent(MessageModel):
    """Fields shared by every outbound tuition payment event."""

    event_type: str
    event_id: str = Field(default_factory=new_event_id)
    transaction_id: str | None = None
    student_matricule: str | None = None
    institution_id: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)

    def to_message(self) -> dict[str, Any]:
        """Serialize to the JSON-compatible wire representation."""
        return self.model_dump(mode="json", by_alias=True)


class TuitionPaymentConfirmed(TuitionPaymentEvent):
    """Emitted once a payment has been applied to a ledger."""

    event_type: Literal["TuitionPaymentConfirmed"] = "TuitionPaymentConfirmed"
    amount_paid: Decimal
    new_status: PaymentStatus
    remaining_amount: Decimal
    account_id: str | None = None


class TuitionPaymentFailed(TuitionPaymentEvent):
    """Emitted when a payment is definitively rejected."""

    event_type: Literal["TuitionPaymentFailed"] = "TuitionPaymentFailed"
    reason: str
