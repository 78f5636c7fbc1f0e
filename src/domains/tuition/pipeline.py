# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tuition payment pipeline.

Handles one upstream message end to end:

    category filter -> dedup guard -> resolution -> ledger (+ outbox) -> relay

Two entry points feed the same dedup guard and ledger:

- handle_transaction_event() for TransactionCreated events, whose enrollment
  and institution are embedded in the description
- handle_payment_notification() for direct notifications that already carry
  the enrollment

Outcomes:
- Permanent errors publish a TuitionPaymentFailed event and return
  FAILED_PERMANENT. The message is acknowledged.
- Transient errors propagate to the caller so the broker redelivers the
  message. Nothing is recorded as processed unless the ledger transaction
  committed.
- A reference seen before returns DUPLICATE after relaying any confirmation
  left unpublished by an earlier attempt.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.config import Settings, get_settings
from src.domains.tuition.correlation import INSTITUTION_KEY, extract_value
from src.domains.tuition.errors import InvalidPaymentDataError, PermanentPaymentError
from src.domains.tuition.ledger import (
    LedgerResult,
    PaymentApplication,
    TuitionLedgerService,
)
from src.domains.tuition.resolution import ReferenceResolver, ResolvedPayment
from src.infrastructure.database.connection import get_worker_sessionmaker
from src.infrastructure.events.outbox import TransactionalOutbox
from src.infrastructure.events.publisher import EventPublisher, get_event_publisher
from src.models.tuition import (
    PaymentNotification,
    TransactionCreatedEvent,
    TuitionPaymentConfirmed,
    TuitionPaymentFailed,
)
from src.utils.logging import bind_context

logger = logging.getLogger(__name__)


class Disposition(str, Enum):
    """Lifecycle states of an inbound payment message."""

    RECEIVED = "RECEIVED"
    PROCESSING = "PROCESSING"
    CONFIRMED = "CONFIRMED"
    DUPLICATE = "DUPLICATE"
    IGNORED = "IGNORED"
    FAILED_PERMANENT = "FAILED_PERMANENT"
    FAILED_TRANSIENT = "FAILED_TRANSIENT"


TERMINAL_DISPOSITIONS = frozenset(
    {
        Disposition.CONFIRMED,
        Disposition.DUPLICATE,
        Disposition.IGNORED,
        Disposition.FAILED_PERMANENT,
    }
)


@dataclass
class PipelineOutcome:
    """Result of handling one message.

    Attributes:
        disposition: Final disposition of the message.
        reference: Upstream payment reference, when one could be read.
        event_id: Id of the outbound event emitted for this message.
        reason: Failure reason for FAILED_PERMANENT.
        ledger: Ledger state for CONFIRMED and DUPLICATE.
    """

    disposition: Disposition
    reference: str | None = None
    event_id: str | None = None
    reason: str | None = None
    ledger: LedgerResult | None = field(default=None, repr=False)

    @property
    def acknowledged(self) -> bool:
        """Check if the message is done and must not be redelivered."""
        return self.disposition in TERMINAL_DISPOSITIONS

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-compatible dictionary."""
        data: dict[str, Any] = {
            "disposition": self.disposition.value,
            "reference": self.reference,
            "event_id": self.event_id,
            "reason": self.reason,
        }
        if self.ledger is not None:
            data["payment_status"] = self.ledger.payment_status.value
            data["paid_amount"] = str(self.ledger.paid_amount)
            data["remaining_amount"] = str(self.ledger.remaining_amount)
        return data


@dataclass(frozen=True)
class _FailureContext:
    transaction_id: str | None
    matricule: str | None
    institution_id: str | None


class TuitionPaymentPipeline:
    """Processes tuition payment messages.

    Attributes:
        tuition_category: Transaction category handled by the pipeline.
    """

    def __init__(
        self,
        resolver: ReferenceResolver,
        ledger: TuitionLedgerService,
        outbox: TransactionalOutbox,
        publisher: EventPublisher,
        tuition_category: str = "TUITION_PAYMENT",
    ) -> None:
        self._resolver = resolver
        self._ledger = ledger
        self._outbox = outbox
        self._publisher = publisher
        self.tuition_category = tuition_category

    @classmethod
    def from_settings(
        cls,
        sessionmaker: async_sessionmaker[AsyncSession],
        publisher: EventPublisher,
        settings: Settings,
    ) -> "TuitionPaymentPipeline":
        """Build a pipeline wired from settings."""
        return cls(
            resolver=ReferenceResolver(sessionmaker, timeout=settings.ledger.datastore_timeout),
            ledger=TuitionLedgerService(
                sessionmaker,
                conflict_retries=settings.ledger.conflict_retries,
                timeout=settings.ledger.datastore_timeout,
            ),
            outbox=TransactionalOutbox(
                sessionmaker,
                publisher,
                batch_size=settings.ledger.outbox_batch_size,
                timeout=settings.ledger.datastore_timeout,
            ),
            publisher=publisher,
            tuition_category=settings.messaging.tuition_category,
        )

    @property
    def outbox(self) -> TransactionalOutbox:
        """Outbox used for confirmation events."""
        return self._outbox

    # =========================================================================
    # Entry points
    # =========================================================================

    async def handle_transaction_event(self, message: dict[str, Any]) -> PipelineOutcome:
        """Handle a TransactionCreated event.

        Args:
            message: Decoded JSON body of the event.

        Returns:
            The outcome of the message.

        Raises:
            TransientPaymentError: If the datastore or broker failed.
            DatabaseError: If the datastore failed.
        """
        raw_payload = message.get("payload") if isinstance(message.get("payload"), dict) else {}
        category = raw_payload.get("category")
        if category != self.tuition_category:
            logger.debug(
                "Ignoring transaction event %s with category %s",
                message.get("eventId"),
                category,
            )
            return PipelineOutcome(Disposition.IGNORED, reference=raw_payload.get("reference"))

        try:
            event = TransactionCreatedEvent.model_validate(message)
        except ValidationError as e:
            context = _FailureContext(
                transaction_id=raw_payload.get("transactionId"),
                matricule=raw_payload.get("phoneNumber"),
                institution_id=_institution_hint(raw_payload.get("description")),
            )
            return await self._fail(
                InvalidPaymentDataError(_describe_validation_error(e)),
                context,
                reference=raw_payload.get("reference"),
            )

        payload = event.payload
        reference = payload.reference
        bind_context(reference=reference, event_id=event.event_id)
        logger.info(
            "Transaction event %s %s: reference=%s amount=%s %s",
            event.event_id,
            Disposition.RECEIVED.value,
            reference,
            payload.amount_received,
            payload.currency_code,
        )

        if await self._ledger.is_processed(reference):
            return await self._duplicate(reference)

        context = _FailureContext(
            transaction_id=payload.transaction_id,
            matricule=payload.phone_number,
            institution_id=_institution_hint(payload.description),
        )
        try:
            resolved = await self._resolver.resolve(payload)
            logger.info(
                "Reference %s %s: enrollment=%s institution=%s",
                reference,
                Disposition.PROCESSING.value,
                resolved.enrollment_id,
                resolved.institution_id,
            )
            return await self._apply(
                resolved,
                amount=payload.amount_received,
                currency=payload.currency_code,
                reference=reference,
                transaction_id=payload.transaction_id,
                payment_date=payload.transaction_date,
            )
        except PermanentPaymentError as e:
            return await self._fail(e, context, reference=reference)

    async def handle_payment_notification(self, message: dict[str, Any]) -> PipelineOutcome:
        """Handle a direct payment notification.

        Args:
            message: Decoded JSON body of the notification.

        Returns:
            The outcome of the message.

        Raises:
            TransientPaymentError: If the datastore or broker failed.
            DatabaseError: If the datastore failed.
        """
        try:
            notification = PaymentNotification.model_validate(message)
        except ValidationError as e:
            context = _FailureContext(
                transaction_id=message.get("transactionId"),
                matricule=message.get("matricule"),
                institution_id=message.get("institutionId"),
            )
            return await self._fail(
                InvalidPaymentDataError(_describe_validation_error(e)),
                context,
                reference=message.get("reference"),
            )

        reference = notification.reference
        bind_context(reference=reference)
        logger.info(
            "Payment notification %s: reference=%s enrollment=%s amount=%s %s",
            Disposition.RECEIVED.value,
            reference,
            notification.enrollment_id,
            notification.amount,
            notification.currency,
        )

        if await self._ledger.is_processed(reference):
            return await self._duplicate(reference)

        context = _FailureContext(
            transaction_id=notification.transaction_id,
            matricule=notification.matricule,
            institution_id=notification.institution_id,
        )
        try:
            resolved = await self._resolver.resolve_notification(notification)
        except PermanentPaymentError as e:
            return await self._fail(e, context, reference=reference)

        context = replace(context, institution_id=resolved.institution_id)
        try:
            return await self._apply(
                resolved,
                amount=notification.amount,
                currency=notification.currency,
                reference=reference,
                transaction_id=notification.transaction_id,
                payment_date=notification.payment_date,
            )
        except PermanentPaymentError as e:
            return await self._fail(e, context, reference=reference)

    # =========================================================================
    # Steps
    # =========================================================================

    async def _apply(
        self,
        resolved: ResolvedPayment,
        *,
        amount: Decimal,
        currency: str,
        reference: str,
        transaction_id: str | None,
        payment_date: datetime | None,
    ) -> PipelineOutcome:
        application = PaymentApplication(
            enrollment_id=resolved.enrollment_id,
            amount=amount,
            currency=currency,
            reference=reference,
            matricule=resolved.matricule,
            account_id=resolved.account_id,
            payment_date=payment_date,
        )
        staged: list[TuitionPaymentConfirmed] = []

        async def stage_confirmation(session: AsyncSession, result: LedgerResult) -> None:
            event = TuitionPaymentConfirmed(
                transaction_id=transaction_id,
                student_matricule=resolved.matricule,
                institution_id=resolved.institution_id,
                amount_paid=result.amount_applied,
                new_status=result.payment_status,
                remaining_amount=result.remaining_amount,
                account_id=resolved.account_id,
            )
            await self._outbox.stage(session, event, reference)
            staged.append(event)

        result = await self._ledger.apply_payment(application, stage=stage_confirmation)
        if result.duplicate:
            return await self._duplicate(reference, ledger=result)

        await self._outbox.relay(reference)
        event_id = staged[-1].event_id if staged else None
        logger.info(
            "Reference %s %s: status=%s remaining=%s event=%s",
            reference,
            Disposition.CONFIRMED.value,
            result.payment_status.value,
            result.remaining_amount,
            event_id,
        )
        return PipelineOutcome(
            Disposition.CONFIRMED,
            reference=reference,
            event_id=event_id,
            ledger=result,
        )

    async def _duplicate(
        self,
        reference: str,
        ledger: LedgerResult | None = None,
    ) -> PipelineOutcome:
        relayed = await self._outbox.relay(reference)
        logger.info(
            "Reference %s %s (relayed %d pending events)",
            reference,
            Disposition.DUPLICATE.value,
            relayed,
        )
        return PipelineOutcome(Disposition.DUPLICATE, reference=reference, ledger=ledger)

    async def _fail(
        self,
        error: PermanentPaymentError,
        context: _FailureContext,
        *,
        reference: str | None,
    ) -> PipelineOutcome:
        logger.warning(
            "Reference %s %s [%s]: %s",
            reference,
            Disposition.FAILED_PERMANENT.value,
            error.code.value,
            error.message,
        )
        event = TuitionPaymentFailed(
            transaction_id=context.transaction_id,
            student_matricule=context.matricule,
            institution_id=context.institution_id,
            reason=error.message,
        )
        await self._publisher.publish(event)
        return PipelineOutcome(
            Disposition.FAILED_PERMANENT,
            reference=reference,
            event_id=event.event_id,
            reason=error.message,
        )


def _institution_hint(description: Any) -> str | None:
    return extract_value(description, INSTITUTION_KEY) if isinstance(description, str) else None


def _describe_validation_error(error: ValidationError) -> str:
    fields = sorted({".".join(str(part) for part in err["loc"]) for err in error.errors()})
    return f"Malformed payment message: invalid or missing {', '.join(fields)}"


def get_payment_pipeline(settings: Settings | None = None) -> TuitionPaymentPipeline:
    """Build the pipeline for the current worker thread.

    Args:
        settings: Settings to use, defaults to get_settings().

    Returns:
        Pipeline bound to the thread's sessionmaker.
    """
    settings = settings or get_settings()
    return TuitionPaymentPipeline.from_settings(
        get_worker_sessionmaker(settings),
        get_event_publisher(),
        settings,
    )
