# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tuition ledger state machine.

TuitionLedgerService owns every write to ``tuition_ledgers`` and
``payment_references``. A payment is applied in one transaction that:

1. loads the enrollment's ledger, creating it from the enrollment when absent
2. adds the amount and recomputes the remaining amount and status
3. inserts the PaymentReference for the upstream reference
4. runs the caller's ``stage`` hook (used to stage the outbox event)

Concurrent payments for the same enrollment are serialized by the ledger's
version column. A losing writer gets StaleDataError (or IntegrityError when
two workers race to create the ledger or record the same reference); the
service re-checks the reference, then retries the whole unit of work.

Example:
    service = TuitionLedgerService(sessionmaker, conflict_retries=5, timeout=10)
    result = await service.apply_payment(
        PaymentApplication(
            enrollment_id="E1",
            amount=Decimal("100000"),
            currency="XOF",
            reference="R1",
            matricule="PI-24-0001",
        )
    )
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Coroutine, TypeVar

from sqlalchemy import exists, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from src.domains.tuition.errors import (
    CurrencyMismatchError,
    DatastoreTimeoutError,
    EnrollmentNotFoundError,
    InvalidLedgerOperationError,
    InvalidPaymentDataError,
    LedgerConflictError,
    LedgerFrozenError,
)
from src.domains.tuition.status import (
    ADMINISTRATIVE_STATUSES,
    CENT,
    ZERO,
    derive_payment_status,
    is_administrative,
    remaining_amount,
)
from src.infrastructure.database.connection import DatabaseError, session_scope
from src.infrastructure.database.models import (
    Enrollment,
    PaymentReference,
    TuitionLedger,
)
from src.models.tuition import PaymentStatus
from src.utils.datetime import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

SETTLED_STATUSES = frozenset({PaymentStatus.PAID, PaymentStatus.OVERPAID})
OUTSTANDING_STATUSES = frozenset({PaymentStatus.UNPAID, PaymentStatus.PARTIALLY_PAID})


@dataclass(frozen=True)
class PaymentApplication:
    """A validated payment ready to be applied to a ledger."""

    enrollment_id: str
    amount: Decimal
    currency: str
    reference: str
    matricule: str
    account_id: str | None = None
    payment_date: datetime | None = None


@dataclass(frozen=True)
class LedgerResult:
    """Ledger state after a payment was applied, or found already applied.

    Attributes:
        amount_applied: Amount credited by this call; zero for duplicates.
        duplicate: True when the reference had already been processed.
    """

    enrollment_id: str
    matricule: str
    amount_applied: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    remaining_amount: Decimal
    currency: str
    payment_status: PaymentStatus
    reference: str
    duplicate: bool = False


StageHook = Callable[[AsyncSession, LedgerResult], Awaitable[None]]


async def bounded(
    coro: Coroutine[None, None, T],
    timeout: float | None,
    operation: str,
) -> T:
    """Await a datastore call, turning a stall into a transient error.

    Args:
        coro: Datastore coroutine.
        timeout: Seconds allowed, or None for no limit.
        operation: Name used in the error message.

    Raises:
        DatastoreTimeoutError: If ``coro`` does not finish in time.
    """
    if timeout is None:
        return await coro
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise DatastoreTimeoutError(
            f"{operation} timed out after {timeout}s",
            {"operation": operation},
        ) from e


def _is_conflict(error: DatabaseError) -> bool:
    return isinstance(error.original_error, (StaleDataError, IntegrityError))


class TuitionLedgerService:
    """Service for tuition ledger reads and writes.

    Attributes:
        conflict_retries: Extra attempts after an optimistic concurrency
            conflict before giving up with LedgerConflictError.
        timeout: Seconds allowed for one unit of work, or None for no limit.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        *,
        conflict_retries: int = 5,
        timeout: float | None = None,
    ) -> None:
        self._sessionmaker = sessionmaker
        self.conflict_retries = conflict_retries
        self.timeout = timeout

    # =========================================================================
    # Dedup guard
    # =========================================================================

    async def is_processed(self, reference: str) -> bool:
        """Check whether a payment reference has already been applied.

        Args:
            reference: Upstream payment reference.

        Returns:
            True if a PaymentReference row exists.
        """

        async def _check() -> bool:
            async with session_scope(self._sessionmaker) as session:
                result = await session.execute(
                    select(exists().where(PaymentReference.reference == reference))
                )
                return bool(result.scalar())

        return await self._bounded(_check(), "is_processed")

    # =========================================================================
    # Payment application
    # =========================================================================

    async def apply_payment(
        self,
        application: PaymentApplication,
        *,
        stage: StageHook | None = None,
    ) -> LedgerResult:
        """Apply a payment to its enrollment's ledger exactly once.

        Args:
            application: Payment to apply.
            stage: Optional hook run inside the transaction after the ledger
                update, committed or rolled back with it.

        Returns:
            The ledger state after the payment. When the reference turns out
            to have been applied concurrently, the current state is returned
            with ``duplicate=True``.

        Raises:
            PermanentPaymentError: If the payment cannot be applied.
            LedgerConflictError: If conflicts persist after all retries.
            DatastoreTimeoutError: If a unit of work exceeds the timeout.
            DatabaseError: For any other datastore failure.
        """
        if application.amount <= ZERO:
            raise InvalidPaymentDataError(
                f"Payment amount must be positive, got {application.amount}",
                {"reference": application.reference},
            )
        if application.amount != application.amount.quantize(CENT):
            raise InvalidPaymentDataError(
                f"Payment amount has more than two decimal places: {application.amount}",
                {"reference": application.reference},
            )

        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._bounded(
                    self._apply_once(application, stage), "apply_payment"
                )
            except DatabaseError as e:
                if not _is_conflict(e):
                    raise
                if await self.is_processed(application.reference):
                    logger.info(
                        "Reference %s was applied concurrently, treating as duplicate",
                        application.reference,
                    )
                    return await self._current_state(application)
                if attempt > self.conflict_retries:
                    raise LedgerConflictError(
                        f"Ledger for enrollment {application.enrollment_id} kept "
                        f"conflicting after {attempt} attempts",
                        {"enrollment_id": application.enrollment_id},
                    ) from e
                logger.warning(
                    "Ledger conflict for enrollment %s (attempt %d/%d): %s",
                    application.enrollment_id,
                    attempt,
                    self.conflict_retries + 1,
                    type(e.original_error).__name__,
                )

    async def _apply_once(
        self,
        application: PaymentApplication,
        stage: StageHook | None,
    ) -> LedgerResult:
        async with session_scope(self._sessionmaker) as session:
            ledger = await self._load(session, application.enrollment_id)
            if ledger is None:
                ledger = await self._create_from_enrollment(session, application)

            self._check_can_apply(ledger, application)

            ledger.paid_amount = ledger.paid_amount + application.amount
            ledger.remaining_amount = remaining_amount(ledger.paid_amount, ledger.total_amount)
            ledger.payment_status = derive_payment_status(
                ledger.paid_amount, ledger.total_amount
            )
            ledger.last_updated_at = utc_now()

            session.add(
                PaymentReference(
                    reference=application.reference,
                    matricule=application.matricule,
                    enrollment_id=application.enrollment_id,
                    account_id=application.account_id,
                    amount=application.amount,
                    currency=application.currency,
                    payment_date=application.payment_date,
                )
            )
            await session.flush()

            result = self._to_result(
                ledger,
                reference=application.reference,
                amount_applied=application.amount,
            )
            if stage is not None:
                await stage(session, result)

        logger.info(
            "Applied payment %s of %s %s to enrollment %s: paid=%s remaining=%s status=%s",
            application.reference,
            application.amount,
            application.currency,
            application.enrollment_id,
            result.paid_amount,
            result.remaining_amount,
            result.payment_status.value,
        )
        return result

    async def _create_from_enrollment(
        self,
        session: AsyncSession,
        application: PaymentApplication,
    ) -> TuitionLedger:
        enrollment = await session.get(Enrollment, application.enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFoundError(
                f"Enrollment not found: {application.enrollment_id}",
                {"enrollment_id": application.enrollment_id},
            )

        logger.info("Creating ledger for enrollment %s on first payment", enrollment.id)
        ledger = TuitionLedger(
            enrollment_id=enrollment.id,
            student_id=enrollment.student_id,
            matricule=enrollment.matricule or application.matricule,
            total_amount=enrollment.tuition_amount,
            paid_amount=ZERO,
            remaining_amount=enrollment.tuition_amount,
            currency=enrollment.currency,
            payment_status=PaymentStatus.UNPAID,
        )
        session.add(ledger)
        return ledger

    def _check_can_apply(self, ledger: TuitionLedger, application: PaymentApplication) -> None:
        if ledger.is_archived:
            raise LedgerFrozenError(
                f"Ledger for enrollment {ledger.enrollment_id} is archived",
                {"enrollment_id": ledger.enrollment_id},
            )
        if is_administrative(ledger.payment_status):
            raise LedgerFrozenError(
                f"Ledger for enrollment {ledger.enrollment_id} is "
                f"{ledger.payment_status.value}",
                {"enrollment_id": ledger.enrollment_id, "status": ledger.payment_status.value},
            )
        if ledger.currency.upper() != application.currency.upper():
            raise CurrencyMismatchError(
                f"Payment currency {application.currency} does not match ledger "
                f"currency {ledger.currency}",
                {"enrollment_id": ledger.enrollment_id},
            )

    async def _current_state(self, application: PaymentApplication) -> LedgerResult:
        ledger = await self.get_ledger(application.enrollment_id)
        if ledger is None:
            raise EnrollmentNotFoundError(
                f"No ledger for enrollment {application.enrollment_id}",
                {"enrollment_id": application.enrollment_id},
            )
        return self._to_result(
            ledger,
            reference=application.reference,
            amount_applied=ZERO,
            duplicate=True,
        )

    # =========================================================================
    # Ledger lifecycle
    # =========================================================================

    async def open_ledger(
        self,
        enrollment_id: str,
        *,
        matricule: str,
        total_amount: Decimal,
        currency: str,
        student_id: str | None = None,
    ) -> TuitionLedger:
        """Pre-seed a ledger at enrollment time.

        Opening an already open ledger returns it unchanged.

        Args:
            enrollment_id: Enrollment the ledger tracks.
            matricule: Student matricule.
            total_amount: Expected tuition from the offer.
            currency: ISO currency code.
            student_id: Optional student record id.

        Returns:
            The new or existing ledger.

        Raises:
            InvalidLedgerOperationError: If total_amount is negative.
        """
        if total_amount < ZERO:
            raise InvalidLedgerOperationError(
                f"Tuition amount cannot be negative, got {total_amount}",
                {"enrollment_id": enrollment_id},
            )

        existing = await self.get_ledger(enrollment_id)
        if existing is not None:
            return existing

        try:
            async with session_scope(self._sessionmaker) as session:
                ledger = TuitionLedger(
                    enrollment_id=enrollment_id,
                    student_id=student_id,
                    matricule=matricule,
                    total_amount=total_amount,
                    paid_amount=ZERO,
                    remaining_amount=total_amount,
                    currency=currency,
                    payment_status=derive_payment_status(ZERO, total_amount),
                )
                session.add(ledger)
        except DatabaseError as e:
            if not isinstance(e.original_error, IntegrityError):
                raise
            existing = await self.get_ledger(enrollment_id)
            if existing is None:
                raise
            return existing

        logger.info(
            "Opened ledger for enrollment %s: %s %s",
            enrollment_id,
            total_amount,
            currency,
        )
        return ledger

    async def set_administrative_status(
        self,
        enrollment_id: str,
        status: PaymentStatus,
    ) -> TuitionLedger:
        """Put a ledger under an administrative status.

        Amounts are left untouched; the pipeline refuses payments until the
        status is released.

        Raises:
            InvalidLedgerOperationError: If the status is derived from amounts.
            EnrollmentNotFoundError: If the ledger does not exist.
        """
        if status not in ADMINISTRATIVE_STATUSES:
            raise InvalidLedgerOperationError(
                f"{status.value} is derived from amounts and cannot be set directly",
                {"enrollment_id": enrollment_id},
            )

        def _update(ledger: TuitionLedger) -> None:
            ledger.payment_status = status

        ledger = await self._modify(enrollment_id, _update)
        logger.info("Ledger for enrollment %s set to %s", enrollment_id, status.value)
        return ledger

    async def release_administrative_status(self, enrollment_id: str) -> TuitionLedger:
        """Lift an administrative status and recompute the derived one.

        Raises:
            InvalidLedgerOperationError: If the ledger is not under an
                administrative status.
            EnrollmentNotFoundError: If the ledger does not exist.
        """

        def _update(ledger: TuitionLedger) -> None:
            if not is_administrative(ledger.payment_status):
                raise InvalidLedgerOperationError(
                    f"Ledger for enrollment {enrollment_id} is not under an "
                    f"administrative status",
                    {"enrollment_id": enrollment_id},
                )
            ledger.payment_status = derive_payment_status(
                ledger.paid_amount, ledger.total_amount
            )

        ledger = await self._modify(enrollment_id, _update)
        logger.info(
            "Released administrative status for enrollment %s, now %s",
            enrollment_id,
            ledger.payment_status.value,
        )
        return ledger

    async def archive_ledger(self, enrollment_id: str) -> TuitionLedger:
        """Archive a ledger once its enrollment is completed.

        Archiving twice keeps the first archive timestamp.

        Raises:
            EnrollmentNotFoundError: If the ledger does not exist.
        """

        def _update(ledger: TuitionLedger) -> None:
            if ledger.archived_at is None:
                ledger.archived_at = utc_now()

        ledger = await self._modify(enrollment_id, _update)
        logger.info("Archived ledger for enrollment %s", enrollment_id)
        return ledger

    async def _modify(
        self,
        enrollment_id: str,
        update: Callable[[TuitionLedger], None],
    ) -> TuitionLedger:
        attempt = 0
        while True:
            attempt += 1
            try:
                async with session_scope(self._sessionmaker) as session:
                    ledger = await self._load(session, enrollment_id)
                    if ledger is None:
                        raise EnrollmentNotFoundError(
                            f"No ledger for enrollment {enrollment_id}",
                            {"enrollment_id": enrollment_id},
                        )
                    update(ledger)
                    ledger.last_updated_at = utc_now()
                return ledger
            except DatabaseError as e:
                if not _is_conflict(e) or attempt > self.conflict_retries:
                    raise
                logger.warning(
                    "Ledger conflict for enrollment %s during update (attempt %d)",
                    enrollment_id,
                    attempt,
                )

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_ledger(self, enrollment_id: str) -> TuitionLedger | None:
        """Get the ledger of an enrollment."""
        async with session_scope(self._sessionmaker) as session:
            return await self._load(session, enrollment_id)

    async def list_ledgers_by_matricule(
        self,
        matricule: str,
        *,
        include_archived: bool = True,
    ) -> list[TuitionLedger]:
        """List a student's ledgers, oldest update first."""
        stmt = select(TuitionLedger).where(TuitionLedger.matricule == matricule)
        if not include_archived:
            stmt = stmt.where(TuitionLedger.archived_at.is_(None))
        stmt = stmt.order_by(TuitionLedger.last_updated_at)

        async with session_scope(self._sessionmaker) as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def total_paid_amount(self, matricule: str) -> Decimal:
        """Sum of amounts paid across a student's ledgers."""
        return await self._sum(TuitionLedger.paid_amount, matricule)

    async def total_unpaid_amount(self, matricule: str) -> Decimal:
        """Sum of amounts still due across a student's ledgers."""
        return await self._sum(TuitionLedger.remaining_amount, matricule)

    async def has_unpaid_tuition(self, matricule: str) -> bool:
        """Check if any of the student's ledgers is unpaid or partially paid."""
        async with session_scope(self._sessionmaker) as session:
            result = await session.execute(
                select(
                    exists().where(
                        TuitionLedger.matricule == matricule,
                        TuitionLedger.payment_status.in_(OUTSTANDING_STATUSES),
                    )
                )
            )
            return bool(result.scalar())

    async def is_offer_paid(self, student_id: str, offer_id: str) -> bool:
        """Check if a student has fully paid the tuition of an offer.

        Args:
            student_id: Student record id.
            offer_id: Training offer id.

        Returns:
            True if the enrollment's ledger is PAID or OVERPAID.
        """
        stmt = (
            select(TuitionLedger.payment_status)
            .join(Enrollment, Enrollment.id == TuitionLedger.enrollment_id)
            .where(Enrollment.student_id == student_id, Enrollment.offer_id == offer_id)
        )
        async with session_scope(self._sessionmaker) as session:
            result = await session.execute(stmt)
            statuses = list(result.scalars().all())

        if not statuses:
            logger.debug("No ledger for student %s and offer %s", student_id, offer_id)
            return False
        return any(status in SETTLED_STATUSES for status in statuses)

    async def _sum(self, column, matricule: str) -> Decimal:
        async with session_scope(self._sessionmaker) as session:
            result = await session.execute(
                select(func.coalesce(func.sum(column), 0)).where(
                    TuitionLedger.matricule == matricule
                )
            )
            return Decimal(str(result.scalar()))

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _load(self, session: AsyncSession, enrollment_id: str) -> TuitionLedger | None:
        result = await session.execute(
            select(TuitionLedger).where(TuitionLedger.enrollment_id == enrollment_id)
        )
        return result.scalar_one_or_none()

    async def _bounded(self, coro: Coroutine[None, None, T], operation: str) -> T:
        return await bounded(coro, self.timeout, f"Ledger {operation}")

    def _to_result(
        self,
        ledger: TuitionLedger,
        *,
        reference: str,
        amount_applied: Decimal,
        duplicate: bool = False,
    ) -> LedgerResult:
        return LedgerResult(
            enrollment_id=ledger.enrollment_id,
            matricule=ledger.matricule,
            amount_applied=amount_applied,
            total_amount=ledger.total_amount,
            paid_amount=ledger.paid_amount,
            remaining_amount=ledger.remaining_amount,
            currency=ledger.currency,
            payment_status=ledger.payment_status,
            reference=reference,
            duplicate=duplicate,
        )
