# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Reference resolution for incoming tuition payments.

Resolution turns an upstream message into a ResolvedPayment and runs the
validation chain, in order:

1. the correlation keys can be extracted (InvalidPaymentDataError)
2. a student with the matricule exists (StudentNotFoundError)
3. the institution exists (InstitutionNotFoundError)
4. the institution is active with a settlement account
   (InstitutionUnavailableError)

Every failure is permanent.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.domains.tuition.correlation import (
    CorrelationKeyExtractor,
    CorrelationKeys,
    extract_correlation_keys,
)
from src.domains.tuition.directory import TuitionDirectory
from src.domains.tuition.errors import (
    InstitutionNotFoundError,
    InstitutionUnavailableError,
    InvalidPaymentDataError,
    StudentNotFoundError,
)
from src.domains.tuition.ledger import bounded
from src.infrastructure.database.connection import session_scope
from src.infrastructure.database.models import Institution
from src.models.tuition import PaymentNotification, TransactionEventPayload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedPayment:
    """A payment linked to its student, enrollment and settlement account."""

    matricule: str
    enrollment_id: str
    institution_id: str
    account_id: str


class ReferenceResolver:
    """Resolves and validates the references carried by payment messages.

    Attributes:
        key_extractor: Callable extracting correlation keys from free text.
        timeout: Seconds allowed for the directory lookups, or None.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        key_extractor: CorrelationKeyExtractor = extract_correlation_keys,
        timeout: float | None = None,
    ) -> None:
        self._sessionmaker = sessionmaker
        self.key_extractor = key_extractor
        self.timeout = timeout

    async def resolve(self, payload: TransactionEventPayload) -> ResolvedPayment:
        """Resolve a transaction event payload.

        Args:
            payload: Validated transaction event payload.

        Returns:
            The resolved payment.

        Raises:
            PermanentPaymentError: If any step of the validation chain fails.
        """
        matricule = (payload.phone_number or "").strip()
        keys = self.key_extractor(payload.description)
        if not matricule:
            raise InvalidPaymentDataError("Student matricule missing from payment data")

        return await bounded(
            self._resolve_keys(matricule, keys), self.timeout, "Payment resolution"
        )

    async def _resolve_keys(self, matricule: str, keys: CorrelationKeys) -> ResolvedPayment:
        async with session_scope(self._sessionmaker) as session:
            directory = TuitionDirectory(session)
            await self._check_student(directory, matricule)
            institution = await directory.get_institution(keys.institution_id)
            if institution is None:
                raise InstitutionNotFoundError(
                    f"Institution not found: {keys.institution_id}",
                    {"institution_id": keys.institution_id},
                )
            self._check_institution(institution)

        return ResolvedPayment(
            matricule=matricule,
            enrollment_id=keys.enrollment_id,
            institution_id=institution.id,
            account_id=institution.account_id or "",
        )

    async def resolve_notification(self, notification: PaymentNotification) -> ResolvedPayment:
        """Resolve a direct payment notification.

        The enrollment is already known; the institution is found by id when
        given, otherwise by its settlement account. When both are given the
        account must belong to the institution.

        Args:
            notification: Validated payment notification.

        Returns:
            The resolved payment.

        Raises:
            PermanentPaymentError: If any step of the validation chain fails.
        """
        account_id = (notification.institution_account_id or "").strip()
        if not notification.institution_id and not account_id:
            raise InvalidPaymentDataError(
                "Institution id or settlement account missing from payment notification"
            )

        return await bounded(
            self._resolve_notification(notification, account_id),
            self.timeout,
            "Notification resolution",
        )

    async def _resolve_notification(
        self,
        notification: PaymentNotification,
        account_id: str,
    ) -> ResolvedPayment:
        async with session_scope(self._sessionmaker) as session:
            directory = TuitionDirectory(session)
            await self._check_student(directory, notification.matricule)

            if notification.institution_id:
                institution = await directory.get_institution(notification.institution_id)
                missing = notification.institution_id
            else:
                institution = await directory.get_institution_by_account(account_id)
                missing = f"account {account_id}"
            if institution is None:
                raise InstitutionNotFoundError(
                    f"Institution not found: {missing}",
                    {"institution_id": notification.institution_id, "account_id": account_id},
                )
            self._check_institution(institution)
            if account_id and institution.account_id != account_id:
                raise InstitutionUnavailableError(
                    f"Account {account_id} is not the settlement account of institution "
                    f"{institution.id}",
                    {"institution_id": institution.id, "account_id": account_id},
                )

        return ResolvedPayment(
            matricule=notification.matricule,
            enrollment_id=notification.enrollment_id,
            institution_id=institution.id,
            account_id=institution.account_id or "",
        )

    async def _check_student(self, directory: TuitionDirectory, matricule: str) -> None:
        if not await directory.student_exists(matricule):
            raise StudentNotFoundError(
                f"Student not found: {matricule}",
                {"matricule": matricule},
            )

    def _check_institution(self, institution: Institution) -> None:
        if not institution.can_receive_payments:
            logger.warning(
                "Institution %s cannot receive payments (status=%s, account=%r)",
                institution.id,
                institution.status,
                institution.account_id,
            )
            raise InstitutionUnavailableError(
                f"Institution {institution.id} is inactive or has no settlement account",
                {"institution_id": institution.id},
            )
