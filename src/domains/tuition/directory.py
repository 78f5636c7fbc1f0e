# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Lookups against student and institution records."""

import logging

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.infrastructure.database.models import Institution, Student

logger = logging.getLogger(__name__)


class TuitionDirectory:
    """Read-only access to the institution service's reference data.

    Results are never cached: an institution can be deactivated or lose its
    account between two payments.

    Attributes:
        db: Async database session.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def student_exists(self, matricule: str) -> bool:
        """Check whether a student with this matricule exists."""
        result = await self.db.execute(
            select(exists().where(Student.matricule == matricule))
        )
        return bool(result.scalar())

    async def get_institution(self, institution_id: str) -> Institution | None:
        """Get an institution by id."""
        result = await self.db.execute(
            select(Institution).where(Institution.id == institution_id)
        )
        return result.scalar_one_or_none()

    async def get_institution_by_account(self, account_id: str) -> Institution | None:
        """Get the institution bound to a settlement account."""
        result = await self.db.execute(
            select(Institution).where(Institution.account_id == account_id)
        )
        return result.scalars().first()
