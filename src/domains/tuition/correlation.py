# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Correlation key extraction from transaction descriptions.

The transaction service has no structured field for the enrollment and
institution a payment belongs to, so callers embed them in the free-text
description, e.g. ``"Tuition 2024, enrollmentId=E1, institutionId=I1"``.

Everything that reads that text goes through extract_correlation_keys().
When the upstream payload gains structured fields, swap the extractor passed
to ReferenceResolver and nothing downstream changes.
"""

import re
from dataclasses import dataclass
from typing import Callable

from src.domains.tuition.errors import InvalidPaymentDataError

ENROLLMENT_KEY = "enrollmentId"
INSTITUTION_KEY = "institutionId"


@dataclass(frozen=True)
class CorrelationKeys:
    """Identifiers linking a payment to an enrollment and an institution."""

    enrollment_id: str
    institution_id: str


CorrelationKeyExtractor = Callable[[str | None], CorrelationKeys]


def extract_value(description: str | None, key: str) -> str | None:
    """Extract the value of ``key=value`` from free text.

    The value runs until the next comma or whitespace.

    Args:
        description: Free text, possibly None.
        key: Key name, matched case-sensitively.

    Returns:
        The value, or None when the key is absent.
    """
    if not description:
        return None
    match = re.search(rf"{re.escape(key)}=([^,\s]+)", description)
    return match.group(1) if match else None


def extract_correlation_keys(description: str | None) -> CorrelationKeys:
    """Extract the enrollment and institution identifiers.

    Both keys are required; a description missing either one fails the whole
    event.

    Args:
        description: Transaction description.

    Returns:
        The extracted correlation keys.

    Raises:
        InvalidPaymentDataError: If either key is missing.
    """
    enrollment_id = extract_value(description, ENROLLMENT_KEY)
    if enrollment_id is None:
        raise InvalidPaymentDataError(
            "Enrollment id missing from payment data",
            {"description": description},
        )

    institution_id = extract_value(description, INSTITUTION_KEY)
    if institution_id is None:
        raise InvalidPaymentDataError(
            "Institution id missing from payment data",
            {"description": description},
        )

    return CorrelationKeys(enrollment_id=enrollment_id, institution_id=institution_id)
