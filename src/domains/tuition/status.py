# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Payment status derivation."""

from decimal import Decimal

from src.models.tuition import PaymentStatus

ZERO = Decimal("0")
CENT = Decimal("0.01")

ADMINISTRATIVE_STATUSES = frozenset(
    {
        PaymentStatus.REFUNDED,
        PaymentStatus.CANCELLED,
        PaymentStatus.PENDING_VALIDATION,
    }
)


def derive_payment_status(paid_amount: Decimal, total_amount: Decimal) -> PaymentStatus:
    """Derive the payment status from the paid and expected amounts.

    Args:
        paid_amount: Cumulative amount paid.
        total_amount: Expected tuition amount.

    Returns:
        UNPAID, PARTIALLY_PAID, PAID or OVERPAID.

    Example:
        >>> derive_payment_status(Decimal("100000"), Decimal("250000"))
        <PaymentStatus.PARTIALLY_PAID: 'PARTIALLY_PAID'>
    """
    if paid_amount == ZERO:
        return PaymentStatus.UNPAID
    if paid_amount < total_amount:
        return PaymentStatus.PARTIALLY_PAID
    if paid_amount == total_amount:
        return PaymentStatus.PAID
    return PaymentStatus.OVERPAID


def remaining_amount(paid_amount: Decimal, total_amount: Decimal) -> Decimal:
    """Amount still due, floored at zero."""
    return max(total_amount - paid_amount, ZERO)


def is_administrative(status: PaymentStatus) -> bool:
    """Check if a status was set out-of-band and blocks automatic updates."""
    return status in ADMINISTRATIVE_STATUSES
