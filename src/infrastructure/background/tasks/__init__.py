# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Background task actors for the tuition worker.

This module provides the Dramatiq actors:
- handle_transaction_created: TransactionCreated events
- handle_payment_notification: direct payment notifications
- relay_tuition_outbox: outbox sweeper

Usage:
    from src.infrastructure.background.tasks import relay_tuition_outbox

    # Trigger an outbox sweep
    relay_tuition_outbox.send()

Running Workers:
    dramatiq src.infrastructure.background.tasks --processes 2 --threads 4
"""

from src.infrastructure.background.tasks.tuition import (
    get_tuition_actors,
    handle_payment_notification,
    handle_transaction_created,
    relay_tuition_outbox,
)

# Re-export run_async for convenience
from src.infrastructure.background.tasks.base import run_async

__all__ = [
    # Tuition
    "handle_transaction_created",
    "handle_payment_notification",
    "relay_tuition_outbox",
    # Utilities
    "run_async",
    "get_all_actors",
]


def get_all_actors() -> list:
    """Get list of all defined actors.

    Returns:
        List of all Dramatiq actors.
    """
    return get_tuition_actors()
