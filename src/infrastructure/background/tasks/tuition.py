# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tuition payment actors.

Actors consuming the upstream payment queues and maintaining the outbox.
Queue names come from MessagingSettings so they match the exchanges and
bindings the transaction service publishes to.

Actor return values feed the metrics middleware; any exception escaping an
actor is routed by RetryPolicyMiddleware.
"""

import logging
from typing import Any

import dramatiq

from src.core.config import get_settings
from src.domains.tuition.pipeline import get_payment_pipeline
from src.infrastructure.background.broker import (
    Priority,
    Queues,
    get_broker_manager,
    setup_dramatiq,
)
from src.infrastructure.background.encoder import NOTIFICATION_ACTOR, TRANSACTION_ACTOR
from src.infrastructure.background.tasks.base import run_async
from src.utils.logging import setup_logging

_settings = get_settings()
_messaging = _settings.messaging

# Configure logging and the broker before defining actors
setup_logging(_settings)
setup_dramatiq()

logger = logging.getLogger(__name__)


@dramatiq.actor(
    actor_name=TRANSACTION_ACTOR,
    queue_name=_messaging.transaction_queue,
    priority=Priority.PAYMENT,
    time_limit=120000,  # 2 minutes
)
def handle_transaction_created(message: dict[str, Any]) -> dict[str, Any]:
    """Handle a TransactionCreated event from the transaction service.

    Args:
        message: JSON body of the event.

    Returns:
        Pipeline outcome as a dictionary.
    """

    async def _handle() -> dict[str, Any]:
        pipeline = get_payment_pipeline()
        outcome = await pipeline.handle_transaction_event(message)
        return outcome.to_dict()

    return run_async(_handle())


@dramatiq.actor(
    actor_name=NOTIFICATION_ACTOR,
    queue_name=_messaging.payment_notification_queue,
    priority=Priority.PAYMENT,
    time_limit=120000,  # 2 minutes
)
def handle_payment_notification(message: dict[str, Any]) -> dict[str, Any]:
    """Handle a direct payment notification.

    Args:
        message: JSON body of the notification.

    Returns:
        Pipeline outcome as a dictionary.
    """

    async def _handle() -> dict[str, Any]:
        pipeline = get_payment_pipeline()
        outcome = await pipeline.handle_payment_notification(message)
        return outcome.to_dict()

    return run_async(_handle())


@dramatiq.actor(
    queue_name=Queues.MAINTENANCE,
    priority=Priority.MAINTENANCE,
    max_attempts=1,
    time_limit=300000,  # 5 minutes
)
def relay_tuition_outbox() -> dict[str, Any]:
    """Relay outbox events left unpublished by interrupted workers.

    Meant to be sent periodically, e.g. ``relay_tuition_outbox.send()`` from
    a cron job.

    Returns:
        Number of events published.
    """

    async def _relay() -> int:
        pipeline = get_payment_pipeline()
        return await pipeline.outbox.relay_pending()

    published = run_async(_relay())
    if published:
        logger.info("Relayed %d pending tuition events", published)
    return {"published": published}


# Queues must exist and be bound before the worker starts consuming
get_broker_manager().declare_topology()


def get_tuition_actors() -> list:
    """Get list of tuition actors.

    Returns:
        List of tuition actors.
    """
    return [
        handle_transaction_created,
        handle_payment_notification,
        relay_tuition_outbox,
    ]
