# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Outbound event infrastructure for the tuition worker.

Components:
- EventTypes: event type names carried in message bodies
- EventPublisher: AMQP and in-memory publishers for the tuition exchange
- TransactionalOutbox: stages events with ledger changes, relays after commit

Architecture:
    Pipeline -> ledger transaction (+ outbox row) -> commit -> relay -> RabbitMQ
"""

from src.infrastructure.events.outbox import TransactionalOutbox
from src.infrastructure.events.publisher import (
    AmqpEventPublisher,
    EventPublisher,
    StubEventPublisher,
    get_event_publisher,
    reset_event_publisher,
    routing_keys_from_settings,
)
from src.infrastructure.events.types import EventTypes

__all__ = [
    # Event Types
    "EventTypes",
    # Publishers
    "EventPublisher",
    "AmqpEventPublisher",
    "StubEventPublisher",
    "get_event_publisher",
    "reset_event_publisher",
    "routing_keys_from_settings",
    # Outbox
    "TransactionalOutbox",
]
