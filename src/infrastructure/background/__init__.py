# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Background message processing for the tuition worker.

Provides payment message processing with Dramatiq:
- RabbitMQ broker with publisher confirms
- Encoder for the transaction service's plain JSON messages
- Retry policy middleware with dead-lettering
- Actors for transaction events, payment notifications and the outbox

Quick Start:
    # Setup broker (call once at startup)
    from src.infrastructure.background import setup_dramatiq
    setup_dramatiq()

Running Workers:
    dramatiq src.infrastructure.background.tasks --processes 2 --threads 4
"""

# Re-export from broker module
from src.infrastructure.background.broker import (
    BrokerManager,
    Priority,
    Queues,
    get_broker,
    get_broker_manager,
    setup_dramatiq,
)
from src.infrastructure.background.encoder import TuitionEventEncoder
from src.infrastructure.background.middleware import RetryPolicy, RetryPolicyMiddleware

# Task actors are imported from src.infrastructure.background.tasks, which
# sets up the broker on import.

__all__ = [
    # Broker
    "BrokerManager",
    "Priority",
    "Queues",
    "get_broker",
    "get_broker_manager",
    "setup_dramatiq",
    # Encoder
    "TuitionEventEncoder",
    # Retries
    "RetryPolicy",
    "RetryPolicyMiddleware",
]
