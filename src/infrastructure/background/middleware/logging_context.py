# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Logging context middleware for Dramatiq.

Binds the message id, actor, queue and attempt number to the structlog
context for the duration of each message, so every log line emitted while
handling a payment can be traced back to the broker message.
"""

import logging
from typing import Any

import dramatiq
from dramatiq import Message, Middleware

from src.utils.logging import bind_context, clear_context

logger = logging.getLogger(__name__)


class LogContextMiddleware(Middleware):
    """Middleware that scopes logging context to one message.

    Usage:
        broker.add_middleware(LogContextMiddleware())

        # Inside an actor
        logger.info("Handling payment")  # includes message_id, actor, queue
    """

    def before_process_message(
        self,
        broker: dramatiq.Broker,
        message: Message,
    ) -> None:
        """Bind message context before processing.

        Args:
            broker: The broker instance.
            message: The message being processed.
        """
        clear_context()
        bind_context(
            message_id=message.message_id,
            actor=message.actor_name,
            queue=message.queue_name,
            attempt=message.options.get("attempts", 0) + 1,
        )
        logger.debug("Processing message %s", message.message_id)

    def after_process_message(
        self,
        broker: dramatiq.Broker,
        message: Message,
        *,
        result: Any = None,
        exception: BaseException | None = None,
    ) -> None:
        """Clear message context after processing.

        Args:
            broker: The broker instance.
            message: The processed message.
            result: The result of processing.
            exception: Any exception that occurred.
        """
        clear_context()

    def after_skip_message(
        self,
        broker: dramatiq.Broker,
        message: Message,
    ) -> None:
        """Clear message context after skipping.

        Args:
            broker: The broker instance.
            message: The skipped message.
        """
        clear_context()
