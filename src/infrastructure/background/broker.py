# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Dramatiq broker configuration for the tuition worker.

This module provides payment message processing with:
- RabbitMQ broker with publisher confirms for durability
- Encoder accepting the transaction service's plain JSON messages
- Explicit retry policy and dead-lettering instead of Dramatiq's Retries
- Topology declaration for the upstream exchanges and bindings

Example:
    from src.infrastructure.background.broker import setup_dramatiq, get_broker

    # Setup at worker startup
    broker = setup_dramatiq()

    # Get broker for manual operations
    broker = get_broker()
"""

import logging
import os
from typing import Any

import dramatiq
from dramatiq.brokers.rabbitmq import RabbitmqBroker
from dramatiq.brokers.stub import StubBroker
from dramatiq.common import dq_name
from dramatiq.middleware import (
    AgeLimit,
    Callbacks,
    Middleware,
    Pipelines,
    ShutdownNotifications,
    TimeLimit,
)
from pika.exceptions import AMQPError

from src.core.config import Settings, get_settings
from src.infrastructure.background.encoder import TuitionEventEncoder
from src.infrastructure.background.middleware import (
    LogContextMiddleware,
    MetricsMiddleware,
    RetryPolicy,
    RetryPolicyMiddleware,
    get_metrics_middleware,
    set_metrics_middleware,
)

logger = logging.getLogger(__name__)


class Queues:
    """Queue name constants for internal task routing.

    Upstream payment queues are deployment settings, see MessagingSettings.
    """

    MAINTENANCE = "tuition.maintenance"


class Priority:
    """Task priority levels (lower number = higher priority)."""

    PAYMENT = 0
    MAINTENANCE = 5


class BrokerManager:
    """Manages Dramatiq broker lifecycle.

    Handles broker initialization, middleware and encoder setup, and
    topology declaration.

    Attributes:
        _broker: The Dramatiq broker instance.
        _initialized: Whether the broker has been initialized.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        """Initialize broker manager."""
        self._settings = settings
        self._broker: dramatiq.Broker | None = None
        self._initialized = False

    @property
    def settings(self) -> Settings:
        """Settings used to build the broker."""
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    @property
    def broker(self) -> dramatiq.Broker:
        """Get the configured broker.

        Returns:
            The Dramatiq broker instance.

        Raises:
            RuntimeError: If broker not initialized.
        """
        if self._broker is None:
            raise RuntimeError("Broker not initialized. Call setup() first.")
        return self._broker

    @property
    def is_initialized(self) -> bool:
        """Check if broker is initialized."""
        return self._initialized

    @property
    def is_stub(self) -> bool:
        """Check if the broker is the in-memory StubBroker."""
        return isinstance(self._broker, StubBroker)

    def setup(self) -> dramatiq.Broker:
        """Setup and configure the Dramatiq broker.

        Returns:
            Configured broker instance.
        """
        if self._initialized:
            return self._broker  # type: ignore

        logger.info("Setting up Dramatiq broker...")
        settings = self.settings
        middleware = self._build_middleware()

        # Check for test mode
        use_stub = os.getenv("DRAMATIQ_TEST_MODE", "false").lower() == "true"

        if use_stub:
            self._broker = StubBroker(middleware=middleware)
            self._broker.emit_after("process_boot")
            logger.info("Using StubBroker for testing")
        else:
            self._broker = RabbitmqBroker(
                url=settings.rabbitmq.url,
                confirm_delivery=True,
                middleware=middleware,
            )
            logger.info(
                "RabbitMQ broker initialized (host: %s:%s)",
                settings.rabbitmq.host,
                settings.rabbitmq.port,
            )

        dramatiq.set_encoder(
            TuitionEventEncoder(
                transaction_queue=settings.messaging.transaction_queue,
                notification_queue=settings.messaging.payment_notification_queue,
            )
        )

        # Set as global broker
        dramatiq.set_broker(self._broker)
        self._initialized = True

        return self._broker

    def _build_middleware(self) -> list[Middleware]:
        """Build the broker middleware stack.

        Dramatiq's defaults minus Retries and Prometheus, plus:
        1. LogContextMiddleware (logging context per message)
        2. RetryPolicyMiddleware (backoff and dead-lettering)
        3. MetricsMiddleware (Prometheus metrics)

        After-hooks run in reverse order, so the logging context is still
        bound while the retry middleware logs.
        """
        metrics_middleware = get_metrics_middleware()
        if metrics_middleware is None:
            metrics_middleware = MetricsMiddleware()
            set_metrics_middleware(metrics_middleware)

        return [
            LogContextMiddleware(),
            AgeLimit(),
            TimeLimit(),
            ShutdownNotifications(),
            Callbacks(),
            Pipelines(),
            RetryPolicyMiddleware(RetryPolicy.from_settings(self.settings.retry)),
            metrics_middleware,
        ]

    def declare_topology(self) -> None:
        """Declare the exchanges, queues and bindings the worker consumes from.

        No-op for the StubBroker or when ``declare_topology`` is disabled.
        """
        messaging = self.settings.messaging
        if self.is_stub or not messaging.declare_topology:
            return

        broker = self.broker
        channel = broker.channel
        channel.exchange_declare(
            exchange=messaging.transaction_exchange,
            exchange_type="direct",
            durable=True,
        )
        channel.exchange_declare(
            exchange=messaging.events_exchange,
            exchange_type="topic",
            durable=True,
        )
        channel.exchange_declare(
            exchange=messaging.tuition_exchange,
            exchange_type="direct",
            durable=True,
        )

        broker.declare_queue(messaging.transaction_queue, ensure=True)
        broker.declare_queue(messaging.payment_notification_queue, ensure=True)

        channel.queue_bind(
            queue=messaging.transaction_queue,
            exchange=messaging.transaction_exchange,
            routing_key=messaging.transaction_routing_key,
        )
        channel.queue_bind(
            queue=messaging.payment_notification_queue,
            exchange=messaging.events_exchange,
            routing_key=messaging.payment_notification_binding,
        )
        logger.info(
            "Declared topology: %s <- %s (%s), %s <- %s (%s)",
            messaging.transaction_queue,
            messaging.transaction_exchange,
            messaging.transaction_routing_key,
            messaging.payment_notification_queue,
            messaging.events_exchange,
            messaging.payment_notification_binding,
        )

    def get_queue_stats(self) -> dict[str, Any]:
        """Get queue statistics.

        Returns:
            Queue statistics dictionary with ready, delayed and dead-lettered
            message counts per payment queue.
        """
        if not self._initialized or self._broker is None:
            return {"status": "not_initialized"}

        messaging = self.settings.messaging
        queues = [messaging.transaction_queue, messaging.payment_notification_queue]

        if isinstance(self._broker, RabbitmqBroker):
            stats: dict[str, Any] = {"broker_type": "rabbitmq"}
            try:
                queue_counts = {}
                for queue in queues:
                    ready, delayed, dead = self._broker.get_queue_message_counts(queue)
                    queue_counts[queue] = {"ready": ready, "delayed": delayed, "dead": dead}
                stats["queues"] = queue_counts
                stats["status"] = "healthy"
            except AMQPError as e:
                stats["status"] = "error"
                stats["error"] = str(e)
            return stats

        broker = self._broker
        queue_counts = {}
        for queue in queues:
            pending = broker.queues.get(queue)
            delayed = broker.queues.get(dq_name(queue))
            queue_counts[queue] = {
                "ready": pending.qsize() if pending is not None else 0,
                "delayed": delayed.qsize() if delayed is not None else 0,
            }
        return {
            "broker_type": "stub",
            "status": "healthy",
            "queues": queue_counts,
            "dead_letters": len(broker.dead_letters),
        }


# Singleton instance
_broker_manager: BrokerManager | None = None


def get_broker_manager() -> BrokerManager:
    """Get the singleton broker manager.

    Returns:
        BrokerManager instance.
    """
    global _broker_manager
    if _broker_manager is None:
        _broker_manager = BrokerManager()
    return _broker_manager


def setup_dramatiq() -> dramatiq.Broker:
    """Setup Dramatiq with configuration from settings.

    This should be called once at worker startup.

    Returns:
        Configured broker.
    """
    manager = get_broker_manager()
    return manager.setup()


def get_broker() -> dramatiq.Broker:
    """Get the current Dramatiq broker.

    Returns:
        Broker instance.

    Raises:
        RuntimeError: If broker not initialized.
    """
    return get_broker_manager().broker

