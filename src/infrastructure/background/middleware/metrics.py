# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Prometheus metrics middleware for Dramatiq.

Provides metrics collection for payment message monitoring,
including counters, histograms, and gauges.
"""

import logging
import time
from typing import Any

import dramatiq
from dramatiq import Message, Middleware
from dramatiq.common import q_name
from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

logger = logging.getLogger(__name__)


class MetricsMiddleware(Middleware):
    """Middleware that collects Prometheus metrics for Dramatiq actors.

    Metrics Collected:
    - payiskoul_dramatiq_messages_total: Total messages by actor, queue, status
    - payiskoul_dramatiq_message_duration_seconds: Processing time histogram
    - payiskoul_dramatiq_messages_in_flight: Currently processing messages gauge
    - payiskoul_dramatiq_messages_failed_total: Failed messages counter
    - payiskoul_dramatiq_messages_retried_total: Messages re-enqueued for retry
    - payiskoul_dramatiq_messages_dead_lettered_total: Messages sent to the dead letter queue
    - payiskoul_tuition_payments_total: Payment outcomes by disposition

    Usage:
        from src.infrastructure.background.middleware.metrics import MetricsMiddleware

        broker.add_middleware(MetricsMiddleware())
    """

    START_TIME_KEY = "_metrics_start_time"

    def __init__(
        self,
        registry: CollectorRegistry | None = None,
        namespace: str = "payiskoul",
    ) -> None:
        """Initialize metrics middleware.

        Args:
            registry: Prometheus registry (default: global REGISTRY).
            namespace: Metrics namespace prefix.
        """
        self.registry = registry or REGISTRY
        self.namespace = namespace

        self.messages_total = Counter(
            f"{namespace}_dramatiq_messages_total",
            "Total Dramatiq messages processed",
            ["actor", "queue", "status"],
            registry=self.registry,
        )

        self.message_duration = Histogram(
            f"{namespace}_dramatiq_message_duration_seconds",
            "Dramatiq message processing duration",
            ["actor", "queue"],
            buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=self.registry,
        )

        self.messages_in_flight = Gauge(
            f"{namespace}_dramatiq_messages_in_flight",
            "Dramatiq messages currently being processed",
            ["actor", "queue"],
            registry=self.registry,
        )

        self.messages_failed = Counter(
            f"{namespace}_dramatiq_messages_failed_total",
            "Total failed Dramatiq messages",
            ["actor", "queue", "exception_type"],
            registry=self.registry,
        )

        self.messages_retried = Counter(
            f"{namespace}_dramatiq_messages_retried_total",
            "Total Dramatiq messages re-enqueued for retry",
            ["actor", "queue"],
            registry=self.registry,
        )

        self.messages_dead_lettered = Counter(
            f"{namespace}_dramatiq_messages_dead_lettered_total",
            "Total Dramatiq messages sent to the dead letter queue",
            ["actor", "queue"],
            registry=self.registry,
        )

        self.payments_total = Counter(
            f"{namespace}_tuition_payments_total",
            "Tuition payment messages by final disposition",
            ["actor", "disposition"],
            registry=self.registry,
        )

        logger.debug("Metrics middleware initialized with namespace: %s", namespace)

    def before_process_message(
        self,
        broker: dramatiq.Broker,
        message: Message,
    ) -> None:
        """Record message start time and increment in-flight gauge.

        Args:
            broker: Dramatiq broker.
            message: Message being processed.
        """
        message.options[self.START_TIME_KEY] = time.perf_counter()
        self.messages_in_flight.labels(
            actor=message.actor_name,
            queue=_queue_label(message),
        ).inc()

    def after_process_message(
        self,
        broker: dramatiq.Broker,
        message: Message,
        *,
        result: Any = None,
        exception: BaseException | None = None,
    ) -> None:
        """Record message completion metrics.

        Args:
            broker: Dramatiq broker.
            message: Message that was processed.
            result: Result of processing (if successful).
            exception: Exception raised (if failed).
        """
        actor_name = message.actor_name
        queue_name = _queue_label(message)
        start_time = message.options.pop(self.START_TIME_KEY, None)

        self.messages_in_flight.labels(actor=actor_name, queue=queue_name).dec()

        if start_time is not None:
            self.message_duration.labels(actor=actor_name, queue=queue_name).observe(
                time.perf_counter() - start_time
            )

        if exception:
            status = "failed"
            self.messages_failed.labels(
                actor=actor_name,
                queue=queue_name,
                exception_type=type(exception).__name__,
            ).inc()
        else:
            status = "success"
            if isinstance(result, dict) and "disposition" in result:
                self.payments_total.labels(
                    actor=actor_name,
                    disposition=result["disposition"],
                ).inc()

        self.messages_total.labels(actor=actor_name, queue=queue_name, status=status).inc()

    def after_skip_message(
        self,
        broker: dramatiq.Broker,
        message: Message,
    ) -> None:
        """Handle skipped messages.

        Args:
            broker: Dramatiq broker.
            message: Message that was skipped.
        """
        queue_name = _queue_label(message)

        if self.START_TIME_KEY in message.options:
            message.options.pop(self.START_TIME_KEY, None)
            self.messages_in_flight.labels(actor=message.actor_name, queue=queue_name).dec()

        self.messages_total.labels(
            actor=message.actor_name,
            queue=queue_name,
            status="skipped",
        ).inc()

    def record_retry(self, message: Message) -> None:
        """Record a message re-enqueued by the retry middleware."""
        self.messages_retried.labels(
            actor=message.actor_name,
            queue=_queue_label(message),
        ).inc()

    def record_dead_letter(self, message: Message) -> None:
        """Record a message dead-lettered by the retry middleware."""
        self.messages_dead_lettered.labels(
            actor=message.actor_name,
            queue=_queue_label(message),
        ).inc()
        self.payments_total.labels(
            actor=message.actor_name,
            disposition="FAILED_TRANSIENT",
        ).inc()


def _queue_label(message: Message) -> str:
    # Delayed retries are consumed from "<queue>.DQ"
    return q_name(message.queue_name or "default")


# Singleton instance for use by other middleware
_metrics_middleware: MetricsMiddleware | None = None


def get_metrics_middleware() -> MetricsMiddleware | None:
    """Get the metrics middleware instance.

    Returns:
        MetricsMiddleware instance or None if not set.
    """
    return _metrics_middleware


def set_metrics_middleware(middleware: MetricsMiddleware | None) -> None:
    """Set the global metrics middleware instance.

    Args:
        middleware: MetricsMiddleware instance to set.
    """
    global _metrics_middleware
    _metrics_middleware = middleware
