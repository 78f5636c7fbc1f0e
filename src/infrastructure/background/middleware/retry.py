# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Retry routing middleware for payment actors.

Replaces Dramatiq's built-in Retries middleware with an explicit
RetryPolicy. When an exception escapes an actor:

- retryable and attempts remain: the message is re-enqueued with an
  exponential backoff delay
- otherwise: the message is dead-lettered with the attempt count, last
  error and FAILED_TRANSIENT disposition in its options

On RabbitMQ a rejected delivery is dead-lettered with its original bytes,
so the updated message is published to ``<queue>.XQ`` directly and the
original delivery is acknowledged. Other brokers fail the message.

Permanent business errors are handled inside the pipeline and never reach
this middleware. A PermanentPaymentError that does escape is dead-lettered
without retry.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

import dramatiq
import pika
from dramatiq import Message, Middleware
from dramatiq.brokers.rabbitmq import RabbitmqBroker
from dramatiq.common import q_name, xq_name
from pika.exceptions import AMQPError

from src.core.config.settings import RetrySettings
from src.domains.tuition.errors import PermanentPaymentError
from src.infrastructure.background.middleware.metrics import get_metrics_middleware

logger = logging.getLogger(__name__)

ATTEMPTS_KEY = "attempts"
LAST_ERROR_KEY = "last_error"
DISPOSITION_KEY = "disposition"
FAILED_TRANSIENT = "FAILED_TRANSIENT"


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff retry policy.

    Attributes:
        max_attempts: Total processing attempts, including the first.
        base_delay_ms: Delay before the second attempt.
        multiplier: Factor applied to the delay after each attempt.
        max_delay_ms: Upper bound for a single delay.
        non_retryable: Exception types that are never retried.

    Example:
        >>> policy = RetryPolicy()
        >>> [policy.backoff_ms(n) for n in (1, 2)]
        [1000, 2000]
    """

    max_attempts: int = 3
    base_delay_ms: int = 1000
    multiplier: float = 2.0
    max_delay_ms: int = 60_000
    non_retryable: tuple[type[BaseException], ...] = field(
        default=(PermanentPaymentError,)
    )

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryPolicy":
        """Build a policy from retry settings."""
        return cls(
            max_attempts=settings.max_attempts,
            base_delay_ms=settings.base_delay_ms,
            multiplier=settings.multiplier,
            max_delay_ms=settings.max_delay_ms,
        )

    def is_retryable(self, exception: BaseException) -> bool:
        """Check if an exception type may be retried at all."""
        return not isinstance(exception, self.non_retryable)

    def should_retry(self, exception: BaseException, attempts: int) -> bool:
        """Check if a message that failed ``attempts`` times gets another try."""
        return self.is_retryable(exception) and attempts < self.max_attempts

    def backoff_ms(self, attempts: int) -> int:
        """Delay before the next attempt after ``attempts`` failures."""
        delay = self.base_delay_ms * self.multiplier ** max(attempts - 1, 0)
        return int(min(delay, self.max_delay_ms))


class RetryPolicyMiddleware(Middleware):
    """Re-enqueues failed messages with backoff, then dead-letters them.

    The policy can be overridden per actor with the ``max_attempts`` actor
    option.

    Usage:
        broker.add_middleware(RetryPolicyMiddleware(RetryPolicy(max_attempts=5)))
    """

    def __init__(self, policy: RetryPolicy | None = None) -> None:
        self.policy = policy or RetryPolicy()

    @property
    def actor_options(self) -> set[str]:
        return {"max_attempts"}

    def after_process_message(
        self,
        broker: dramatiq.Broker,
        message: Message,
        *,
        result: Any = None,
        exception: BaseException | None = None,
    ) -> None:
        """Route a message whose actor raised.

        Args:
            broker: The broker instance.
            message: The processed message.
            result: The result of processing.
            exception: Exception raised by the actor, if any.
        """
        if exception is None:
            return

        attempts = message.options.get(ATTEMPTS_KEY, 0) + 1
        message.options[ATTEMPTS_KEY] = attempts
        message.options[LAST_ERROR_KEY] = f"{type(exception).__name__}: {exception}"

        policy = self._policy_for(broker, message)
        metrics = get_metrics_middleware()

        if not policy.should_retry(exception, attempts):
            message.options[DISPOSITION_KEY] = FAILED_TRANSIENT
            logger.error(
                "Message %s (%s) dead-lettered after %d attempt(s): %s",
                message.message_id,
                message.actor_name,
                attempts,
                message.options[LAST_ERROR_KEY],
            )
            if metrics is not None:
                metrics.record_dead_letter(message)
            self._dead_letter(broker, message)
            return

        delay = policy.backoff_ms(attempts)
        logger.warning(
            "Retrying message %s (%s) in %d ms, attempt %d of %d: %s",
            message.message_id,
            message.actor_name,
            delay,
            attempts + 1,
            policy.max_attempts,
            message.options[LAST_ERROR_KEY],
        )
        if metrics is not None:
            metrics.record_retry(message)
        broker.enqueue(message, delay=delay)

    def _dead_letter(self, broker: dramatiq.Broker, message: Message) -> None:
        if not isinstance(broker, RabbitmqBroker):
            message.fail()
            return

        queue_name = xq_name(q_name(message.queue_name))
        try:
            broker.channel.basic_publish(
                exchange="",
                routing_key=queue_name,
                body=message.encode(),
                properties=pika.BasicProperties(
                    delivery_mode=2,
                    priority=message.options.get("broker_priority"),
                ),
            )
        except AMQPError:
            # The original delivery still reaches the XQ, without the final options.
            logger.exception(
                "Could not publish dead letter %s to %s, rejecting delivery",
                message.message_id,
                queue_name,
            )
            message.fail()

    def _policy_for(self, broker: dramatiq.Broker, message: Message) -> RetryPolicy:
        try:
            actor = broker.get_actor(message.actor_name)
        except dramatiq.ActorNotFound:
            return self.policy
        max_attempts = actor.options.get("max_attempts")
        if max_attempts is None:
            return self.policy
        return RetryPolicy(
            max_attempts=max_attempts,
            base_delay_ms=self.policy.base_delay_ms,
            multiplier=self.policy.multiplier,
            max_delay_ms=self.policy.max_delay_ms,
            non_retryable=self.policy.non_retryable,
        )
