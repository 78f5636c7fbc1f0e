# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for the retry policy and its middleware."""

import json
from unittest.mock import MagicMock

import dramatiq
from dramatiq.broker import MessageProxy
from dramatiq.brokers.rabbitmq import RabbitmqBroker
from pika.exceptions import AMQPConnectionError

from src.core.config.settings import RetrySettings
from src.domains.tuition.errors import (
    DatastoreTimeoutError,
    InvalidPaymentDataError,
    LedgerConflictError,
)
from src.infrastructure.background.middleware.retry import (
    ATTEMPTS_KEY,
    DISPOSITION_KEY,
    FAILED_TRANSIENT,
    LAST_ERROR_KEY,
    RetryPolicy,
    RetryPolicyMiddleware,
)


def _message(options: dict | None = None) -> MagicMock:
    message = MagicMock()
    message.message_id = "msg-1"
    message.actor_name = "handle_transaction_created"
    message.queue_name = "payiskoul.transaction.queue"
    message.options = options if options is not None else {}
    return message


def _broker(actor_options: dict | None = None) -> MagicMock:
    broker = MagicMock()
    broker.get_actor.return_value.options = actor_options or {}
    return broker


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_default_backoff_doubles(self) -> None:
        """Test the default delays are 1s then 2s."""
        policy = RetryPolicy()

        assert policy.backoff_ms(1) == 1000
        assert policy.backoff_ms(2) == 2000
        assert policy.backoff_ms(3) == 4000

    def test_backoff_is_capped(self) -> None:
        """Test a single delay never exceeds max_delay_ms."""
        policy = RetryPolicy(base_delay_ms=1000, multiplier=10.0, max_delay_ms=5000)

        assert policy.backoff_ms(4) == 5000

    def test_three_attempts_by_default(self) -> None:
        """Test a message gets two retries after its first attempt."""
        policy = RetryPolicy()
        error = LedgerConflictError("conflict")

        assert policy.should_retry(error, 1) is True
        assert policy.should_retry(error, 2) is True
        assert policy.should_retry(error, 3) is False

    def test_permanent_errors_are_not_retried(self) -> None:
        """Test business errors never earn a retry."""
        policy = RetryPolicy()

        assert policy.should_retry(InvalidPaymentDataError("bad"), 1) is False

    def test_unknown_errors_are_retried(self) -> None:
        """Test unclassified exceptions count as transient."""
        assert RetryPolicy().should_retry(ConnectionError("reset"), 1) is True

    def test_from_settings(self) -> None:
        """Test building a policy from settings."""
        settings = RetrySettings(max_attempts=5, base_delay_ms=200, multiplier=3.0, max_delay_ms=900)

        policy = RetryPolicy.from_settings(settings)

        assert policy.max_attempts == 5
        assert [policy.backoff_ms(n) for n in (1, 2, 3)] == [200, 600, 900]


class TestRetryPolicyMiddleware:
    """Tests for RetryPolicyMiddleware routing."""

    def test_success_is_left_alone(self) -> None:
        """Test messages without an exception are not touched."""
        middleware = RetryPolicyMiddleware()
        broker = _broker()
        message = _message()

        middleware.after_process_message(broker, message, result={"disposition": "CONFIRMED"})

        broker.enqueue.assert_not_called()
        message.fail.assert_not_called()
        assert message.options == {}

    def test_first_failure_is_retried_with_backoff(self) -> None:
        """Test a transient failure is re-enqueued after the base delay."""
        middleware = RetryPolicyMiddleware(RetryPolicy())
        broker = _broker()
        message = _message()

        middleware.after_process_message(broker, message, exception=DatastoreTimeoutError("slow"))

        broker.enqueue.assert_called_once_with(message, delay=1000)
        message.fail.assert_not_called()
        assert message.options[ATTEMPTS_KEY] == 1
        assert message.options[LAST_ERROR_KEY] == "DatastoreTimeoutError: slow"

    def test_second_failure_doubles_delay(self) -> None:
        """Test the delay grows with the attempt count."""
        middleware = RetryPolicyMiddleware(RetryPolicy())
        broker = _broker()
        message = _message({ATTEMPTS_KEY: 1})

        middleware.after_process_message(broker, message, exception=DatastoreTimeoutError("slow"))

        broker.enqueue.assert_called_once_with(message, delay=2000)

    def test_exhausted_attempts_dead_letter(self) -> None:
        """Test the third failure fails the message with its disposition."""
        middleware = RetryPolicyMiddleware(RetryPolicy())
        broker = _broker()
        message = _message({ATTEMPTS_KEY: 2})

        middleware.after_process_message(broker, message, exception=LedgerConflictError("conflict"))

        broker.enqueue.assert_not_called()
        message.fail.assert_called_once_with()
        assert message.options[ATTEMPTS_KEY] == 3
        assert message.options[DISPOSITION_KEY] == FAILED_TRANSIENT

    def test_escaped_permanent_error_dead_letters_immediately(self) -> None:
        """Test a permanent error is not retried even on the first attempt."""
        middleware = RetryPolicyMiddleware()
        broker = _broker()
        message = _message()

        middleware.after_process_message(broker, message, exception=InvalidPaymentDataError("bad"))

        broker.enqueue.assert_not_called()
        message.fail.assert_called_once_with()

    def test_actor_max_attempts_overrides_policy(self) -> None:
        """Test the max_attempts actor option wins over the policy."""
        middleware = RetryPolicyMiddleware(RetryPolicy(max_attempts=3))
        broker = _broker({"max_attempts": 1})
        message = _message()

        middleware.after_process_message(broker, message, exception=RuntimeError("boom"))

        message.fail.assert_called_once_with()

    def test_unknown_actor_uses_policy(self) -> None:
        """Test the policy applies when the actor is not registered."""
        middleware = RetryPolicyMiddleware(RetryPolicy(base_delay_ms=50))
        broker = _broker()
        broker.get_actor.side_effect = dramatiq.ActorNotFound("gone")
        message = _message()

        middleware.after_process_message(broker, message, exception=RuntimeError("boom"))

        broker.enqueue.assert_called_once_with(message, delay=50)

    def test_declares_actor_options(self) -> None:
        """Test the middleware accepts its actor option."""
        assert RetryPolicyMiddleware().actor_options == {"max_attempts"}


class TestRabbitmqDeadLetters:
    """Tests for dead-lettering on the RabbitMQ broker."""

    @staticmethod
    def _rabbitmq_broker() -> MagicMock:
        broker = MagicMock(spec=RabbitmqBroker)
        broker.get_actor.return_value.options = {}
        return broker

    @staticmethod
    def _proxy(options: dict) -> MessageProxy:
        message = dramatiq.Message(
            queue_name="payiskoul.transaction.queue",
            actor_name="handle_transaction_created",
            args=({"eventId": "evt-1"},),
            kwargs={},
            options=options,
        )
        return MessageProxy(message)

    def _published(self, broker: MagicMock) -> tuple[str, dict]:
        broker.channel.basic_publish.assert_called_once()
        call = broker.channel.basic_publish.call_args.kwargs
        return call["routing_key"], json.loads(call["body"].decode("utf-8"))

    def test_dead_letter_body_carries_final_options(self) -> None:
        """Test the bytes sent to the XQ include the last error and disposition."""
        middleware = RetryPolicyMiddleware(RetryPolicy())
        broker = self._rabbitmq_broker()
        message = self._proxy({ATTEMPTS_KEY: 2, LAST_ERROR_KEY: "LedgerConflictError: earlier"})

        middleware.after_process_message(broker, message, exception=LedgerConflictError("conflict"))

        routing_key, body = self._published(broker)
        assert routing_key == "payiskoul.transaction.queue.XQ"
        assert body["message_id"] == message.message_id
        assert body["args"] == [{"eventId": "evt-1"}]
        assert body["options"][ATTEMPTS_KEY] == 3
        assert body["options"][LAST_ERROR_KEY] == "LedgerConflictError: conflict"
        assert body["options"][DISPOSITION_KEY] == FAILED_TRANSIENT
        assert message.failed is False

    def test_first_attempt_dead_letter_carries_last_error(self) -> None:
        """Test a non-retryable first failure still records its error in the XQ."""
        middleware = RetryPolicyMiddleware()
        broker = self._rabbitmq_broker()
        message = self._proxy({})

        middleware.after_process_message(broker, message, exception=InvalidPaymentDataError("bad"))

        _, body = self._published(broker)
        assert body["options"][ATTEMPTS_KEY] == 1
        assert body["options"][LAST_ERROR_KEY] == "InvalidPaymentDataError: bad"
        broker.enqueue.assert_not_called()

    def test_publish_failure_rejects_delivery(self) -> None:
        """Test the delivery is still dead-lettered when the XQ publish fails."""
        middleware = RetryPolicyMiddleware()
        broker = self._rabbitmq_broker()
        broker.channel.basic_publish.side_effect = AMQPConnectionError("closed")
        message = self._proxy({ATTEMPTS_KEY: 2})

        middleware.after_process_message(broker, message, exception=RuntimeError("boom"))

        assert message.failed is True
