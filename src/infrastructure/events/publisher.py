# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Outbound tuition event publishers.

Confirmation and failure events go to the tuition exchange with one routing
key per event type. Two implementations share the EventPublisher interface:

- AmqpEventPublisher publishes on the pika channel of the Dramatiq RabbitMQ
  broker, so outbound events reuse the worker thread's connection and its
  publisher confirms.
- StubEventPublisher records events in memory and backs the StubBroker in
  tests and local runs.

Example:
    publisher = get_event_publisher()
    await publisher.publish(TuitionPaymentFailed(reason="Student not found"))
"""

import json
import logging
from typing import Any

import dramatiq
import pika
from pika.exceptions import AMQPChannelError, AMQPConnectionError, AMQPError

from src.core.config import get_settings
from src.core.config.settings import MessagingSettings
from src.domains.tuition.errors import EventPublishError
from src.infrastructure.events.types import EventTypes
from src.models.tuition import TuitionPaymentEvent

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"
PERSISTENT_DELIVERY_MODE = 2


def routing_keys_from_settings(messaging: MessagingSettings) -> dict[str, str]:
    """Map outbound event types to their configured routing keys."""
    return {
        EventTypes.Tuition.PAYMENT_CONFIRMED: messaging.confirmed_routing_key,
        EventTypes.Tuition.PAYMENT_FAILED: messaging.failed_routing_key,
    }


class EventPublisher:
    """Base class for outbound event publishers.

    Attributes:
        exchange: Exchange events are published to.
        routing_keys: Routing key per event type.
    """

    def __init__(self, exchange: str, routing_keys: dict[str, str]) -> None:
        self.exchange = exchange
        self.routing_keys = routing_keys

    def routing_key_for(self, event: TuitionPaymentEvent) -> str:
        """Get the routing key of an event.

        Raises:
            ValueError: If the event type has no routing key.
        """
        try:
            return self.routing_keys[event.event_type]
        except KeyError:
            raise ValueError(f"No routing key for event type {event.event_type}") from None

    async def publish(self, event: TuitionPaymentEvent) -> None:
        """Publish an event.

        Raises:
            EventPublishError: If the broker does not accept the event.
        """
        await self.publish_payload(
            self.routing_key_for(event),
            event.to_message(),
            event_id=event.event_id,
            event_type=event.event_type,
        )

    async def publish_payload(
        self,
        routing_key: str,
        payload: dict[str, Any],
        *,
        event_id: str,
        event_type: str,
    ) -> None:
        """Publish an already serialized event body.

        Used directly by the outbox relay, which stores bodies rather than
        event models.
        """
        raise NotImplementedError


class AmqpEventPublisher(EventPublisher):
    """Publishes events through the Dramatiq RabbitMQ broker's channel."""

    def __init__(
        self,
        broker: dramatiq.Broker,
        exchange: str,
        routing_keys: dict[str, str],
    ) -> None:
        super().__init__(exchange, routing_keys)
        self._broker = broker

    async def publish_payload(
        self,
        routing_key: str,
        payload: dict[str, Any],
        *,
        event_id: str,
        event_type: str,
    ) -> None:
        properties = pika.BasicProperties(
            content_type=JSON_CONTENT_TYPE,
            delivery_mode=PERSISTENT_DELIVERY_MODE,
            message_id=event_id,
            type=event_type,
        )
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")

        # BlockingChannel is thread-bound; this runs on the worker thread.
        try:
            self._broker.channel.basic_publish(
                exchange=self.exchange,
                routing_key=routing_key,
                body=body,
                properties=properties,
                mandatory=True,
            )
        except (AMQPConnectionError, AMQPChannelError) as e:
            self._reset_channel()
            raise EventPublishError(
                f"Broker unavailable while publishing {event_type}",
                {"event_id": event_id, "routing_key": routing_key},
            ) from e
        except AMQPError as e:
            raise EventPublishError(
                f"Broker rejected {event_type}: {type(e).__name__}",
                {"event_id": event_id, "routing_key": routing_key},
            ) from e

        logger.info(
            "Published %s %s to %s with routing key %s",
            event_type,
            event_id,
            self.exchange,
            routing_key,
        )

    def _reset_channel(self) -> None:
        try:
            del self._broker.channel
            del self._broker.connection
        except AttributeError:
            pass


class StubEventPublisher(EventPublisher):
    """In-memory publisher.

    Attributes:
        published: ``(routing_key, payload)`` pairs in publication order.
    """

    def __init__(self, exchange: str, routing_keys: dict[str, str]) -> None:
        super().__init__(exchange, routing_keys)
        self.published: list[tuple[str, dict[str, Any]]] = []

    async def publish_payload(
        self,
        routing_key: str,
        payload: dict[str, Any],
        *,
        event_id: str,
        event_type: str,
    ) -> None:
        self.published.append((routing_key, payload))
        logger.debug("Recorded %s %s (%s)", event_type, event_id, routing_key)

    def events_of_type(self, event_type: str) -> list[dict[str, Any]]:
        """Get recorded payloads of one event type."""
        return [payload for _, payload in self.published if payload.get("eventType") == event_type]

    def clear(self) -> None:
        """Forget recorded events."""
        self.published.clear()


# Singleton instance
_event_publisher: EventPublisher | None = None


def get_event_publisher() -> EventPublisher:
    """Get the publisher matching the configured broker.

    Returns:
        StubEventPublisher under the StubBroker, AmqpEventPublisher otherwise.
    """
    global _event_publisher
    if _event_publisher is None:
        from src.infrastructure.background.broker import get_broker_manager

        messaging = get_settings().messaging
        routing_keys = routing_keys_from_settings(messaging)
        manager = get_broker_manager()
        broker = manager.setup()
        if manager.is_stub:
            _event_publisher = StubEventPublisher(messaging.tuition_exchange, routing_keys)
        else:
            _event_publisher = AmqpEventPublisher(
                broker, messaging.tuition_exchange, routing_keys
            )
    return _event_publisher


def reset_event_publisher() -> None:
    """Reset the publisher singleton."""
    global _event_publisher
    _event_publisher = None
