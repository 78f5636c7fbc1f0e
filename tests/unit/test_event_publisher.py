# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for outbound event publishers."""

import json
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from pika.exceptions import AMQPConnectionError, NackError

from src.core.config.settings import MessagingSettings
from src.domains.tuition.errors import EventPublishError
from src.infrastructure.events.publisher import (
    AmqpEventPublisher,
    StubEventPublisher,
    routing_keys_from_settings,
)
from src.models.tuition import (
    PaymentStatus,
    TuitionPaymentConfirmed,
    TuitionPaymentFailed,
)

EXCHANGE = "payiskoul.tuition.exchange"
ROUTING_KEYS = {
    "TuitionPaymentConfirmed": "tuition.payment.confirmed",
    "TuitionPaymentFailed": "tuition.payment.failed",
}


def _confirmed() -> TuitionPaymentConfirmed:
    return TuitionPaymentConfirmed(
        transaction_id="TX-1",
        student_matricule="PI-24-0001",
        institution_id="I1",
        amount_paid=Decimal("100000"),
        new_status=PaymentStatus.PARTIALLY_PAID,
        remaining_amount=Decimal("150000"),
        account_id="ACC1",
    )


class TestRoutingKeys:
    """Tests for routing_keys_from_settings."""

    def test_maps_event_types(self) -> None:
        """Test each outbound event type gets its configured key."""
        keys = routing_keys_from_settings(MessagingSettings())

        assert keys == ROUTING_KEYS


class TestEventSerialization:
    """Tests for the outbound wire format."""

    def test_confirmed_message_uses_camel_case(self) -> None:
        """Test the confirmation serializes with camelCase keys."""
        message = _confirmed().to_message()

        assert message["eventType"] == "TuitionPaymentConfirmed"
        assert message["studentMatricule"] == "PI-24-0001"
        assert message["amountPaid"] == "100000"
        assert message["newStatus"] == "PARTIALLY_PAID"
        assert message["remainingAmount"] == "150000"
        assert message["accountId"] == "ACC1"
        assert message["eventId"]
        assert message["timestamp"]

    def test_every_event_gets_a_fresh_id(self) -> None:
        """Test event ids are never reused."""
        assert _confirmed().event_id != _confirmed().event_id


class TestAmqpEventPublisher:
    """Tests for AmqpEventPublisher."""

    @pytest.mark.asyncio
    async def test_publishes_persistent_json(self) -> None:
        """Test the event is published on the broker channel."""
        broker = MagicMock()
        publisher = AmqpEventPublisher(broker, EXCHANGE, ROUTING_KEYS)
        event = _confirmed()

        await publisher.publish(event)

        kwargs = broker.channel.basic_publish.call_args.kwargs
        assert kwargs["exchange"] == EXCHANGE
        assert kwargs["routing_key"] == "tuition.payment.confirmed"
        assert kwargs["mandatory"] is True
        assert json.loads(kwargs["body"]) == event.to_message()
        assert kwargs["properties"].delivery_mode == 2
        assert kwargs["properties"].content_type == "application/json"
        assert kwargs["properties"].message_id == event.event_id
        assert kwargs["properties"].type == "TuitionPaymentConfirmed"

    @pytest.mark.asyncio
    async def test_connection_error_resets_channel(self) -> None:
        """Test a lost connection raises and drops the cached channel."""
        broker = MagicMock()
        broker.channel.basic_publish.side_effect = AMQPConnectionError("down")
        publisher = AmqpEventPublisher(broker, EXCHANGE, ROUTING_KEYS)

        with pytest.raises(EventPublishError, match="Broker unavailable"):
            await publisher.publish(TuitionPaymentFailed(reason="Student not found"))

        assert not hasattr(broker, "channel")

    @pytest.mark.asyncio
    async def test_nack_raises(self) -> None:
        """Test a broker nack raises a publish error."""
        broker = MagicMock()
        broker.channel.basic_publish.side_effect = NackError([])
        publisher = AmqpEventPublisher(broker, EXCHANGE, ROUTING_KEYS)

        with pytest.raises(EventPublishError, match="Broker rejected"):
            await publisher.publish(TuitionPaymentFailed(reason="Student not found"))

    @pytest.mark.asyncio
    async def test_unknown_event_type(self) -> None:
        """Test events without a routing key are refused."""
        publisher = AmqpEventPublisher(MagicMock(), EXCHANGE, {})

        with pytest.raises(ValueError, match="No routing key"):
            await publisher.publish(_confirmed())


class TestStubEventPublisher:
    """Tests for StubEventPublisher."""

    @pytest.mark.asyncio
    async def test_records_events(self) -> None:
        """Test events are recorded with their routing key."""
        publisher = StubEventPublisher(EXCHANGE, ROUTING_KEYS)

        await publisher.publish(_confirmed())
        await publisher.publish(TuitionPaymentFailed(reason="Institution is inactive"))

        assert [key for key, _ in publisher.published] == [
            "tuition.payment.confirmed",
            "tuition.payment.failed",
        ]
        failed = publisher.events_of_type("TuitionPaymentFailed")
        assert len(failed) == 1
        assert failed[0]["reason"] == "Institution is inactive"

    @pytest.mark.asyncio
    async def test_clear(self) -> None:
        """Test clearing recorded events."""
        publisher = StubEventPublisher(EXCHANGE, ROUTING_KEYS)
        await publisher.publish(_confirmed())

        publisher.clear()

        assert publisher.published == []
