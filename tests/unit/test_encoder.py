# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for the upstream message encoder."""

import json

import pytest
from dramatiq.errors import DecodeError

from src.infrastructure.background.encoder import (
    NOTIFICATION_ACTOR,
    TRANSACTION_ACTOR,
    TuitionEventEncoder,
)

TRANSACTION_QUEUE = "payiskoul.transaction.queue"
NOTIFICATION_QUEUE = "payiskoul.tuitions.queue"


@pytest.fixture
def encoder() -> TuitionEventEncoder:
    """Provide an encoder bound to the default queues."""
    return TuitionEventEncoder(TRANSACTION_QUEUE, NOTIFICATION_QUEUE)


def _bytes(body: object) -> bytes:
    return json.dumps(body).encode("utf-8")


class TestTuitionEventEncoder:
    """Tests for TuitionEventEncoder.decode."""

    def test_native_messages_pass_through(self, encoder: TuitionEventEncoder) -> None:
        """Test Dramatiq envelopes are returned unchanged."""
        envelope = {
            "queue_name": TRANSACTION_QUEUE,
            "actor_name": TRANSACTION_ACTOR,
            "args": [{"eventId": "evt-1"}],
            "kwargs": {},
            "options": {"attempts": 1},
            "message_id": "evt-1",
            "message_timestamp": 1,
        }

        assert encoder.decode(encoder.encode(envelope)) == envelope

    def test_transaction_event_is_wrapped(self, encoder: TuitionEventEncoder, transaction_event: dict) -> None:
        """Test a TransactionCreated body becomes a message for its actor."""
        data = encoder.decode(_bytes(transaction_event))

        assert data["actor_name"] == TRANSACTION_ACTOR
        assert data["queue_name"] == TRANSACTION_QUEUE
        assert data["args"] == [transaction_event]
        assert data["kwargs"] == {}
        assert data["message_id"] == "evt-1"

    def test_transaction_event_without_id_gets_one(self, encoder: TuitionEventEncoder, transaction_event: dict) -> None:
        """Test a missing eventId still yields a message id."""
        del transaction_event["eventId"]

        data = encoder.decode(_bytes(transaction_event))

        assert data["message_id"]

    def test_notification_is_wrapped(self, encoder: TuitionEventEncoder, make_notification) -> None:
        """Test a payment notification body becomes a message for its actor."""
        notification = make_notification()

        data = encoder.decode(_bytes(notification))

        assert data["actor_name"] == NOTIFICATION_ACTOR
        assert data["queue_name"] == NOTIFICATION_QUEUE
        assert data["args"] == [notification]

    def test_unrecognized_object(self, encoder: TuitionEventEncoder) -> None:
        """Test objects of unknown shape are rejected."""
        with pytest.raises(DecodeError, match="unrecognized message"):
            encoder.decode(_bytes({"hello": "world"}))

    def test_non_object(self, encoder: TuitionEventEncoder) -> None:
        """Test JSON that is not an object is rejected."""
        with pytest.raises(DecodeError, match="expected a JSON object"):
            encoder.decode(_bytes(["payload"]))

    def test_invalid_json(self, encoder: TuitionEventEncoder) -> None:
        """Test bytes that are not JSON are rejected."""
        with pytest.raises(DecodeError):
            encoder.decode(b"\xff not json")
