# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Dramatiq encoder for upstream payment messages.

The transaction service publishes plain JSON bodies, not Dramatiq message
envelopes. TuitionEventEncoder wraps them on decode so Dramatiq can route
them to the right actor:

- bodies with ``actor_name`` are native Dramatiq messages (our own retries)
- bodies with ``payload`` are TransactionCreated events
- bodies with ``enrollmentId`` and ``reference`` are payment notifications

Anything else raises DecodeError, and the consumer rejects the message to
the dead letter queue.
"""

import json
import logging
import time
from typing import Any
from uuid import uuid4

from dramatiq.encoder import JSONEncoder, MessageData
from dramatiq.errors import DecodeError

logger = logging.getLogger(__name__)

TRANSACTION_ACTOR = "handle_transaction_created"
NOTIFICATION_ACTOR = "handle_payment_notification"


class TuitionEventEncoder(JSONEncoder):
    """JSON encoder that accepts foreign payment messages.

    Attributes:
        transaction_queue: Queue of the TransactionCreated actor.
        notification_queue: Queue of the payment notification actor.
    """

    def __init__(self, transaction_queue: str, notification_queue: str) -> None:
        self.transaction_queue = transaction_queue
        self.notification_queue = notification_queue

    def decode(self, data: bytes) -> MessageData:
        try:
            body = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DecodeError(f"failed to decode message {data!r}", data, e) from None

        if not isinstance(body, dict):
            raise DecodeError(
                f"expected a JSON object, got {type(body).__name__}",
                data,
                TypeError(type(body).__name__),
            )

        if "actor_name" in body:
            return body

        if "payload" in body:
            return self._wrap(body, self.transaction_queue, TRANSACTION_ACTOR, body.get("eventId"))

        if "enrollmentId" in body and "reference" in body:
            return self._wrap(body, self.notification_queue, NOTIFICATION_ACTOR, None)

        raise DecodeError(
            f"unrecognized message with keys {sorted(body)}",
            data,
            ValueError("unrecognized message"),
        )

    def _wrap(
        self,
        body: dict[str, Any],
        queue_name: str,
        actor_name: str,
        message_id: Any,
    ) -> MessageData:
        logger.debug("Wrapping upstream message for %s on %s", actor_name, queue_name)
        return {
            "queue_name": queue_name,
            "actor_name": actor_name,
            "args": [body],
            "kwargs": {},
            "options": {},
            "message_id": str(message_id) if message_id else str(uuid4()),
            "message_timestamp": int(time.time() * 1000),
        }
