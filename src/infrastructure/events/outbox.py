# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Transactional outbox for tuition events.

A confirmation event is staged in ``tuition_outbox`` inside the transaction
that updates the ledger, then relayed to the broker after commit. If the
relay fails the ledger change is still durable; the message is retried, the
dedup guard reports the reference as processed, and the retry only relays
the pending row. Events therefore reach the broker at least once and the
payment is applied exactly once.

relay_pending() sweeps rows whose worker died between commit and relay.
"""

import logging

from sqlalchemy import Select, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.domains.tuition.errors import EventPublishError
from src.domains.tuition.ledger import bounded
from src.infrastructure.database.connection import session_scope
from src.infrastructure.database.models import OutboxEvent
from src.infrastructure.events.publisher import EventPublisher
from src.models.tuition import TuitionPaymentEvent
from src.utils.datetime import utc_now

logger = logging.getLogger(__name__)


class TransactionalOutbox:
    """Stages events with domain changes and relays them after commit.

    Attributes:
        publisher: Publisher used to relay staged events.
        batch_size: Maximum rows handled per relay_pending() call.
        timeout: Seconds allowed for each outbox query, or None.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        publisher: EventPublisher,
        batch_size: int = 100,
        timeout: float | None = None,
    ) -> None:
        self._sessionmaker = sessionmaker
        self.publisher = publisher
        self.batch_size = batch_size
        self.timeout = timeout

    async def stage(
        self,
        session: AsyncSession,
        event: TuitionPaymentEvent,
        reference: str | None,
    ) -> OutboxEvent:
        """Add an event to the caller's transaction.

        Args:
            session: Session of the enclosing unit of work.
            event: Event to publish once the transaction commits.
            reference: Payment reference the event belongs to.

        Returns:
            The staged outbox row.
        """
        row = OutboxEvent(
            event_id=event.event_id,
            reference=reference,
            event_type=event.event_type,
            routing_key=self.publisher.routing_key_for(event),
            payload=event.to_message(),
        )
        session.add(row)
        return row

    async def relay(self, reference: str) -> int:
        """Publish the unpublished events of one payment reference.

        Args:
            reference: Payment reference.

        Returns:
            Number of events published.

        Raises:
            EventPublishError: If the broker does not accept an event. Rows
                published before the failure stay marked.
        """
        stmt = (
            select(OutboxEvent)
            .where(
                OutboxEvent.reference == reference,
                OutboxEvent.published_at.is_(None),
            )
            .order_by(OutboxEvent.created_at)
        )
        rows = await bounded(self._fetch(stmt), self.timeout, "Outbox relay")

        for row in rows:
            await self._publish(row)
        return len(rows)

    async def relay_pending(self) -> int:
        """Publish a batch of unpublished events, oldest first.

        A failing event is logged and left for the next sweep.

        Returns:
            Number of events published.
        """
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.published_at.is_(None))
            .order_by(OutboxEvent.created_at)
            .limit(self.batch_size)
        )
        rows = await bounded(self._fetch(stmt), self.timeout, "Outbox sweep")

        if not rows:
            return 0

        published = 0
        for row in rows:
            try:
                await self._publish(row)
                published += 1
            except EventPublishError as e:
                logger.warning("Outbox event %s not relayed: %s", row.event_id, e.message)

        logger.info("Outbox sweep relayed %d of %d pending events", published, len(rows))
        return published

    async def _publish(self, row: OutboxEvent) -> None:
        await self.publisher.publish_payload(
            row.routing_key,
            row.payload,
            event_id=row.event_id,
            event_type=row.event_type,
        )
        await bounded(self._mark_published(row), self.timeout, "Outbox update")

    async def _fetch(self, stmt: Select[tuple[OutboxEvent]]) -> list[OutboxEvent]:
        async with session_scope(self._sessionmaker) as session:
            return list((await session.execute(stmt)).scalars().all())

    async def _mark_published(self, row: OutboxEvent) -> None:
        async with session_scope(self._sessionmaker) as session:
            await session.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id == row.id)
                .values(published_at=utc_now())
            )
