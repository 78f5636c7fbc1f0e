# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Integration tests for the transactional outbox."""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from src.domains.tuition.errors import DatastoreTimeoutError, EventPublishError
from src.infrastructure.database.models import OutboxEvent
from src.infrastructure.events.outbox import TransactionalOutbox
from src.infrastructure.events.publisher import StubEventPublisher
from src.models.tuition import PaymentStatus, TuitionPaymentConfirmed

pytestmark = pytest.mark.integration


def _confirmation() -> TuitionPaymentConfirmed:
    return TuitionPaymentConfirmed(
        transaction_id="TX-1",
        student_matricule="PI-24-0001",
        institution_id="I1",
        amount_paid=Decimal("100000"),
        new_status=PaymentStatus.PARTIALLY_PAID,
        remaining_amount=Decimal("150000"),
        account_id="ACC1",
    )


async def _stage(sessionmaker, outbox: TransactionalOutbox, reference: str) -> TuitionPaymentConfirmed:
    event = _confirmation()
    async with sessionmaker() as session:
        await outbox.stage(session, event, reference)
        await session.commit()
    return event


async def _rows(sessionmaker) -> list[OutboxEvent]:
    async with sessionmaker() as session:
        result = await session.execute(select(OutboxEvent).order_by(OutboxEvent.created_at))
        return list(result.scalars().all())


class TestTransactionalOutbox:
    """Tests for TransactionalOutbox."""

    @pytest.mark.asyncio
    async def test_stage_does_not_publish(
        self, sessionmaker, outbox: TransactionalOutbox, stub_publisher: StubEventPublisher
    ) -> None:
        """Test staging only writes the row."""
        event = await _stage(sessionmaker, outbox, "R1")

        rows = await _rows(sessionmaker)
        assert len(rows) == 1
        assert rows[0].event_id == event.event_id
        assert rows[0].routing_key == "tuition.payment.confirmed"
        assert rows[0].payload == event.to_message()
        assert rows[0].is_published is False
        assert stub_publisher.published == []

    @pytest.mark.asyncio
    async def test_rolled_back_stage_leaves_nothing(self, sessionmaker, outbox: TransactionalOutbox) -> None:
        """Test a staged event disappears with its transaction."""
        async with sessionmaker() as session:
            await outbox.stage(session, _confirmation(), "R1")
            await session.rollback()

        assert await _rows(sessionmaker) == []

    @pytest.mark.asyncio
    async def test_relay_publishes_once(
        self, sessionmaker, outbox: TransactionalOutbox, stub_publisher: StubEventPublisher
    ) -> None:
        """Test relaying marks rows so they are not sent twice."""
        event = await _stage(sessionmaker, outbox, "R1")
        await _stage(sessionmaker, outbox, "R2")

        assert await outbox.relay("R1") == 1
        assert await outbox.relay("R1") == 0

        assert [payload["eventId"] for _, payload in stub_publisher.published] == [event.event_id]
        pending = [row for row in await _rows(sessionmaker) if not row.is_published]
        assert [row.reference for row in pending] == ["R2"]

    @pytest.mark.asyncio
    async def test_relay_failure_keeps_row_pending(self, sessionmaker, stub_publisher: StubEventPublisher) -> None:
        """Test a failed relay raises and leaves the row for later."""

        async def fail(*args, **kwargs) -> None:
            raise EventPublishError("Broker unavailable")

        outbox = TransactionalOutbox(sessionmaker, stub_publisher)
        await _stage(sessionmaker, outbox, "R1")
        stub_publisher.publish_payload = fail  # type: ignore[method-assign]

        with pytest.raises(EventPublishError):
            await outbox.relay("R1")

        rows = await _rows(sessionmaker)
        assert rows[0].is_published is False

    @pytest.mark.asyncio
    async def test_relay_pending_sweeps_all_references(
        self, sessionmaker, outbox: TransactionalOutbox, stub_publisher: StubEventPublisher
    ) -> None:
        """Test the sweeper publishes every pending row."""
        await _stage(sessionmaker, outbox, "R1")
        await _stage(sessionmaker, outbox, "R2")

        assert await outbox.relay_pending() == 2
        assert await outbox.relay_pending() == 0
        assert len(stub_publisher.published) == 2

    @pytest.mark.asyncio
    async def test_relay_pending_respects_batch_size(
        self, sessionmaker, stub_publisher: StubEventPublisher
    ) -> None:
        """Test one sweep handles at most one batch."""
        outbox = TransactionalOutbox(sessionmaker, stub_publisher, batch_size=1)
        await _stage(sessionmaker, outbox, "R1")
        await _stage(sessionmaker, outbox, "R2")

        assert await outbox.relay_pending() == 1
        assert await outbox.relay_pending() == 1
        assert await outbox.relay_pending() == 0

    @pytest.mark.asyncio
    async def test_relay_pending_logs_failures(
        self, sessionmaker, outbox: TransactionalOutbox, stub_publisher: StubEventPublisher
    ) -> None:
        """Test the sweeper does not raise on publish failures."""
        await _stage(sessionmaker, outbox, "R1")

        async def fail(*args, **kwargs) -> None:
            raise EventPublishError("Broker unavailable")

        stub_publisher.publish_payload = fail  # type: ignore[method-assign]

        assert await outbox.relay_pending() == 0
        rows = await _rows(sessionmaker)
        assert rows[0].is_published is False

    @pytest.mark.asyncio
    async def test_stalled_query_times_out(
        self, sessionmaker, stub_publisher: StubEventPublisher, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test a stalled outbox query is reported as a datastore timeout."""
        outbox = TransactionalOutbox(sessionmaker, stub_publisher, timeout=0.01)

        async def stalled(stmt) -> list[OutboxEvent]:
            await asyncio.sleep(1)
            return []

        monkeypatch.setattr(outbox, "_fetch", stalled)

        with pytest.raises(DatastoreTimeoutError, match="Outbox relay"):
            await outbox.relay("R1")
        with pytest.raises(DatastoreTimeoutError, match="Outbox sweep"):
            await outbox.relay_pending()
        assert stub_publisher.published == []
