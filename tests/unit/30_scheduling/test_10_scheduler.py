# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for the scheduled-send engine."""

import asyncio
from datetime import datetime, timedelta, timezone

import aiosqlite
import pytest
import pytest_asyncio

from inbound_relay.errors import InvalidInput, InvalidState, NotFound, TooSoon
from inbound_relay.models import ScheduleRequest, ScheduleStatus
from inbound_relay.persistence import Persistence
from inbound_relay.prometheus import RelayMetrics
from inbound_relay.scheduler import ScheduledSendEngine

FIXED_NOW = datetime(2025, 7, 1, 12, 0, tzinfo=timezone.utc)


def _request(**kwargs) -> ScheduleRequest:
    data = {
        "from": "News <news@example.com>",
        "to": ["reader@example.org"],
        "subject": "Digest",
        "text": "Weekly news",
        "scheduled_at": "in 5 minutes",
    }
    data.update(kwargs)
    return ScheduleRequest.model_validate(data)


@pytest_asyncio.fixture
async def engine(tmp_path, transport):
    persistence = Persistence(str(tmp_path / "sched.db"))
    await persistence.init_db()
    return ScheduledSendEngine(persistence, transport, metrics=RelayMetrics())


def _count(engine, outcome):
    return engine.metrics.registry.get_sample_value("irl_scheduled_total", {"outcome": outcome}) or 0


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_stores_scheduled(self, engine):
        record = await engine.create(_request(), now=FIXED_NOW)
        assert record.status == ScheduleStatus.SCHEDULED
        assert record.scheduled_at == FIXED_NOW + timedelta(minutes=5)
        assert record.attempts == 0
        assert record.message.from_addr == "News <news@example.com>"
        assert _count(engine, "created") == 1

    @pytest.mark.asyncio
    async def test_idempotency_key_returns_existing(self, engine):
        """A repeated key returns the first record, even with another time."""
        first = await engine.create(_request(idempotency_key="k1"), now=FIXED_NOW)
        second = await engine.create(
            _request(idempotency_key="k1", scheduled_at="in 2 hours"), now=FIXED_NOW
        )
        assert second.id == first.id
        assert len(await engine.list_by_status()) == 1

    @pytest.mark.asyncio
    async def test_too_soon(self, engine):
        with pytest.raises(TooSoon):
            await engine.create(_request(scheduled_at=FIXED_NOW.isoformat()), now=FIXED_NOW)
        assert await engine.list_by_status() == []

    @pytest.mark.asyncio
    async def test_message_without_recipients_rejected(self, engine):
        with pytest.raises(InvalidInput):
            await engine.create(_request(to=[]), now=FIXED_NOW)

    @pytest.mark.asyncio
    async def test_get_unknown(self, engine):
        with pytest.raises(NotFound):
            await engine.get("missing")


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_scheduled(self, engine):
        record = await engine.create(_request(), now=FIXED_NOW)
        cancelled = await engine.cancel(record.id, now=FIXED_NOW)
        assert cancelled.status == ScheduleStatus.CANCELLED
        assert cancelled.cancelled_at is not None

    @pytest.mark.asyncio
    async def test_cancel_twice_reports_state(self, engine):
        """Cancelling a terminal item raises InvalidState carrying its status."""
        record = await engine.create(_request(), now=FIXED_NOW)
        await engine.cancel(record.id)
        with pytest.raises(InvalidState) as excinfo:
            await engine.cancel(record.id)
        assert excinfo.value.status == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_sent(self, engine):
        record = await engine.create(_request(), now=FIXED_NOW)
        await engine.process_due_sends(FIXED_NOW + timedelta(minutes=10))
        with pytest.raises(InvalidState):
            await engine.cancel(record.id)

    @pytest.mark.asyncio
    async def test_cancelled_item_is_not_sent(self, engine, transport):
        record = await engine.create(_request(), now=FIXED_NOW)
        await engine.cancel(record.id)
        result = await engine.process_due_sends(FIXED_NOW + timedelta(minutes=10))
        assert result.processed == 0
        assert transport.sent == []


class TestProcessDue:
    @pytest.mark.asyncio
    async def test_only_due_items_are_sent(self, engine, transport):
        soon = await engine.create(_request(), now=FIXED_NOW)
        later = await engine.create(_request(scheduled_at="in 3 hours"), now=FIXED_NOW)
        result = await engine.process_due_sends(FIXED_NOW + timedelta(minutes=6))
        assert (result.processed, result.sent, result.failed) == (1, 1, 0)
        assert (await engine.get(soon.id)).status == ScheduleStatus.SENT
        assert (await engine.get(later.id)).status == ScheduleStatus.SCHEDULED
        sent = transport.sent[0]
        assert sent["sender"] == "news@example.com"
        assert sent["recipients"] == ["reader@example.org"]

    @pytest.mark.asyncio
    async def test_bcc_is_envelope_only(self, engine, transport):
        await engine.create(_request(bcc=["hidden@example.org"]), now=FIXED_NOW)
        await engine.process_due_sends(FIXED_NOW + timedelta(minutes=6))
        sent = transport.sent[0]
        assert "hidden@example.org" in sent["recipients"]
        assert b"hidden@example.org" not in sent["raw"]

    @pytest.mark.asyncio
    async def test_partial_failure(self, engine, transport):
        """One failing item does not stop the others."""
        transport.fail_for = {"bounce@example.org"}
        good = await engine.create(_request(), now=FIXED_NOW)
        bad = await engine.create(_request(to=["bounce@example.org"]), now=FIXED_NOW)
        result = await engine.process_due_sends(FIXED_NOW + timedelta(minutes=6))
        assert (result.processed, result.sent, result.failed) == (2, 1, 1)
        assert result.errors == [{"id": bad.id, "error": "mailbox unavailable"}]
        failed = await engine.get(bad.id)
        assert failed.status == ScheduleStatus.FAILED
        assert failed.failed_reason == "mailbox unavailable"
        assert failed.attempts == 1
        sent = await engine.get(good.id)
        assert sent.status == ScheduleStatus.SENT
        assert sent.provider_message_id
        assert _count(engine, "sent") == 1
        assert _count(engine, "failed") == 1

    @pytest.mark.asyncio
    async def test_storage_error_does_not_abort_batch(self, engine, transport):
        """A failed status write is reported and the remaining items still go out."""
        first = await engine.create(_request(), now=FIXED_NOW)
        second = await engine.create(_request(to=["other@example.org"]), now=FIXED_NOW)
        original = engine.persistence.update_status

        async def flaky(schedule_id, from_status, to_status, **fields):
            if schedule_id == first.id and to_status == ScheduleStatus.SENT.value:
                raise aiosqlite.OperationalError("database is locked")
            return await original(schedule_id, from_status, to_status, **fields)

        engine.persistence.update_status = flaky
        result = await engine.process_due_sends(FIXED_NOW + timedelta(minutes=6))
        assert (result.processed, result.sent, result.failed) == (2, 2, 0)
        assert result.errors == [{"id": first.id, "error": "status update failed: database is locked"}]
        assert len(transport.sent) == 2
        assert (await engine.get(second.id)).status == ScheduleStatus.SENT

    @pytest.mark.asyncio
    async def test_concurrent_processors_send_once(self, engine, transport):
        """Two overlapping runs claim each item exactly once."""
        for _ in range(3):
            await engine.create(_request(), now=FIXED_NOW)
        due = FIXED_NOW + timedelta(minutes=6)
        first, second = await asyncio.gather(engine.process_due_sends(due), engine.process_due_sends(due))
        assert first.sent + second.sent == 3
        assert len(transport.sent) == 3

    @pytest.mark.asyncio
    async def test_list_by_status(self, engine):
        record = await engine.create(_request(), now=FIXED_NOW)
        await engine.create(_request(), now=FIXED_NOW)
        await engine.cancel(record.id)
        assert [r.id for r in await engine.list_by_status("cancelled")] == [record.id]
        assert len(await engine.list_by_status(ScheduleStatus.SCHEDULED)) == 1
        assert len(await engine.list_by_status(limit=1)) == 1


class TestTimer:
    @pytest.mark.asyncio
    async def test_start_wake_stop(self, engine):
        """The internal timer runs a cycle when woken and stops cleanly."""
        engine.interval_seconds = 3600
        calls = []
        original = engine.process_due_sends

        async def counting(now=None):
            calls.append(now)
            return await original(now)

        engine.process_due_sends = counting
        await engine.start()
        await asyncio.sleep(0.05)
        engine.wake()
        await asyncio.sleep(0.05)
        await engine.stop()
        assert len(calls) >= 2
