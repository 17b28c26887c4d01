# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Scheduled-send engine.

Deferred sends move through a one-way state machine::

    scheduled ──► processing ──► sent
        │                  └───► failed
        └──► cancelled

``processing`` is held only while a processor owns the item. It is entered
through the conditional transition ``scheduled → processing``, so when
several processors (or overlapping calls) scan the same due items, each item
is claimed and sent exactly once.

:meth:`ScheduledSendEngine.process_due_sends` is a plain coroutine that any
trigger can call: an external cron hitting the API, the CLI, the internal
timer started by :meth:`ScheduledSendEngine.start`, or a test.

Example:
    Scheduling and processing::

        engine = ScheduledSendEngine(persistence, transport)
        record = await engine.create(ScheduleRequest(
            from_addr="news@example.com",
            to=["reader@example.org"],
            subject="Weekly digest",
            text="...",
            scheduled_at="tomorrow at 9am",
            timezone="Europe/Rome",
            idempotency_key="digest-2025-07",
        ))
        result = await engine.process_due_sends()
"""

from __future__ import annotations

import asyncio
import math
import uuid
from datetime import datetime, timedelta, timezone
from email.utils import parseaddr
from typing import Any

from .date_parser import MIN_LEAD, parse_schedule_time
from .errors import InvalidState, NotFound, StorageConflict
from .logger import get_logger
from .mime_builder import SMTP_POLICY, build_message
from .models import (
    BatchResult,
    OutboundMessage,
    ScheduledSend,
    ScheduleRequest,
    ScheduleStatus,
)
from .persistence import Persistence
from .prometheus import RelayMetrics
from .transport import Transport

DEFAULT_BATCH_SIZE = 50


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ScheduledSendEngine:
    """Creates, cancels and processes scheduled sends.

    Attributes:
        persistence: Storage for scheduled sends.
        transport: Outbound transport used when an item comes due.
        metrics: Prometheus collector.
        batch_size: Maximum items processed per run.
        interval_seconds: Period of the internal timer.
        min_lead: Minimum distance between creation and the scheduled time.
    """

    def __init__(
        self,
        persistence: Persistence,
        transport: Transport,
        *,
        metrics: RelayMetrics | None = None,
        logger=None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        interval_seconds: float = 60.0,
        min_lead: timedelta = MIN_LEAD,
    ):
        self.persistence = persistence
        self.transport = transport
        self.metrics = metrics or RelayMetrics()
        self.logger = logger or get_logger("Scheduler")
        self.batch_size = max(1, int(batch_size))
        self.interval_seconds = float(interval_seconds)
        self.min_lead = min_lead
        self._stop = asyncio.Event()
        self._wake = asyncio.Event()
        self._task: asyncio.Task | None = None

    @staticmethod
    def _to_model(row: dict[str, Any]) -> ScheduledSend:
        return ScheduledSend.model_validate(row)

    # ------------------------------------------------------------------ create
    async def create(self, request: ScheduleRequest, *, now: datetime | None = None) -> ScheduledSend:
        """Persist a scheduled send.

        A request carrying an idempotency key that is already known returns
        the existing record without creating a new one.

        Raises:
            InvalidInput: Unparseable time or a message the builder rejects.
            TooSoon: The time is earlier than now plus the minimum lead time.
        """
        if request.idempotency_key:
            existing = await self.persistence.find_by_idempotency_key(request.idempotency_key)
            if existing:
                self.logger.info(
                    f"Scheduled send for key {request.idempotency_key} already exists: {existing['id']}"
                )
                return self._to_model(existing)

        when = parse_schedule_time(
            request.scheduled_at, now=now, tz=request.timezone, min_lead=self.min_lead
        )
        message = request.message()
        build_message(message)

        schedule_id = uuid.uuid4().hex
        try:
            await self.persistence.create_scheduled(
                {
                    "id": schedule_id,
                    "idempotency_key": request.idempotency_key,
                    "message": message.model_dump(mode="json", by_alias=True),
                    "scheduled_at": when,
                    "timezone": request.timezone,
                }
            )
        except StorageConflict:
            existing = await self.persistence.find_by_idempotency_key(request.idempotency_key or "")
            if existing is None:
                raise
            self.logger.info(f"Idempotency race on {request.idempotency_key}; returning {existing['id']}")
            return self._to_model(existing)

        self.metrics.inc_scheduled("created")
        self.logger.info(f"Scheduled send {schedule_id} for {when.isoformat()}")
        return await self.get(schedule_id)

    # ------------------------------------------------------------------ lookup
    async def get(self, schedule_id: str) -> ScheduledSend:
        row = await self.persistence.get_scheduled(schedule_id)
        if row is None:
            raise NotFound(f"Scheduled send '{schedule_id}' not found")
        return self._to_model(row)

    async def list_by_status(
        self,
        status: ScheduleStatus | str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ScheduledSend]:
        status_value = ScheduleStatus(status).value if status else None
        rows = await self.persistence.list_by_status(status_value, limit=limit, offset=offset)
        return [self._to_model(row) for row in rows]

    # ------------------------------------------------------------------ cancel
    async def cancel(self, schedule_id: str, *, now: datetime | None = None) -> ScheduledSend:
        """Cancel a scheduled send.

        Raises:
            NotFound: Unknown id.
            InvalidState: The item is no longer ``scheduled``.
        """
        current = await self.get(schedule_id)
        if current.status != ScheduleStatus.SCHEDULED:
            raise InvalidState(
                f"Cannot cancel scheduled send in status '{current.status.value}'",
                status=current.status.value,
            )
        changed = await self.persistence.update_status(
            schedule_id,
            ScheduleStatus.SCHEDULED.value,
            ScheduleStatus.CANCELLED.value,
            cancelled_at=now or _utc_now(),
        )
        if not changed:
            current = await self.get(schedule_id)
            raise InvalidState(
                f"Cannot cancel scheduled send in status '{current.status.value}'",
                status=current.status.value,
            )
        self.metrics.inc_scheduled("cancelled")
        self.logger.info(f"Scheduled send {schedule_id} cancelled")
        return await self.get(schedule_id)

    # ------------------------------------------------------------------ process
    async def _send(self, row: dict[str, Any]) -> tuple[bool, str | None, str | None]:
        message = OutboundMessage.model_validate(row["message"])
        built = build_message(message)
        message_id = str(built["Message-ID"])
        result = await self.transport.send(
            built.as_bytes(policy=SMTP_POLICY),
            sender=parseaddr(message.from_addr)[1] or message.from_addr,
            recipients=message.envelope_recipients(),
            message_id=message_id,
        )
        return result.success, result.provider_message_id or message_id, result.error

    async def process_due_sends(self, now: datetime | None = None) -> BatchResult:
        """Send every item due at ``now``.

        Each item is claimed individually; an item claimed elsewhere is
        skipped. One item's failure never affects the others.

        Returns:
            Counts of processed, sent and failed items, with per-item errors.
        """
        now = now or _utc_now()
        due = await self.persistence.list_due(now, limit=self.batch_size)
        result = BatchResult()
        for row in due:
            schedule_id = row["id"]
            try:
                claimed = await self.persistence.update_status(
                    schedule_id,
                    ScheduleStatus.SCHEDULED.value,
                    ScheduleStatus.PROCESSING.value,
                    increment_attempts=True,
                )
            except Exception as exc:
                self.logger.error(f"Scheduled send {schedule_id} could not be claimed: {exc}")
                result.errors.append({"id": schedule_id, "error": f"claim failed: {exc}"})
                continue
            if not claimed:
                self.logger.debug(f"Scheduled send {schedule_id} claimed by another processor")
                continue
            result.processed += 1

            try:
                success, provider_id, error = await self._send(row)
            except Exception as exc:
                self.logger.warning(f"Scheduled send {schedule_id} could not be sent: {exc}")
                success, provider_id, error = False, None, str(exc) or type(exc).__name__

            try:
                await self._complete(schedule_id, success, provider_id, error, result)
            except Exception as exc:
                # The item stays in processing; the outcome below is all that is known.
                self.logger.error(f"Scheduled send {schedule_id} outcome could not be stored: {exc}")
                if success:
                    result.sent += 1
                    self.metrics.inc_scheduled("sent")
                else:
                    result.failed += 1
                    self.metrics.inc_scheduled("failed")
                result.errors.append({"id": schedule_id, "error": f"status update failed: {exc}"})

        if result.processed:
            self.logger.info(
                f"Processed {result.processed} scheduled send(s): sent={result.sent}, failed={result.failed}"
            )
        return result

    async def _complete(
        self,
        schedule_id: str,
        success: bool,
        provider_id: str | None,
        error: str | None,
        result: BatchResult,
    ) -> None:
        if success:
            await self.persistence.update_status(
                schedule_id,
                ScheduleStatus.PROCESSING.value,
                ScheduleStatus.SENT.value,
                sent_at=_utc_now(),
                provider_message_id=provider_id,
            )
            result.sent += 1
            self.metrics.inc_scheduled("sent")
            self.logger.info(f"Scheduled send {schedule_id} sent")
            return
        reason = error or "send failed"
        await self.persistence.update_status(
            schedule_id,
            ScheduleStatus.PROCESSING.value,
            ScheduleStatus.FAILED.value,
            failed_reason=reason,
        )
        result.failed += 1
        result.errors.append({"id": schedule_id, "error": reason})
        self.metrics.inc_scheduled("failed")
        self.logger.warning(f"Scheduled send {schedule_id} failed: {reason}")

    # ---------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the internal timer that calls :meth:`process_due_sends`."""
        if self._task is not None and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="scheduled-send-loop")

    async def stop(self) -> None:
        self._stop.set()
        self._wake.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    def wake(self) -> None:
        """Run the next processing cycle immediately."""
        self._wake.set()

    async def _loop(self) -> None:
        self.logger.debug("Scheduled send loop started")
        while not self._stop.is_set():
            try:
                await self.process_due_sends()
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in scheduled send loop: %s", exc)
            await self._wait_for_wakeup(self.interval_seconds)

    async def _wait_for_wakeup(self, timeout: float) -> None:
        if self._stop.is_set():
            return
        if math.isinf(timeout):
            await self._wake.wait()
        else:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=max(0.0, timeout))
            except asyncio.TimeoutError:
                return
        self._wake.clear()
