"""Periodic reconciliation inside the API process.

A single ``asyncio`` task polls every ``poll_interval`` seconds and starts a
run once the schedule is due.  Schedules use five-field cron syntax limited
to what a reconciliation cadence needs: a fixed minute, plus optionally a
fixed hour and a fixed day of week.  The lease taken by
:class:`ReconciliationService` keeps overlapping processes from running
concurrently, so every API replica may host a scheduler.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from billing_engine.errors import StorageError
from billing_engine.models.outcomes import ReconciliationMode, ReconciliationSummary
from billing_engine.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Schedule
# ---------------------------------------------------------------------------

_SUPPORTED = "'M * * * *' (hourly), 'M H * * *' (daily) or 'M H * * D' (weekly, 0=Sunday)"


@dataclass(frozen=True)
class CronSchedule:
    """A parsed reconciliation schedule.

    ``hour`` is ``None`` for hourly schedules; ``weekday`` is ``None``
    unless the schedule is weekly, and uses Python's Monday=0 numbering.
    """

    minute: int
    hour: int | None = None
    weekday: int | None = None

    @classmethod
    def parse(cls, expression: str) -> CronSchedule:
        fields = expression.split()
        if len(fields) != 5 or fields[2] != "*" or fields[3] != "*":
            raise ValueError(f"Unsupported cron expression {expression!r}; use {_SUPPORTED}")
        minute_raw, hour_raw, _, _, dow_raw = fields

        minute = _bounded(minute_raw, 59, "minute", expression)
        if hour_raw == "*":
            if dow_raw != "*":
                raise ValueError(f"Unsupported cron expression {expression!r}; use {_SUPPORTED}")
            return cls(minute=minute)

        hour = _bounded(hour_raw, 23, "hour", expression)
        if dow_raw == "*":
            return cls(minute=minute, hour=hour)
        # Cron counts from Sunday=0.
        weekday = (_bounded(dow_raw, 6, "day-of-week", expression) - 1) % 7
        return cls(minute=minute, hour=hour, weekday=weekday)

    def next_after(self, moment: datetime) -> datetime:
        """First firing time strictly later than *moment*."""
        if self.hour is None:
            candidate = moment.replace(minute=self.minute, second=0, microsecond=0)
            return candidate if candidate > moment else candidate + timedelta(hours=1)

        candidate = moment.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if self.weekday is None:
            return candidate if candidate > moment else candidate + timedelta(days=1)

        days_ahead = (self.weekday - candidate.weekday()) % 7
        if days_ahead == 0 and candidate <= moment:
            days_ahead = 7
        return candidate + timedelta(days=days_ahead)


def _bounded(raw: str, upper: int, name: str, expression: str) -> int:
    if not raw.isdigit() or int(raw) > upper:
        raise ValueError(f"Cron {name} {raw!r} in {expression!r} must be an integer 0-{upper}")
    return int(raw)


def compute_next_run(cron_expression: str, from_time: datetime) -> datetime:
    """Return the next time *cron_expression* fires after *from_time*.

    Raises
    ------
    ValueError
        If the expression is outside the supported subset.
    """
    return CronSchedule.parse(cron_expression).next_after(from_time)


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class ReconciliationScheduler:
    """Background task that runs reconciliation on a cron schedule.

    Parameters
    ----------
    service:
        Runs the actual reconciliation.
    cron_expression:
        Parsed on construction; an unsupported value raises ``ValueError``.
    mode:
        Mode for every scheduled run.
    poll_interval:
        Seconds between checks of the schedule.
    """

    def __init__(
        self,
        service: ReconciliationService,
        cron_expression: str,
        *,
        mode: ReconciliationMode = ReconciliationMode.REPORT,
        poll_interval: float = 60.0,
    ) -> None:
        self._service = service
        self._schedule = CronSchedule.parse(cron_expression)
        self._cron = cron_expression
        self._mode = mode
        self._poll_interval = poll_interval
        self._task: asyncio.Task[None] | None = None
        self.next_run_at: datetime = self._schedule.next_after(datetime.now(UTC))
        self.last_summary: ReconciliationSummary | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            logger.warning("Reconciliation scheduler already started")
            return
        self._task = asyncio.create_task(self._poll(), name="reconciliation-scheduler")
        logger.info(
            "Reconciliation scheduled: cron=%r mode=%s first run %s",
            self._cron,
            self._mode.value,
            self.next_run_at.isoformat(),
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Reconciliation scheduler stopped")

    async def _poll(self) -> None:
        while True:
            try:
                await self.run_if_due()
            except StorageError as exc:
                # The next due time has already advanced; wait for it.
                logger.error("Scheduled reconciliation hit a storage error: %s", exc.message, exc_info=True)
            except Exception:
                logger.exception("Scheduled reconciliation failed; waiting for the next due time")
            await asyncio.sleep(self._poll_interval)

    async def run_if_due(self, now: datetime | None = None) -> ReconciliationSummary | None:
        """Start a run if the schedule is due at *now*.

        The next due time advances before the run starts, whether or not
        the run succeeds.
        """
        now = now or datetime.now(UTC)
        if now < self.next_run_at:
            return None

        self.next_run_at = self._schedule.next_after(now)
        logger.info("Starting scheduled reconciliation (mode=%s)", self._mode.value)
        self.last_summary = await self._service.run(self._mode)
        return self.last_summary
