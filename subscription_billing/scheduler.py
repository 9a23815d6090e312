"""
Scheduler -- daily timers for the billing jobs.

Two jobs, both at a wall-clock time in one canonical zone
(``BILLING_TIMEZONE``, default Asia/Kolkata) regardless of host zone:

    invoice-generation   fixed at INVOICE_JOB_TIME (default 02:00)
    reminder-check       EmailSettings.schedule_time, only while automation
                         is enabled

Each scheduled job owns exactly one timer task that sleeps until the next
occurrence and then fires the job in a separate task, so cancelling a
timer never interrupts a run that has already started.  A timer that wakes
late (host suspended, loop stalled) fires once and then resumes the normal
daily cadence.

Usage:
    scheduler = Scheduler({
        INVOICE_JOB: generator.generate_due_invoices,
        REMINDER_JOB: dispatcher.check_and_send_reminders,
    })
    await scheduler.start(settings)
    await scheduler.reschedule(new_settings)   # on every settings save
    await scheduler.stop(wait=True)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Any, Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

from subscription_billing import config
from subscription_billing.models import (
    UTC,
    EmailSettings,
    _now_utc,
    parse_time_of_day,
)

logger = logging.getLogger("scheduler")

INVOICE_JOB = "invoice-generation"
REMINDER_JOB = "reminder-check"

JOB_NAMES = (INVOICE_JOB, REMINDER_JOB)

JobCallable = Callable[[], Awaitable[Any]]


def next_run_at(time_of_day: str, after: datetime, tz: ZoneInfo) -> datetime:
    """Next occurrence of ``HH:MM`` in *tz* strictly after *after*, in UTC."""
    hour, minute = parse_time_of_day(time_of_day)
    local = after.astimezone(tz)
    candidate = datetime.combine(local.date(), time(hour, minute), tzinfo=tz)
    if candidate <= local:
        candidate = datetime.combine(
            local.date() + timedelta(days=1), time(hour, minute), tzinfo=tz,
        )
    return candidate.astimezone(UTC)


@dataclass
class ScheduledJob:
    name: str
    time_of_day: str
    task: asyncio.Task
    next_run: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "time_of_day": self.time_of_day,
            "next_run": self.next_run.isoformat() if self.next_run else None,
        }


class Scheduler:
    """Owns at most one timer per job name."""

    def __init__(
        self,
        jobs: dict[str, JobCallable],
        tz: str = config.BILLING_TIMEZONE,
        invoice_time: str = config.INVOICE_JOB_TIME,
        clock: Callable[[], datetime] = _now_utc,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        unknown = set(jobs) - set(JOB_NAMES)
        if unknown:
            raise ValueError(f"Unknown job name(s): {', '.join(sorted(unknown))}")
        parse_time_of_day(invoice_time)
        self._callables = dict(jobs)
        self.tz = ZoneInfo(tz)
        self.invoice_time = invoice_time
        self.clock = clock
        self._sleep = sleep
        self._timers: dict[str, ScheduledJob] = {}
        self._inflight: set[asyncio.Task] = set()
        self._last_runs: dict[str, dict] = {}
        self._lock = asyncio.Lock()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def is_scheduled(self, name: str) -> bool:
        return name in self._timers

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    async def _timer(self, name: str, time_of_day: str) -> None:
        after = self.clock()
        while True:
            target = next_run_at(time_of_day, after, self.tz)
            self._timers[name].next_run = target
            delay = (target - self.clock()).total_seconds()
            if delay > 0:
                await self._sleep(delay)
            self.trigger(name)
            after = max(target, self.clock())

    def _schedule(self, name: str, time_of_day: str) -> None:
        if name in self._timers:
            raise RuntimeError(f"Job {name!r} is already scheduled")
        if name not in self._callables:
            logger.warning("No callable registered for %s; not scheduling", name)
            return
        parse_time_of_day(time_of_day)
        task = asyncio.create_task(self._timer(name, time_of_day), name=f"timer-{name}")
        self._timers[name] = ScheduledJob(name=name, time_of_day=time_of_day, task=task)
        logger.info("Scheduled %s daily at %s %s", name, time_of_day, self.tz.key)

    async def _unschedule(self, name: str) -> None:
        job = self._timers.pop(name, None)
        if job is None:
            return
        job.task.cancel()
        try:
            await job.task
        except asyncio.CancelledError:
            pass
        logger.info("Unscheduled %s", name)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def _run_done(self, name: str, started: datetime, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        record = {"started_at": started.isoformat(), "finished_at": self.clock().isoformat()}
        if task.cancelled():
            record["error"] = "cancelled"
        elif task.exception() is not None:
            exc = task.exception()
            record["error"] = f"{type(exc).__name__}: {exc}"
            logger.error("Job %s raised unexpected error: %s", name, exc)
        else:
            result = task.result()
            record["result"] = result.to_dict() if hasattr(result, "to_dict") else result
        self._last_runs[name] = record

    def trigger(self, name: str) -> asyncio.Task:
        """Run a job now, on the same path the timers use."""
        if name not in self._callables:
            raise ValueError(f"Unknown job: {name}")
        started = self.clock()
        logger.info("Running %s", name)
        task = asyncio.create_task(self._callables[name](), name=f"run-{name}")
        self._inflight.add(task)
        task.add_done_callback(lambda t: self._run_done(name, started, t))
        return task

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, settings: EmailSettings) -> None:
        async with self._lock:
            if self._running:
                logger.warning("Scheduler is already running.")
                return
            self._running = True
            self._schedule(INVOICE_JOB, self.invoice_time)
            if settings.automation_enabled:
                self._schedule(REMINDER_JOB, settings.schedule_time)
            else:
                logger.info("Reminder automation disabled; %s not scheduled", REMINDER_JOB)

    async def reschedule(self, settings: EmailSettings) -> None:
        """Replace the reminder timer to match *settings*.  Safe to repeat."""
        async with self._lock:
            await self._unschedule(REMINDER_JOB)
            if not self._running:
                logger.debug("Scheduler not running; reschedule recorded nothing")
                return
            if settings.automation_enabled:
                self._schedule(REMINDER_JOB, settings.schedule_time)
            else:
                logger.info("Reminder automation disabled; %s stays unscheduled", REMINDER_JOB)

    async def stop(self, wait: bool = False) -> None:
        """Cancel every timer.  Runs already in progress are left to finish."""
        async with self._lock:
            for name in list(self._timers):
                await self._unschedule(name)
            self._running = False
        if wait and self._inflight:
            logger.info("Waiting for %d in-flight run(s) to finish...", len(self._inflight))
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        logger.info("Scheduler stopped.")

    def status(self) -> dict:
        return {
            "running": self._running,
            "timezone": self.tz.key,
            "jobs": [job.to_dict() for job in self._timers.values()],
            "in_flight": len(self._inflight),
            "last_runs": dict(self._last_runs),
        }
