"""Test scheduler -- daily timers, rescheduling and shutdown."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest

from subscription_billing.models import EmailSettings
from subscription_billing.scheduler import (
    INVOICE_JOB,
    REMINDER_JOB,
    Scheduler,
    next_run_at,
)

KOLKATA = ZoneInfo("Asia/Kolkata")
UTC = timezone.utc


async def _forever(delay):
    await asyncio.Event().wait()


def _make_scheduler(clock, invoices=None, reminders=None, sleep=_forever):
    return Scheduler(
        {
            INVOICE_JOB: invoices or AsyncMock(return_value=None),
            REMINDER_JOB: reminders or AsyncMock(return_value=None),
        },
        tz="Asia/Kolkata",
        invoice_time="02:00",
        clock=clock,
        sleep=sleep,
    )


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


# ===================================================================
# next_run_at
# ===================================================================

@pytest.mark.unit
class TestNextRunAt:

    def test_later_today(self):
        after = datetime(2026, 10, 19, 2, 0, tzinfo=UTC)   # 07:30 IST
        assert next_run_at("09:00", after, KOLKATA) == datetime(2026, 10, 19, 3, 30, tzinfo=UTC)

    def test_already_passed_rolls_to_tomorrow(self):
        after = datetime(2026, 10, 19, 6, 30, tzinfo=UTC)  # 12:00 IST
        assert next_run_at("09:00", after, KOLKATA) == datetime(2026, 10, 20, 3, 30, tzinfo=UTC)

    def test_exact_time_is_strictly_after(self):
        after = datetime(2026, 10, 19, 3, 30, tzinfo=UTC)  # 09:00 IST
        assert next_run_at("09:00", after, KOLKATA) == datetime(2026, 10, 20, 3, 30, tzinfo=UTC)

    def test_zone_date_differs_from_utc_date(self):
        after = datetime(2026, 10, 19, 20, 0, tzinfo=UTC)  # 01:30 IST on the 20th
        assert next_run_at("02:00", after, KOLKATA) == datetime(2026, 10, 19, 20, 30, tzinfo=UTC)

    def test_invalid_time(self):
        with pytest.raises(ValueError):
            next_run_at("25:00", datetime(2026, 1, 1, tzinfo=UTC), KOLKATA)


# ===================================================================
# Lifecycle
# ===================================================================

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_schedules_both_jobs(self, clock):
        scheduler = _make_scheduler(clock)
        await scheduler.start(EmailSettings(schedule_time="09:00"))
        await _settle()
        try:
            assert scheduler.is_scheduled(INVOICE_JOB)
            assert scheduler.is_scheduled(REMINDER_JOB)
            jobs = {j["name"]: j for j in scheduler.status()["jobs"]}
            assert jobs[REMINDER_JOB]["next_run"] == "2026-10-20T03:30:00+00:00"
            assert jobs[INVOICE_JOB]["next_run"] == "2026-10-19T20:30:00+00:00"
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_automation_disabled_skips_reminders(self, clock):
        scheduler = _make_scheduler(clock)
        await scheduler.start(EmailSettings(automation_enabled=False))
        try:
            assert scheduler.is_scheduled(INVOICE_JOB)
            assert not scheduler.is_scheduled(REMINDER_JOB)
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_timer(self, clock):
        scheduler = _make_scheduler(clock)
        await scheduler.start(EmailSettings())
        first_task = scheduler._timers[REMINDER_JOB].task
        await scheduler.start(EmailSettings())
        assert scheduler._timers[REMINDER_JOB].task is first_task
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_timers(self, clock):
        scheduler = _make_scheduler(clock)
        await scheduler.start(EmailSettings())
        tasks = [job.task for job in scheduler._timers.values()]
        await scheduler.stop()
        assert all(t.cancelled() for t in tasks)
        assert scheduler.status()["jobs"] == []
        assert not scheduler.running


# ===================================================================
# Reschedule
# ===================================================================

class TestReschedule:

    @pytest.mark.asyncio
    async def test_repeated_reschedule_one_timer(self, clock):
        scheduler = _make_scheduler(clock)
        await scheduler.start(EmailSettings(schedule_time="09:00"))
        old = scheduler._timers[REMINDER_JOB].task

        for _ in range(3):
            await scheduler.reschedule(EmailSettings(schedule_time="18:45"))

        assert old.cancelled()
        reminder_timers = [t for t in asyncio.all_tasks() if t.get_name() == f"timer-{REMINDER_JOB}"]
        assert len(reminder_timers) == 1
        assert scheduler._timers[REMINDER_JOB].time_of_day == "18:45"
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_disable_removes_reminder_timer(self, clock):
        scheduler = _make_scheduler(clock)
        await scheduler.start(EmailSettings())
        await scheduler.reschedule(EmailSettings(automation_enabled=False))
        assert not scheduler.is_scheduled(REMINDER_JOB)
        assert scheduler.is_scheduled(INVOICE_JOB)
        await scheduler.reschedule(EmailSettings(automation_enabled=True))
        assert scheduler.is_scheduled(REMINDER_JOB)
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_reschedule_before_start_schedules_nothing(self, clock):
        scheduler = _make_scheduler(clock)
        await scheduler.reschedule(EmailSettings())
        assert not scheduler.is_scheduled(REMINDER_JOB)

    @pytest.mark.asyncio
    async def test_concurrent_reschedules(self, clock):
        scheduler = _make_scheduler(clock)
        await scheduler.start(EmailSettings())
        await asyncio.gather(*(
            scheduler.reschedule(EmailSettings(schedule_time=f"0{i}:00")) for i in range(1, 6)
        ))
        reminder_timers = [
            t for t in asyncio.all_tasks()
            if t.get_name() == f"timer-{REMINDER_JOB}" and not t.done()
        ]
        assert len(reminder_timers) == 1
        await scheduler.stop()


# ===================================================================
# Firing
# ===================================================================

class TestFiring:

    @pytest.mark.asyncio
    async def test_timer_fires_job_once_per_occurrence(self, clock):
        invoices = AsyncMock(return_value=None)
        delays = []

        async def _fake_sleep(delay):
            delays.append(delay)
            if len(delays) > 1:
                await asyncio.Event().wait()
            clock.advance(seconds=delay)

        scheduler = _make_scheduler(clock, invoices=invoices, sleep=_fake_sleep)
        await scheduler.start(EmailSettings(automation_enabled=False))
        await _settle()

        invoices.assert_awaited_once()
        # 12:00 IST -> 02:00 IST next day, then a full day to the following 02:00
        assert delays == [50400.0, 86400.0]
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_late_wake_fires_once(self, clock):
        invoices = AsyncMock(return_value=None)
        delays = []

        async def _oversleep(delay):
            delays.append(delay)
            if len(delays) > 1:
                await asyncio.Event().wait()
            clock.advance(days=3)

        scheduler = _make_scheduler(clock, invoices=invoices, sleep=_oversleep)
        await scheduler.start(EmailSettings(automation_enabled=False))
        await _settle()

        invoices.assert_awaited_once()
        assert 0 < delays[1] <= 86400
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_trigger_runs_job(self, clock):
        invoices = AsyncMock(return_value=None)
        scheduler = _make_scheduler(clock, invoices=invoices)
        await scheduler.trigger(INVOICE_JOB)
        await _settle()
        invoices.assert_awaited_once()
        assert INVOICE_JOB in scheduler.status()["last_runs"]

    @pytest.mark.asyncio
    async def test_trigger_unknown_job(self, clock):
        scheduler = _make_scheduler(clock)
        with pytest.raises(ValueError):
            scheduler.trigger("cleanup")

    @pytest.mark.asyncio
    async def test_failed_run_is_recorded(self, clock):
        scheduler = _make_scheduler(clock, invoices=AsyncMock(side_effect=RuntimeError("db down")))
        task = scheduler.trigger(INVOICE_JOB)
        with pytest.raises(RuntimeError):
            await task
        await _settle()
        assert "db down" in scheduler.status()["last_runs"][INVOICE_JOB]["error"]

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_run_finish(self, clock):
        release = asyncio.Event()
        finished = []

        async def _slow_run():
            await release.wait()
            finished.append(True)

        scheduler = _make_scheduler(clock, reminders=_slow_run)
        await scheduler.start(EmailSettings())
        task = scheduler.trigger(REMINDER_JOB)
        await _settle()

        await scheduler.stop()
        assert not task.cancelled()
        assert scheduler.status()["in_flight"] == 1

        release.set()
        await task
        assert finished == [True]

    @pytest.mark.asyncio
    async def test_stop_wait_blocks_until_done(self, clock):
        release = asyncio.Event()

        async def _slow_run():
            await release.wait()

        scheduler = _make_scheduler(clock, invoices=_slow_run)
        task = scheduler.trigger(INVOICE_JOB)
        stopper = asyncio.create_task(scheduler.stop(wait=True))
        await _settle()
        assert not stopper.done()

        release.set()
        await stopper
        assert task.done()

    def test_unknown_job_name_rejected(self, clock):
        with pytest.raises(ValueError):
            Scheduler({"cleanup": AsyncMock()}, clock=clock)
