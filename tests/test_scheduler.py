"""Tests for scheduled scenario runs."""

import asyncio
from datetime import datetime, time, timedelta
from unittest.mock import AsyncMock

import pytest

from vmregress.models.schedule import ScheduledTask, ScheduleType
from vmregress.scheduler import Scheduler, first_run_time, following_run_time

# A Wednesday
WED = datetime(2025, 1, 15, 10, 0)


def _task(schedule_type: ScheduleType, **kwargs) -> ScheduledTask:
    kwargs.setdefault("name", "Nightly")
    kwargs.setdefault("scenario_name", "Smoke")
    return ScheduledTask(schedule_type=schedule_type, **kwargs)


class TestFirstRunTime:
    """Tests for first_run_time()."""

    @pytest.mark.parametrize("schedule_type", [ScheduleType.ONCE, ScheduleType.DAILY])
    def test_later_today(self, schedule_type):
        task = _task(schedule_type, run_time=time(14, 0))
        assert first_run_time(task, WED) == datetime(2025, 1, 15, 14, 0)

    @pytest.mark.parametrize("run_time", [time(9, 0), time(10, 0)])
    def test_daily_time_passed(self, run_time):
        task = _task(ScheduleType.DAILY, run_time=run_time)
        assert first_run_time(task, WED) == datetime.combine(datetime(2025, 1, 16), run_time)

    def test_weekly_later_this_week(self):
        task = _task(ScheduleType.WEEKLY, day_of_week=4, run_time=time(2, 0))
        assert first_run_time(task, WED) == datetime(2025, 1, 17, 2, 0)

    def test_weekly_same_day_passed(self):
        task = _task(ScheduleType.WEEKLY, day_of_week=2, run_time=time(8, 0))
        assert first_run_time(task, WED) == datetime(2025, 1, 22, 8, 0)

    def test_weekly_same_day_upcoming(self):
        task = _task(ScheduleType.WEEKLY, day_of_week=2, run_time=time(18, 0))
        assert first_run_time(task, WED) == datetime(2025, 1, 15, 18, 0)

    def test_monthly_clamped_to_short_month(self):
        task = _task(ScheduleType.MONTHLY, day_of_month=31, run_time=time(9, 0))
        assert first_run_time(task, datetime(2025, 2, 10)) == datetime(2025, 2, 28, 9, 0)

    def test_monthly_passed_moves_to_next_month(self):
        task = _task(ScheduleType.MONTHLY, day_of_month=31, run_time=time(9, 0))
        assert first_run_time(task, datetime(2025, 2, 28, 12, 0)) == datetime(2025, 3, 31, 9, 0)

    def test_monthly_year_rollover(self):
        task = _task(ScheduleType.MONTHLY, day_of_month=15)
        assert first_run_time(task, datetime(2025, 12, 31, 10, 0)) == datetime(2026, 1, 15)

    def test_interval(self):
        task = _task(ScheduleType.INTERVAL, interval_minutes=90)
        assert first_run_time(task, WED) == WED + timedelta(minutes=90)


class TestFollowingRunTime:
    """Tests for following_run_time()."""

    def test_once_has_no_next_run(self):
        assert following_run_time(_task(ScheduleType.ONCE), WED) is None

    def test_daily_is_tomorrow(self):
        task = _task(ScheduleType.DAILY, run_time=time(14, 0))
        fired = datetime(2025, 1, 15, 14, 0, 30)
        assert following_run_time(task, fired) == datetime(2025, 1, 16, 14, 0)

    def test_weekly_same_weekday_is_next_week(self):
        task = _task(ScheduleType.WEEKLY, day_of_week=2, run_time=time(10, 0))
        assert following_run_time(task, WED) == datetime(2025, 1, 22, 10, 0)

    def test_weekly_other_weekday(self):
        task = _task(ScheduleType.WEEKLY, day_of_week=0, run_time=time(6, 0))
        assert following_run_time(task, WED) == datetime(2025, 1, 20, 6, 0)

    @pytest.mark.parametrize("fired, expected", [
        (datetime(2025, 1, 31, 9, 0), datetime(2025, 2, 28, 9, 0)),
        (datetime(2024, 1, 31, 9, 0), datetime(2024, 2, 29, 9, 0)),
        (datetime(2025, 12, 31, 9, 0), datetime(2026, 1, 31, 9, 0)),
    ])
    def test_monthly_clamps_day(self, fired, expected):
        task = _task(ScheduleType.MONTHLY, day_of_month=31, run_time=time(9, 0))
        assert following_run_time(task, fired) == expected

    def test_interval(self):
        task = _task(ScheduleType.INTERVAL, interval_minutes=30)
        assert following_run_time(task, WED) == WED + timedelta(minutes=30)


class TestScheduler:
    """Tests for Scheduler bookkeeping."""

    def test_add_fills_next_run_time(self):
        scheduler = Scheduler([_task(ScheduleType.DAILY, run_time=time(14, 0))], now=WED)
        assert scheduler.tasks()[0].next_run_time == datetime(2025, 1, 15, 14, 0)

    def test_add_keeps_existing_next_run_time(self):
        stored = datetime(2025, 1, 1, 3, 0)
        scheduler = Scheduler([_task(ScheduleType.DAILY, next_run_time=stored)], now=WED)
        assert scheduler.tasks()[0].next_run_time == stored

    def test_disabled_task_not_scheduled(self):
        scheduler = Scheduler([_task(ScheduleType.DAILY, enabled=False)], now=WED)
        assert scheduler.tasks()[0].next_run_time is None
        assert scheduler.due(WED + timedelta(days=2)) == []

    def test_due_advances_schedule(self):
        task = _task(ScheduleType.DAILY, run_time=time(14, 0))
        scheduler = Scheduler([task], now=WED)

        assert scheduler.due(datetime(2025, 1, 15, 13, 59)) == []
        fired_at = datetime(2025, 1, 15, 14, 0, 5)
        assert scheduler.due(fired_at) == [task]
        assert task.last_run_time == fired_at
        assert task.next_run_time == datetime(2025, 1, 16, 14, 0)
        assert scheduler.due(fired_at) == []

    def test_once_disables_itself(self):
        task = _task(ScheduleType.ONCE, run_time=time(11, 0))
        scheduler = Scheduler([task], now=WED)
        assert scheduler.due(datetime(2025, 1, 15, 11, 0)) == [task]
        assert not task.enabled
        assert task.next_run_time is None
        assert scheduler.due(datetime(2025, 2, 1)) == []

    def test_remove_and_update(self):
        task = _task(ScheduleType.DAILY)
        scheduler = Scheduler([task], now=WED)
        changed = task.model_copy(update={"name": "Renamed"})
        assert scheduler.update(changed)
        assert scheduler.tasks()[0].name == "Renamed"
        assert scheduler.remove(task.task_id)
        assert not scheduler.remove(task.task_id)
        assert not scheduler.update(changed)


class TestSchedulerLoop:
    """Tests for triggering due tasks."""

    @pytest.mark.asyncio
    async def test_run_pending_triggers_due_tasks(self):
        due = _task(ScheduleType.DAILY, next_run_time=WED - timedelta(minutes=1))
        later = _task(ScheduleType.DAILY, next_run_time=WED + timedelta(hours=1))
        trigger = AsyncMock()
        count = await Scheduler([due, later]).run_pending(trigger, WED)
        assert count == 1
        trigger.assert_awaited_once_with(due)

    @pytest.mark.asyncio
    async def test_trigger_failure_does_not_stop_others(self):
        first = _task(ScheduleType.DAILY, name="a", next_run_time=WED)
        second = _task(ScheduleType.DAILY, name="b", next_run_time=WED)
        trigger = AsyncMock(side_effect=[RuntimeError("boom"), None])
        assert await Scheduler([first, second]).run_pending(trigger, WED) == 2
        assert trigger.await_count == 2

    @pytest.mark.asyncio
    async def test_run_until_stopped(self):
        task = _task(ScheduleType.INTERVAL, next_run_time=datetime(2020, 1, 1))
        scheduler = Scheduler([task], poll_interval_seconds=0.01)
        fired = []

        async def trigger(t: ScheduledTask) -> None:
            fired.append(t.name)
            scheduler.stop()

        await asyncio.wait_for(scheduler.run(trigger), timeout=5)
        assert fired == ["Nightly"]
        assert task.next_run_time > datetime.now()
