"""Scheduler: fires scenario runs at daily, weekly, monthly or interval times.

Due tasks are checked every ``poll_interval_seconds``. A task is due once its
``next_run_time`` has passed; firing it records ``last_run_time`` and moves
``next_run_time`` to the following occurrence. ``once`` tasks disable
themselves after firing.
"""

from __future__ import annotations

import asyncio
import calendar
import logging
from datetime import date, datetime, timedelta
from typing import Awaitable, Callable, Optional

from vmregress.models.schedule import ScheduledTask, ScheduleType

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 60.0

Trigger = Callable[[ScheduledTask], Awaitable[None]]


def _next_month(year: int, month: int) -> tuple[int, int]:
    return (year + 1, 1) if month == 12 else (year, month + 1)


def _monthly(year: int, month: int, task: ScheduledTask) -> datetime:
    day = min(task.day_of_month, calendar.monthrange(year, month)[1])
    return datetime.combine(date(year, month, day), task.run_time)


def first_run_time(task: ScheduledTask, now: datetime) -> datetime:
    """Earliest occurrence strictly after ``now`` for a newly scheduled task."""
    match task.schedule_type:
        case ScheduleType.ONCE | ScheduleType.DAILY:
            candidate = datetime.combine(now.date(), task.run_time)
            if candidate <= now:
                candidate += timedelta(days=1)
            return candidate
        case ScheduleType.WEEKLY:
            days = (task.day_of_week - now.weekday()) % 7
            candidate = datetime.combine(now.date() + timedelta(days=days), task.run_time)
            if candidate <= now:
                candidate += timedelta(days=7)
            return candidate
        case ScheduleType.MONTHLY:
            candidate = _monthly(now.year, now.month, task)
            if candidate <= now:
                candidate = _monthly(*_next_month(now.year, now.month), task)
            return candidate
    return now + timedelta(minutes=task.interval_minutes)


def following_run_time(task: ScheduledTask, fired_at: datetime) -> Optional[datetime]:
    """Occurrence after the one that just fired; None for one-shot tasks."""
    match task.schedule_type:
        case ScheduleType.ONCE:
            return None
        case ScheduleType.DAILY:
            return datetime.combine(fired_at.date() + timedelta(days=1), task.run_time)
        case ScheduleType.WEEKLY:
            days = (task.day_of_week - fired_at.weekday()) % 7 or 7
            return datetime.combine(fired_at.date() + timedelta(days=days), task.run_time)
        case ScheduleType.MONTHLY:
            return _monthly(*_next_month(fired_at.year, fired_at.month), task)
    return fired_at + timedelta(minutes=task.interval_minutes)


class Scheduler:
    """Holds scheduled tasks and triggers them when they fall due.

    Triggers are awaited one at a time, so a long scenario run delays the
    next check; anything that fell due meanwhile fires on that check.
    """

    def __init__(
        self,
        tasks: list[ScheduledTask] | None = None,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        now: Optional[datetime] = None,
    ):
        self.poll_interval_seconds = poll_interval_seconds
        self._tasks: dict[str, ScheduledTask] = {}
        self._stop: asyncio.Event | None = None
        for task in tasks or []:
            self.add(task, now)

    def add(self, task: ScheduledTask, now: Optional[datetime] = None) -> None:
        if task.enabled and task.next_run_time is None:
            task.next_run_time = first_run_time(task, now or datetime.now())
        self._tasks[task.task_id] = task

    def remove(self, task_id: str) -> bool:
        return self._tasks.pop(task_id, None) is not None

    def update(self, task: ScheduledTask) -> bool:
        if task.task_id not in self._tasks:
            return False
        self._tasks[task.task_id] = task
        return True

    def tasks(self) -> list[ScheduledTask]:
        return list(self._tasks.values())

    def due(self, now: Optional[datetime] = None) -> list[ScheduledTask]:
        """Collect tasks whose time has come and advance their schedules."""
        now = now or datetime.now()
        fired = []
        for task in self._tasks.values():
            if not task.enabled or task.next_run_time is None or task.next_run_time > now:
                continue
            task.last_run_time = now
            task.next_run_time = following_run_time(task, now)
            if task.schedule_type == ScheduleType.ONCE:
                task.enabled = False
            fired.append(task)
        return fired

    async def run_pending(self, trigger: Trigger, now: Optional[datetime] = None) -> int:
        """Fire every due task once. Returns how many were triggered."""
        fired = self.due(now)
        for task in fired:
            logger.info("Triggering scheduled task %s (%s)", task.name,
                        task.scenario_name or task.scenario_id)
            try:
                await trigger(task)
            except Exception as e:
                logger.error("Scheduled task %s failed: %s", task.name, e, exc_info=True)
        return len(fired)

    async def run(self, trigger: Trigger) -> None:
        """Check for due tasks until ``stop`` is called."""
        self._stop = asyncio.Event()
        logger.info("Scheduler started with %d task(s)", len(self._tasks))
        while not self._stop.is_set():
            await self.run_pending(trigger)
            try:
                await asyncio.wait_for(self._stop.wait(), self.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Scheduler stopped")

    def stop(self) -> None:
        if self._stop is not None:
            self._stop.set()
