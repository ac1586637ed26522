"""Scheduled scenario runs."""

from __future__ import annotations

import uuid
from datetime import datetime, time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ScheduleType(str, Enum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    INTERVAL = "interval"


class ScheduledTask(BaseModel):
    task_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    scenario_id: Optional[str] = None
    scenario_name: str = ""
    enabled: bool = True

    schedule_type: ScheduleType = ScheduleType.DAILY
    run_time: time = time(0, 0)
    # 0 = Monday, as datetime.weekday()
    day_of_week: int = Field(default=0, ge=0, le=6)
    # Clamped to the length of shorter months
    day_of_month: int = Field(default=1, ge=1, le=31)
    interval_minutes: int = Field(default=60, ge=1)

    next_run_time: Optional[datetime] = None
    last_run_time: Optional[datetime] = None
