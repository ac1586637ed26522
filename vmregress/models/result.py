"""Result data structures produced by the step executor and orchestrator."""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, computed_field


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMEOUT = "timeout"
    ERROR = "error"


# Statuses that count as a broken step for conditions and notifications
FAILURE_STATUSES = (StepStatus.FAILED, StepStatus.ERROR, StepStatus.TIMEOUT)


def _elapsed(start: datetime, end: datetime | None) -> timedelta:
    if end is None:
        return timedelta(0)
    return end - start


class StepResult(BaseModel):
    """Result of running a single step against one VM."""
    step_id: str
    step_name: str
    vm_name: str = ""
    status: StepStatus = StepStatus.PENDING
    start_time: datetime = Field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    exit_code: Optional[int] = None
    output: Optional[str] = None
    error_message: Optional[str] = None
    screenshot_paths: list[str] = Field(default_factory=list)
    collected_file_paths: list[str] = Field(default_factory=list)

    @property
    def duration(self) -> timedelta:
        return _elapsed(self.start_time, self.end_time)

    @computed_field
    @property
    def duration_seconds(self) -> float:
        return round(self.duration.total_seconds(), 2)


class ScenarioResult(BaseModel):
    scenario_id: str
    scenario_name: str
    start_time: datetime = Field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    step_results: list[StepResult] = Field(default_factory=list)
    # Fault caught at the run boundary, if any
    error_message: Optional[str] = None
    cancelled: bool = False

    def _count(self, *statuses: StepStatus) -> int:
        return sum(1 for r in self.step_results if r.status in statuses)

    @property
    def duration(self) -> timedelta:
        return _elapsed(self.start_time, self.end_time)

    @computed_field
    @property
    def duration_seconds(self) -> float:
        return round(self.duration.total_seconds(), 2)

    @computed_field
    @property
    def total_count(self) -> int:
        return len(self.step_results)

    @computed_field
    @property
    def passed_count(self) -> int:
        return self._count(StepStatus.PASSED)

    @computed_field
    @property
    def failed_count(self) -> int:
        return self._count(StepStatus.FAILED)

    @computed_field
    @property
    def skipped_count(self) -> int:
        return self._count(StepStatus.SKIPPED)

    @computed_field
    @property
    def error_count(self) -> int:
        return self._count(StepStatus.ERROR, StepStatus.TIMEOUT)

    @computed_field
    @property
    def is_success(self) -> bool:
        return self.failed_count == 0 and self.error_count == 0


def format_duration(delta: timedelta) -> str:
    """Render a duration as hh:mm:ss."""
    total = int(delta.total_seconds())
    hours, rem = divmod(total, 3600)
    minutes, seconds = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
