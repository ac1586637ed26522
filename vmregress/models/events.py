"""Progress and log notifications emitted during a scenario run."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ProgressPhase(str, Enum):
    INITIALIZING = "initializing"
    REVERTING_SNAPSHOT = "reverting_snapshot"
    WAITING_FOR_BOOT = "waiting_for_boot"
    COPYING_FILES = "copying_files"
    EXECUTING_TEST = "executing_test"
    COLLECTING_RESULTS = "collecting_results"
    COMPLETED = "completed"
    FAILED = "failed"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class ProgressEvent(BaseModel):
    current_step: int = 0
    total_steps: int = 0
    step_name: str = ""
    vm_name: str = ""
    phase: ProgressPhase = ProgressPhase.INITIALIZING

    @property
    def progress_percent(self) -> float:
        if self.total_steps <= 0:
            return 0.0
        return self.current_step / self.total_steps * 100


class LogEvent(BaseModel):
    timestamp: datetime = Field(default_factory=datetime.now)
    level: LogLevel = LogLevel.INFO
    message: str
    vm_name: Optional[str] = None
