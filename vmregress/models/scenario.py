"""Scenario data structures consumed by the orchestrator."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from vmregress.models.result import StepStatus


def _new_id() -> str:
    return uuid.uuid4().hex


class ExecutionKind(str, Enum):
    PROGRAM = "program"  # run the executable directly in the guest
    SCRIPT = "script"  # wrapped through the guest command shell
    COMMAND = "command"


class ConditionType(str, Enum):
    ALWAYS = "always"
    PREVIOUS_PASSED = "previous_passed"
    PREVIOUS_FAILED = "previous_failed"
    SPECIFIC_STEP_RESULT = "specific_step_result"
    ALL_PREVIOUS_PASSED = "all_previous_passed"
    ANY_PREVIOUS_FAILED = "any_previous_failed"


class EventType(str, Enum):
    COMMAND = "command"
    POWERSHELL = "powershell"
    BATCH_FILE = "batch_file"
    EXECUTABLE = "executable"


class PostEventCondition(str, Enum):
    ALWAYS = "always"
    ON_SUCCESS = "on_success"
    ON_FAILURE = "on_failure"


class FileCopy(BaseModel):
    source_path: str
    destination_path: str


class ExecutionSpec(BaseModel):
    kind: ExecutionKind = ExecutionKind.PROGRAM
    path: str = ""
    arguments: str = ""
    working_directory: Optional[str] = None
    timeout_seconds: int = 300
    wait_for_exit: bool = True


class SuccessCriteria(BaseModel):
    """Pass/fail rules for a step. Unset rules are not checked."""
    expected_exit_code: Optional[int] = None
    contains_text: Optional[str] = None
    not_contains_text: Optional[str] = None


class StepCondition(BaseModel):
    condition_type: ConditionType = ConditionType.ALWAYS
    reference_step_id: Optional[str] = None
    reference_step_name: Optional[str] = None
    expected_result: StepStatus = StepStatus.PASSED


class Step(BaseModel):
    """One revert -> boot -> copy -> execute -> collect -> evaluate unit."""
    step_id: str = Field(default_factory=_new_id)
    name: str
    description: str = ""
    order: int = 0
    target_vm: str  # opaque VM handle, usually a .vmx path
    snapshot_name: str
    files_to_copy: list[FileCopy] = Field(default_factory=list)
    execution: ExecutionSpec = Field(default_factory=ExecutionSpec)
    result_files: list[FileCopy] = Field(default_factory=list)
    success_criteria: SuccessCriteria = Field(
        default_factory=lambda: SuccessCriteria(expected_exit_code=0)
    )
    force_network_disconnect: bool = True
    capture_screenshots: bool = False
    screenshot_interval_seconds: int = 10
    force_snapshot_revert_after: bool = True
    condition: Optional[StepCondition] = None


class ScenarioEvent(BaseModel):
    """Host-side command run before or after a scenario."""
    enabled: bool = True
    event_type: EventType = EventType.COMMAND
    command: str
    arguments: str = ""
    working_directory: Optional[str] = None
    timeout_seconds: int = 300
    environment_variables: dict[str, str] = Field(default_factory=dict)
    hide_window: bool = True
    # Only consulted for pre-events
    stop_on_failure: bool = True
    # Only consulted for post-events
    run_condition: PostEventCondition = PostEventCondition.ALWAYS


class Scenario(BaseModel):
    scenario_id: str = Field(default_factory=_new_id)
    name: str
    description: str = ""
    created_at: datetime = Field(default_factory=datetime.now)
    last_run_at: Optional[datetime] = None
    steps: list[Step] = Field(default_factory=list)
    max_parallel: int = 1
    continue_on_failure: bool = True
    pre_event: Optional[ScenarioEvent] = None
    post_event: Optional[ScenarioEvent] = None

    @field_validator("max_parallel")
    @classmethod
    def check_max_parallel(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_parallel must be at least 1")
        return v

    def ordered_steps(self) -> list[Step]:
        """Steps by ascending ``order``; ties keep their original position."""
        return sorted(self.steps, key=lambda s: s.order)

    def with_max_parallel(self, max_parallel: int) -> "Scenario":
        """Return a copy with the parallelism override applied."""
        return self.model_copy(update={"max_parallel": max(1, max_parallel)})
