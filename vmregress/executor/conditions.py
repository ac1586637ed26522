"""Step condition evaluation against the results of earlier steps."""

from __future__ import annotations

from typing import Optional, Sequence

from vmregress.models.result import FAILURE_STATUSES, StepResult, StepStatus
from vmregress.models.scenario import ConditionType, StepCondition


def condition_met(
    condition: Optional[StepCondition], previous: Sequence[StepResult],
) -> bool:
    """Decide whether a step may run given the results recorded so far."""
    if condition is None:
        return True

    match condition.condition_type:
        case ConditionType.ALWAYS:
            return True
        case ConditionType.PREVIOUS_PASSED:
            # Nothing ran yet: the first step is never held back
            if not previous:
                return True
            return previous[-1].status == StepStatus.PASSED
        case ConditionType.PREVIOUS_FAILED:
            return bool(previous) and previous[-1].status in FAILURE_STATUSES
        case ConditionType.SPECIFIC_STEP_RESULT:
            for r in previous:
                if r.step_id == condition.reference_step_id:
                    return r.status == condition.expected_result
            return False
        case ConditionType.ALL_PREVIOUS_PASSED:
            return all(
                r.status == StepStatus.PASSED
                for r in previous if r.status != StepStatus.SKIPPED
            )
        case ConditionType.ANY_PREVIOUS_FAILED:
            return any(r.status in FAILURE_STATUSES for r in previous)
    return True


def describe(condition: StepCondition) -> str:
    """Human-readable form used in skip messages."""
    if condition.condition_type == ConditionType.SPECIFIC_STEP_RESULT:
        ref = condition.reference_step_name or condition.reference_step_id or "?"
        return f"{condition.condition_type.value} ({ref} == {condition.expected_result.value})"
    return condition.condition_type.value
