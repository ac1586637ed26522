"""Tests for step condition evaluation."""

import pytest

from conftest import make_step_result
from vmregress.executor.conditions import condition_met, describe
from vmregress.models.result import StepStatus
from vmregress.models.scenario import ConditionType, StepCondition

P, F, S, E, T = (StepStatus.PASSED, StepStatus.FAILED, StepStatus.SKIPPED,
                 StepStatus.ERROR, StepStatus.TIMEOUT)


def _results(*statuses):
    return [make_step_result(s, step_id=f"s{i}") for i, s in enumerate(statuses)]


def _cond(kind, **kwargs):
    return StepCondition(condition_type=kind, **kwargs)


class TestConditionMet:
    """Tests for condition_met()."""

    def test_no_condition(self):
        assert condition_met(None, _results(F)) is True

    def test_always(self):
        assert condition_met(_cond(ConditionType.ALWAYS), _results(F, E)) is True

    @pytest.mark.parametrize("previous,expected", [((), True), ((F, P), True), ((P, F), False)])
    def test_previous_passed(self, previous, expected):
        assert condition_met(_cond(ConditionType.PREVIOUS_PASSED), _results(*previous)) is expected

    @pytest.mark.parametrize("previous,expected", [
        ((), False), ((P,), False), ((F,), True), ((P, E), True), ((T,), True),
    ])
    def test_previous_failed(self, previous, expected):
        assert condition_met(_cond(ConditionType.PREVIOUS_FAILED), _results(*previous)) is expected

    def test_specific_step_result(self):
        previous = _results(P, F)
        assert condition_met(
            _cond(ConditionType.SPECIFIC_STEP_RESULT, reference_step_id="s1",
                  expected_result=StepStatus.FAILED),
            previous,
        ) is True
        assert condition_met(
            _cond(ConditionType.SPECIFIC_STEP_RESULT, reference_step_id="s0",
                  expected_result=StepStatus.FAILED),
            previous,
        ) is False

    def test_specific_step_not_run(self):
        assert condition_met(
            _cond(ConditionType.SPECIFIC_STEP_RESULT, reference_step_id="missing"),
            _results(P),
        ) is False

    @pytest.mark.parametrize("previous,expected", [
        ((), True), ((P, P), True), ((P, S), True), ((P, F), False), ((E,), False),
    ])
    def test_all_previous_passed(self, previous, expected):
        assert condition_met(_cond(ConditionType.ALL_PREVIOUS_PASSED), _results(*previous)) is expected

    @pytest.mark.parametrize("previous,expected", [
        ((), False), ((P, S), False), ((P, F), True), ((T,), True),
    ])
    def test_any_previous_failed(self, previous, expected):
        assert condition_met(_cond(ConditionType.ANY_PREVIOUS_FAILED), _results(*previous)) is expected


class TestDescribe:
    """Tests for describe()."""

    def test_simple(self):
        assert describe(_cond(ConditionType.PREVIOUS_PASSED)) == "previous_passed"

    def test_specific_uses_name(self):
        text = describe(_cond(ConditionType.SPECIFIC_STEP_RESULT, reference_step_id="abc",
                              reference_step_name="Install", expected_result=StepStatus.PASSED))
        assert "Install" in text
        assert "passed" in text
