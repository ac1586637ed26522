"""Tests for the hook runner and its macro expansion."""

import os
import sys
from datetime import datetime
from pathlib import Path

import pytest

from conftest import make_scenario_result
from vmregress.executor.hooks import (
    HookRunner,
    build_environment,
    build_invocation,
    expand_event_macros,
)
from vmregress.models.result import StepStatus
from vmregress.models.scenario import EventType, ScenarioEvent

posix_only = pytest.mark.skipif(os.name == "nt", reason="uses /bin/sh")

NOW = datetime(2025, 3, 4, 5, 6, 7)


class TestExpandEventMacros:
    """Tests for expand_event_macros()."""

    def test_scenario_and_counts(self, tmp_path):
        result = make_scenario_result(StepStatus.PASSED, StepStatus.PASSED, StepStatus.PASSED)
        text = expand_event_macros(
            "notify {ScenarioName} {PassedCount}", "Regression", result, tmp_path, NOW,
        )
        assert "Regression" in text
        assert "3" in text
        assert text == "notify Regression 3"

    def test_date_time_tokens(self, tmp_path):
        text = expand_event_macros("{Date}|{Time}|{DateTime}", "x", None, tmp_path, NOW)
        assert text == "2025-03-04|05-06-07|20250304_050607"

    def test_result_dir(self, tmp_path):
        text = expand_event_macros("{ResultDir}", "x", None, tmp_path, NOW)
        assert text == str(tmp_path / "20250304")

    def test_count_tokens_left_without_result(self, tmp_path):
        assert expand_event_macros("{PassedCount}", "x", None, tmp_path, NOW) == "{PassedCount}"

    def test_all_result_tokens(self, tmp_path):
        result = make_scenario_result(StepStatus.PASSED, StepStatus.FAILED)
        text = expand_event_macros(
            "{PassedCount}/{FailedCount}/{TotalCount}/{Duration}/{Success}",
            "x", result, tmp_path, NOW,
        )
        assert text == "1/1/2/00:00:00/False"

    def test_empty_text(self, tmp_path):
        assert expand_event_macros("", "x", None, tmp_path) == ""
        assert expand_event_macros(None, "x", None, tmp_path) is None


class TestBuildInvocation:
    """Tests for build_invocation()."""

    def test_command_posix(self):
        event = ScenarioEvent(command="echo", event_type=EventType.COMMAND)
        assert build_invocation(event, "echo", "hi there", "posix") == ["/bin/sh", "-c", "echo hi there"]

    def test_command_windows(self):
        event = ScenarioEvent(command="echo")
        assert build_invocation(event, "echo", "hi", "nt") == ["cmd.exe", "/c", "echo hi"]

    def test_powershell(self):
        event = ScenarioEvent(command="x.ps1", event_type=EventType.POWERSHELL)
        argv = build_invocation(event, "x.ps1", "-Name a", "nt")
        assert argv == ["powershell.exe", "-ExecutionPolicy", "Bypass", "-File", "x.ps1", "-Name", "a"]
        assert build_invocation(event, "x.ps1", "", "posix")[0] == "pwsh"

    def test_batch_file(self):
        event = ScenarioEvent(command="run.bat", event_type=EventType.BATCH_FILE)
        assert build_invocation(event, "run.bat", "a", "nt") == ["cmd.exe", "/c", "run.bat", "a"]

    def test_executable(self):
        event = ScenarioEvent(command="tool", event_type=EventType.EXECUTABLE)
        assert build_invocation(event, "tool", '--out "my dir"', "posix") == ["tool", "--out", "my dir"]


class TestBuildEnvironment:
    """Tests for build_environment()."""

    def test_standard_variables(self, tmp_path):
        event = ScenarioEvent(command="x", environment_variables={"TARGET": "{ScenarioName}-{Date}"})
        env = build_environment(event, "Regression", None, tmp_path, NOW)
        assert env["SCENARIO_NAME"] == "Regression"
        assert env["TEST_DATE"] == "2025-03-04"
        assert env["TEST_TIME"] == "05:06:07"
        assert env["TARGET"] == "Regression-2025-03-04"
        assert "TEST_PASSED" not in env

    def test_result_variables(self, tmp_path):
        result = make_scenario_result(StepStatus.PASSED, StepStatus.FAILED, StepStatus.SKIPPED)
        env = build_environment(ScenarioEvent(command="x"), "R", result, tmp_path, NOW)
        assert env["TEST_PASSED"] == "1"
        assert env["TEST_FAILED"] == "1"
        assert env["TEST_TOTAL"] == "3"
        assert env["TEST_SUCCESS"] == "False"

    def test_inherits_process_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("VMREGRESS_MARKER", "1")
        env = build_environment(ScenarioEvent(command="x"), "R", None, tmp_path, NOW)
        assert env["VMREGRESS_MARKER"] == "1"


@posix_only
class TestHookRunner:
    """Tests for HookRunner.run() against real host processes."""

    @pytest.mark.asyncio
    async def test_success(self, tmp_path, events, observer):
        runner = HookRunner(tmp_path, events)
        result = await runner.run(ScenarioEvent(command="echo hello-{ScenarioName}"), "R")
        assert result.success
        assert result.exit_code == 0
        assert result.stdout == "hello-R"
        assert any(log.message == "[Event] hello-R" for log in observer.logs)

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, tmp_path, events, observer):
        runner = HookRunner(tmp_path, events)
        result = await runner.run(ScenarioEvent(command="echo oops >&2; exit 3"), "R")
        assert not result.success
        assert result.exit_code == 3
        assert result.error_message.startswith("Exit code: 3")
        assert "oops" in result.error_message
        assert any(log.message == "[Event Error] oops" for log in observer.logs)

    @pytest.mark.asyncio
    async def test_environment_reaches_process(self, tmp_path):
        runner = HookRunner(tmp_path)
        result = await runner.run(
            ScenarioEvent(command='echo "$SCENARIO_NAME:$TEST_PASSED"'),
            "Nightly",
            make_scenario_result(StepStatus.PASSED, StepStatus.PASSED),
        )
        assert result.stdout == "Nightly:2"

    @pytest.mark.asyncio
    async def test_working_directory(self, tmp_path):
        work = tmp_path / "work"
        work.mkdir()
        runner = HookRunner(tmp_path)
        result = await runner.run(ScenarioEvent(command="pwd", working_directory=str(work)), "R")
        assert Path(result.stdout).resolve() == work.resolve()

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, tmp_path):
        runner = HookRunner(tmp_path)
        event = ScenarioEvent(
            command=sys.executable,
            arguments='-c "import time; time.sleep(30)"',
            event_type=EventType.EXECUTABLE,
            timeout_seconds=1,
        )
        result = await runner.run(event, "R")
        assert not result.success
        assert result.timed_out
        assert result.error_message == "Event timed out after 1s"

    @pytest.mark.asyncio
    async def test_launch_failure_is_reported(self, tmp_path):
        runner = HookRunner(tmp_path)
        event = ScenarioEvent(command=str(tmp_path / "does-not-exist"), event_type=EventType.EXECUTABLE)
        result = await runner.run(event, "R")
        assert not result.success
        assert result.exit_code is None
        assert result.error_message


class TestHookRunnerBuildErrors:
    """Invocation problems are reported, not raised."""

    @pytest.mark.asyncio
    async def test_unbalanced_quote_in_arguments(self, tmp_path):
        runner = HookRunner(tmp_path, platform="posix")
        event = ScenarioEvent(command="echo", arguments='it"s', event_type=EventType.EXECUTABLE)
        result = await runner.run(event, "R")
        assert not result.success
        assert result.exit_code is None
        assert "quotation" in result.error_message
