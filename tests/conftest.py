"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from vmregress.event_stream import EventStream
from vmregress.models.config import HarnessConfig, NotificationSettings, VMInfo
from vmregress.models.events import LogEvent, ProgressEvent
from vmregress.models.result import ScenarioResult, StepResult, StepStatus
from vmregress.models.scenario import (
    ExecutionSpec,
    FileCopy,
    Scenario,
    ScenarioEvent,
    Step,
    SuccessCriteria,
)
from vmregress.vm.controller import GuestProcessResult, Snapshot

VM_HANDLE = r"C:\VMs\Win10\Win10.vmx"


# ============================================================================
# Fake VM controller
# ============================================================================


class FakeVMController:
    """In-memory VM controller that records every call.

    ``exit_codes`` maps a program path to the exit code it returns; ``outputs``
    maps it to stdout. ``fail`` names operations that should return False.
    ``active`` counts steps between boot and result collection so tests can
    assert on the admission gate.
    """

    def __init__(self, connected: bool = True, connect_ok: bool = True, delay: float = 0.0):
        self._connected = connected
        self.connect_ok = connect_ok
        self.delay = delay
        self.calls: list[tuple] = []
        self.snapshot_state: dict[str, str] = {}
        self.exit_codes: dict[str, int] = {}
        self.outputs: dict[str, str] = {}
        self.timeouts: set[str] = set()
        self.raises: dict[str, Exception] = {}
        self.fail: set[str] = set()
        self.snapshots: list[Snapshot] = [Snapshot(name="Clean"), Snapshot(name="Base")]
        self.active = 0
        self.max_active = 0

    def _record(self, op: str, *args) -> None:
        self.calls.append((op, *args))
        if op in self.raises:
            raise self.raises[op]

    def ops(self) -> list[str]:
        return [c[0] for c in self.calls]

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> bool:
        self._record("connect")
        self._connected = self.connect_ok
        return self.connect_ok

    def disconnect(self) -> None:
        self._record("disconnect")
        self._connected = False

    async def power_on(self, vm: str) -> bool:
        self._record("power_on", vm)
        return "power_on" not in self.fail

    async def wait_for_guest_ready(self, vm: str, timeout_seconds: int = 300) -> bool:
        self._record("wait_for_guest_ready", vm, timeout_seconds)
        if "wait_for_guest_ready" in self.fail:
            return False
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        await asyncio.sleep(self.delay)
        return True

    async def revert_to_snapshot(self, vm: str, name: str) -> bool:
        self._record("revert_to_snapshot", vm, name)
        if "revert_to_snapshot" in self.fail:
            return False
        self.snapshot_state[vm] = name
        return True

    async def login_guest(self, vm: str, username: str, password: str) -> bool:
        self._record("login_guest", vm, username, password)
        return "login_guest" not in self.fail

    async def copy_to_guest(self, vm: str, host_path: str, guest_path: str) -> bool:
        self._record("copy_to_guest", vm, host_path, guest_path)
        return "copy_to_guest" not in self.fail

    async def copy_from_guest(self, vm: str, guest_path: str, host_path: str) -> bool:
        self._record("copy_from_guest", vm, guest_path, host_path)
        self.active -= 1
        return "copy_from_guest" not in self.fail

    async def create_guest_directory(self, vm: str, guest_path: str) -> bool:
        self._record("create_guest_directory", vm, guest_path)
        return True

    async def _process(self, program: str) -> GuestProcessResult:
        await asyncio.sleep(self.delay)
        if program in self.timeouts:
            return GuestProcessResult(success=False, error_message="timed out", timed_out=True)
        code = self.exit_codes.get(program, 0)
        return GuestProcessResult(
            success=True, exit_code=code, stdout=self.outputs.get(program, ""),
        )

    async def run_program_in_guest(
        self, vm: str, program: str, arguments: str,
        timeout_seconds: int = 300, wait: bool = True,
    ) -> GuestProcessResult:
        self._record("run_program_in_guest", vm, program, arguments, timeout_seconds, wait)
        return await self._process(program)

    async def run_script_in_guest(
        self, vm: str, interpreter: str, script: str, timeout_seconds: int = 300,
    ) -> GuestProcessResult:
        self._record("run_script_in_guest", vm, interpreter, script, timeout_seconds)
        return await self._process(script)

    async def capture_screenshot(self, vm: str, host_path: str) -> bool:
        self._record("capture_screenshot", vm, host_path)
        if "capture_screenshot" in self.fail:
            return False
        Path(host_path).parent.mkdir(parents=True, exist_ok=True)
        Path(host_path).write_bytes(b"\x89PNG fake")
        return True

    async def list_snapshots(self, vm: str) -> list[Snapshot]:
        self._record("list_snapshots", vm)
        return list(self.snapshots)


class RecordingObserver:
    def __init__(self):
        self.progress: list[ProgressEvent] = []
        self.logs: list[LogEvent] = []

    def on_progress(self, event: ProgressEvent) -> None:
        self.progress.append(event)

    def on_log(self, event: LogEvent) -> None:
        self.logs.append(event)


# ============================================================================
# Factories
# ============================================================================


def make_step(name: str = "Step", order: int = 0, program: str | None = None, **kwargs) -> Step:
    """Build a step that runs ``program`` (defaults to the step name)."""
    kwargs.setdefault("target_vm", VM_HANDLE)
    kwargs.setdefault("snapshot_name", "Clean")
    kwargs.setdefault("force_network_disconnect", False)
    return Step(
        name=name,
        order=order,
        execution=ExecutionSpec(path=program or name, timeout_seconds=60),
        **kwargs,
    )


def make_scenario(steps: list[Step], **kwargs) -> Scenario:
    kwargs.setdefault("name", "Regression")
    return Scenario(steps=steps, **kwargs)


def make_step_result(status: StepStatus, step_id: str = "s", name: str = "Step") -> StepResult:
    return StepResult(step_id=step_id, step_name=name, vm_name="Win10", status=status)


def make_scenario_result(*statuses: StepStatus) -> ScenarioResult:
    return ScenarioResult(
        scenario_id="sc-1",
        scenario_name="Regression",
        step_results=[make_step_result(s, step_id=f"s{i}") for i, s in enumerate(statuses)],
    )


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def controller() -> FakeVMController:
    """A connected fake VM controller."""
    return FakeVMController()


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def events(observer: RecordingObserver) -> EventStream:
    """Event stream with a recording observer attached."""
    stream = EventStream()
    stream.subscribe(observer)
    return stream


@pytest.fixture
def vm_info() -> VMInfo:
    return VMInfo(name="Win10", vmx_path=VM_HANDLE, guest_username="tester", guest_password="pw")


@pytest.fixture
def harness_config(tmp_path: Path) -> HarnessConfig:
    """Config pointing every output directory into tmp_path."""
    return HarnessConfig(
        vmrun_path="/usr/bin/vmrun",
        registered_vms=[
            VMInfo(name="Win10", vmx_path=VM_HANDLE, guest_username="tester", guest_password="pw"),
        ],
        scenarios_dir=str(tmp_path / "scenarios"),
        result_output_dir=str(tmp_path / "results"),
        report_output_dir=str(tmp_path / "reports"),
        notification=NotificationSettings(enabled=False),
    )


@pytest.fixture
def passing_criteria() -> SuccessCriteria:
    return SuccessCriteria(expected_exit_code=0)


@pytest.fixture
def result_copy() -> FileCopy:
    return FileCopy(source_path=r"C:\Test\out.log", destination_path="{ResultDir}/{VMName}_{StepName}.log")


@pytest.fixture
def shell_event() -> ScenarioEvent:
    return ScenarioEvent(command="true", timeout_seconds=10)
