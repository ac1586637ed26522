"""Step executor: drives one step through its VM lifecycle."""

from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path, PurePath, PurePosixPath, PureWindowsPath

from vmregress.event_stream import EventStream
from vmregress.models.config import VMInfo
from vmregress.models.events import LogLevel, ProgressPhase
from vmregress.models.result import StepResult, StepStatus
from vmregress.models.scenario import ExecutionKind, Step
from vmregress.vm.controller import GuestProcessResult, VMController

from .criteria import evaluate
from .hooks import result_dir_for

logger = logging.getLogger(__name__)

DEFAULT_GUEST_USERNAME = "Administrator"
DEFAULT_BOOT_TIMEOUT_SECONDS = 300
GUEST_SHELL = "cmd.exe"

_WINDOWS_PATH = re.compile(r"^[A-Za-z]:|\\")


class StepFailure(Exception):
    """A phase could not complete; the step ends with status ``error``."""


def guest_parent_dir(guest_path: str) -> str:
    """Directory part of a guest path, for either guest OS family."""
    path: PurePath
    if _WINDOWS_PATH.search(guest_path):
        path = PureWindowsPath(guest_path)
    else:
        path = PurePosixPath(guest_path)
    parent = str(path.parent)
    return "" if parent in (".", "") else parent


def expand_result_path(
    template: str, result_dir: Path, vm_name: str, step_name: str, now: datetime,
) -> str:
    """Fill ``{ResultDir}``/``{VMName}``/``{StepName}``/``{Timestamp}`` in a host path."""
    return (
        template.replace("{ResultDir}", str(result_dir))
        .replace("{VMName}", vm_name)
        .replace("{StepName}", step_name)
        .replace("{Timestamp}", now.strftime("%Y%m%d_%H%M%S"))
    )


class StepExecutor:
    """Runs a single step: revert, boot, login, copy in, execute, collect,
    screenshot, evaluate and revert again.

    ``run_step`` never raises. Every fault is folded into the returned
    ``StepResult`` so sibling steps keep running.
    """

    def __init__(
        self,
        controller: VMController,
        result_root: Path,
        events: EventStream | None = None,
        boot_timeout_seconds: int = DEFAULT_BOOT_TIMEOUT_SECONDS,
    ):
        self.controller = controller
        self.result_root = Path(result_root)
        self.events = events or EventStream()
        self.boot_timeout_seconds = boot_timeout_seconds

    def result_dir(self, step: Step) -> Path:
        path = result_dir_for(self.result_root, datetime.now()) / step.name
        path.mkdir(parents=True, exist_ok=True)
        return path

    async def run_step(
        self, step: Step, vm: VMInfo, position: int = 1, total: int = 1,
    ) -> StepResult:
        result = StepResult(
            step_id=step.step_id,
            step_name=step.name,
            vm_name=vm.name,
            status=StepStatus.RUNNING,
            start_time=datetime.now(),
        )
        handle = step.target_vm
        vm_name = vm.name
        reverted = False
        reverted_after = False

        def phase(p: ProgressPhase) -> None:
            self.events.progress(step.name, vm_name, p, position, total)

        phase(ProgressPhase.INITIALIZING)

        try:
            # 1. Revert
            phase(ProgressPhase.REVERTING_SNAPSHOT)
            self.events.info(f"Reverting to snapshot: {step.snapshot_name}", vm_name)
            if not await self.controller.revert_to_snapshot(handle, step.snapshot_name):
                raise StepFailure(f"Snapshot revert failed: {step.snapshot_name}")
            reverted = True

            # 2. Boot
            phase(ProgressPhase.WAITING_FOR_BOOT)
            self.events.info("Powering on and waiting for guest", vm_name)
            if not await self.controller.power_on(handle):
                raise StepFailure("VM power on failed")
            if not await self.controller.wait_for_guest_ready(handle, self.boot_timeout_seconds):
                raise StepFailure(
                    f"Guest agent not ready within {self.boot_timeout_seconds}s"
                )

            if step.force_network_disconnect:
                logger.debug("Network disconnect requested for %s; not supported by controller",
                             vm_name)

            # 3. Login
            username = vm.guest_username or DEFAULT_GUEST_USERNAME
            password = vm.guest_password or ""
            self.events.info(f"Guest login: {username}", vm_name)
            if not await self.controller.login_guest(handle, username, password):
                raise StepFailure("Guest login failed")

            # 4. Copy in
            phase(ProgressPhase.COPYING_FILES)
            for copy in step.files_to_copy:
                self.events.debug(
                    f"Copying {copy.source_path} -> {copy.destination_path}", vm_name,
                )
                guest_dir = guest_parent_dir(copy.destination_path)
                if guest_dir:
                    # Fails harmlessly when the directory already exists
                    await self.controller.create_guest_directory(handle, guest_dir)
                if not await self.controller.copy_to_guest(
                    handle, copy.source_path, copy.destination_path,
                ):
                    raise StepFailure(f"File copy failed: {copy.source_path}")

            # 5. Execute
            phase(ProgressPhase.EXECUTING_TEST)
            self.events.info(f"Executing: {step.execution.path}", vm_name)
            exec_result = await self._execute(step)
            result.exit_code = exec_result.exit_code
            result.output = exec_result.stdout
            if not exec_result.success:
                result.error_message = exec_result.error_message or exec_result.stderr or None

            # 6. Collect
            phase(ProgressPhase.COLLECTING_RESULTS)
            await self._collect(step, vm_name, result)

            # 7. Screenshot
            if step.capture_screenshots:
                shot = self.result_dir(step) / f"{vm_name}_{step.name}_final.png"
                if await self.controller.capture_screenshot(handle, str(shot)):
                    result.screenshot_paths.append(str(shot))
                else:
                    self.events.warning("Screenshot capture failed", vm_name)

            # 8. Evaluate
            if exec_result.timed_out:
                result.status = StepStatus.TIMEOUT
                result.error_message = result.error_message or (
                    f"Execution timed out after {step.execution.timeout_seconds}s"
                )
            elif evaluate(step.success_criteria, result.exit_code, result.output):
                result.status = StepStatus.PASSED
            else:
                result.status = StepStatus.FAILED

            # 9. Revert after
            if step.force_snapshot_revert_after:
                reverted_after = True
                await self._revert_after(step, vm_name)

        except Exception as e:
            result.status = StepStatus.ERROR
            result.error_message = str(e)
            self.events.error(f"Step error: {e}", vm_name)
        finally:
            if reverted and step.force_snapshot_revert_after and not reverted_after:
                await self._revert_after(step, vm_name)
            result.end_time = datetime.now()

        passed = result.status == StepStatus.PASSED
        phase(ProgressPhase.COMPLETED if passed else ProgressPhase.FAILED)
        self.events.log(
            LogLevel.INFO if passed else LogLevel.ERROR,
            f"{step.name}: {result.status.value}",
            vm_name,
        )
        return result

    async def _execute(self, step: Step) -> GuestProcessResult:
        execution = step.execution
        if execution.kind == ExecutionKind.SCRIPT:
            script = f'/c "{execution.path}" {execution.arguments}'.rstrip()
            return await self.controller.run_script_in_guest(
                step.target_vm, GUEST_SHELL, script, execution.timeout_seconds,
            )
        return await self.controller.run_program_in_guest(
            step.target_vm, execution.path, execution.arguments,
            execution.timeout_seconds, wait=execution.wait_for_exit,
        )

    async def _collect(self, step: Step, vm_name: str, result: StepResult) -> None:
        if not step.result_files:
            return
        result_dir = self.result_dir(step)
        for copy in step.result_files:
            host_path = expand_result_path(
                copy.destination_path, result_dir, vm_name, step.name, datetime.now(),
            )
            self.events.debug(f"Collecting {copy.source_path} -> {host_path}", vm_name)
            if await self.controller.copy_from_guest(step.target_vm, copy.source_path, host_path):
                result.collected_file_paths.append(host_path)
            else:
                self.events.warning(f"Result file not collected: {copy.source_path}", vm_name)

    async def _revert_after(self, step: Step, vm_name: str) -> None:
        """Best-effort revert; never changes the step's decided status."""
        self.events.info("Reverting snapshot after step", vm_name)
        try:
            ok = await self.controller.revert_to_snapshot(step.target_vm, step.snapshot_name)
        except Exception as e:
            self.events.warning(f"Post-step revert to {step.snapshot_name} raised: {e}", vm_name)
            return
        if not ok:
            self.events.warning(f"Post-step revert to {step.snapshot_name} failed", vm_name)
