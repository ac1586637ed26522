"""Scenario orchestrator: runs a scenario's hooks and steps against VMs."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional

from vmregress.event_stream import EventStream
from vmregress.executor.conditions import condition_met, describe
from vmregress.executor.hooks import HookRunner
from vmregress.executor.step_executor import DEFAULT_BOOT_TIMEOUT_SECONDS, StepExecutor
from vmregress.models.config import VMInfo
from vmregress.models.events import LogLevel
from vmregress.models.result import FAILURE_STATUSES, ScenarioResult, StepResult, StepStatus
from vmregress.models.scenario import (
    ConditionType,
    PostEventCondition,
    Scenario,
    ScenarioEvent,
    Step,
)
from vmregress.notifications import Notifier
from vmregress.vm.controller import VMController

logger = logging.getLogger(__name__)


class ScenarioAlreadyRunningError(RuntimeError):
    pass


class VMConnectionError(ConnectionError):
    pass


class ScenarioOrchestrator:
    """Runs one scenario at a time against a VM controller.

    Steps are dispatched sequentially when ``max_parallel`` is 1, otherwise
    concurrently behind an admission gate of that size. ``cancel`` only stops
    steps that have not started yet; a step in flight runs to completion.
    """

    def __init__(
        self,
        controller: VMController,
        registered_vms: dict[str, VMInfo] | None = None,
        result_root: Path | str = "./results",
        events: EventStream | None = None,
        notifier: Notifier | None = None,
        hook_runner: HookRunner | None = None,
        step_executor: StepExecutor | None = None,
        boot_timeout_seconds: int = DEFAULT_BOOT_TIMEOUT_SECONDS,
    ):
        self.controller = controller
        self.registered_vms = registered_vms or {}
        self.result_root = Path(result_root)
        self.events = events or EventStream()
        self.notifier = notifier
        self.hook_runner = hook_runner or HookRunner(self.result_root, self.events)
        self.step_executor = step_executor or StepExecutor(
            controller, self.result_root, self.events, boot_timeout_seconds,
        )
        self._running = False
        self._cancel = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._running

    def cancel(self) -> None:
        if self._running and not self._cancel.is_set():
            self.events.warning("Cancellation requested")
        self._cancel.set()

    def resolve_vm(self, handle: str) -> VMInfo:
        return self.registered_vms.get(handle) or VMInfo.for_handle(handle)

    async def run(self, scenario: Scenario) -> ScenarioResult:
        if self._running:
            raise ScenarioAlreadyRunningError(
                f"A scenario is already running; cannot start '{scenario.name}'"
            )
        self._running = True
        # Fresh per run: an Event binds to the loop that first waits on it
        self._cancel = asyncio.Event()

        result = ScenarioResult(
            scenario_id=scenario.scenario_id,
            scenario_name=scenario.name,
            start_time=datetime.now(),
        )
        try:
            self.events.info(f"Scenario started: {scenario.name}")
            await self._notify(lambda n: n.on_scenario_started(scenario))

            if scenario.pre_event and scenario.pre_event.enabled:
                if not await self._run_hook(scenario.pre_event, scenario, None, "Pre-event"):
                    if scenario.pre_event.stop_on_failure:
                        self.events.error("Pre-event failed; scenario aborted")
                        result.error_message = "Pre-event failed"
                        result.end_time = datetime.now()
                        await self._notify(lambda n: n.on_scenario_completed(result))
                        return result

            try:
                await self._run_body(scenario, result)
            except Exception as e:
                logger.debug("Scenario %s aborted", scenario.name, exc_info=True)
                result.error_message = str(e)
                result.end_time = datetime.now()
                self.events.error(f"Scenario error: {e}")
                await self._notify(lambda n: n.on_error(str(e)))
                post = scenario.post_event
                if post and post.enabled and post.run_condition in (
                    PostEventCondition.ALWAYS, PostEventCondition.ON_FAILURE,
                ):
                    await self._run_hook(post, scenario, result, "Post-event")

            result.cancelled = self._cancel.is_set()
            self.events.log(
                self._summary_level(result),
                f"Scenario finished: {result.passed_count}/{result.total_count} passed, "
                f"{result.failed_count} failed, {result.error_count} errors",
            )
            await self._notify(lambda n: n.on_scenario_completed(result))
            return result
        finally:
            self._running = False
            self._cancel.clear()

    async def _run_body(self, scenario: Scenario, result: ScenarioResult) -> None:
        if not self.controller.is_connected:
            self.events.info("Connecting to VM controller")
            if not await self.controller.connect():
                raise VMConnectionError("Failed to connect to the VM controller")

        steps = scenario.ordered_steps()
        if scenario.max_parallel > 1:
            await self._run_parallel(steps, scenario.max_parallel, result)
        else:
            await self._run_sequential(steps, scenario.continue_on_failure, result)

        result.end_time = datetime.now()

        post = scenario.post_event
        if post and post.enabled:
            if self._post_condition_met(post, result):
                await self._run_hook(post, scenario, result, "Post-event")
            else:
                self.events.debug(f"Post-event skipped ({post.run_condition.value})")

    async def _run_sequential(
        self, steps: list[Step], continue_on_failure: bool, result: ScenarioResult,
    ) -> None:
        total = len(steps)
        for position, step in enumerate(steps, start=1):
            if self._cancel.is_set():
                self.events.warning(f"Cancelled before step {position}/{total}")
                break

            if not condition_met(step.condition, result.step_results):
                vm = self.resolve_vm(step.target_vm)
                now = datetime.now()
                skipped = StepResult(
                    step_id=step.step_id, step_name=step.name, vm_name=vm.name,
                    status=StepStatus.SKIPPED, start_time=now, end_time=now,
                    error_message=f"Condition not met: {describe(step.condition)}",
                )
                self.events.info(f"{step.name}: skipped ({describe(step.condition)})", vm.name)
                result.step_results.append(skipped)
                continue

            step_result = await self._run_step(step, position, total)
            result.step_results.append(step_result)

            if step_result.status == StepStatus.FAILED and not continue_on_failure:
                self.events.warning(f"Step {step.name} failed; stopping scenario")
                break

    async def _run_parallel(
        self, steps: list[Step], max_parallel: int, result: ScenarioResult,
    ) -> None:
        total = len(steps)
        gate = asyncio.Semaphore(max_parallel)
        lock = asyncio.Lock()

        if any(s.condition and s.condition.condition_type != ConditionType.ALWAYS for s in steps):
            self.events.warning("Step conditions are ignored when steps run in parallel")

        async def _run_one(position: int, step: Step) -> None:
            if not await self._admit(gate):
                return
            try:
                step_result = await self._run_step(step, position, total)
                async with lock:
                    result.step_results.append(step_result)
            finally:
                gate.release()

        await asyncio.gather(*(_run_one(i, s) for i, s in enumerate(steps, start=1)))

    async def _admit(self, gate: asyncio.Semaphore) -> bool:
        """Acquire the gate unless cancellation fires first."""
        if self._cancel.is_set():
            return False
        acquire = asyncio.ensure_future(gate.acquire())
        cancelled = asyncio.ensure_future(self._cancel.wait())
        done, _ = await asyncio.wait({acquire, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        cancelled.cancel()
        if acquire in done and not self._cancel.is_set():
            return True
        if acquire in done:
            gate.release()
        else:
            acquire.cancel()
        return False

    async def _run_step(self, step: Step, position: int, total: int) -> StepResult:
        vm = self.resolve_vm(step.target_vm)
        self.events.info(f"Step {position}/{total}: {step.name}", vm.name)
        step_result = await self.step_executor.run_step(step, vm, position, total)
        if step_result.status in FAILURE_STATUSES:
            await self._notify(lambda n: n.on_step_failed(step_result))
        return step_result

    async def _run_hook(
        self,
        event: ScenarioEvent,
        scenario: Scenario,
        result: Optional[ScenarioResult],
        label: str,
    ) -> bool:
        self.events.info(f"Running {label.lower()}: {event.command}")
        hook = await self.hook_runner.run(event, scenario.name, result)
        if hook.success:
            self.events.info(f"{label} completed")
        else:
            self.events.warning(f"{label} failed: {hook.error_message}")
        return hook.success

    @staticmethod
    def _post_condition_met(event: ScenarioEvent, result: ScenarioResult) -> bool:
        match event.run_condition:
            case PostEventCondition.ON_SUCCESS:
                return result.failed_count == 0
            case PostEventCondition.ON_FAILURE:
                return result.failed_count > 0
        return True

    @staticmethod
    def _summary_level(result: ScenarioResult) -> LogLevel:
        return LogLevel.INFO if result.is_success and not result.error_message else LogLevel.WARNING

    async def _notify(self, call: Callable[[Notifier], Awaitable[None]]) -> None:
        if self.notifier is None:
            return
        try:
            await call(self.notifier)
        except Exception as e:
            logger.warning("Notifier failed: %s", e)
