"""Hook runner: executes scenario pre/post events on the host."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from vmregress.cmdline import split_arguments
from vmregress.event_stream import EventStream
from vmregress.models.result import ScenarioResult, format_duration
from vmregress.models.scenario import EventType, ScenarioEvent

logger = logging.getLogger(__name__)


@dataclass
class HookResult:
    success: bool = False
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    error_message: Optional[str] = None
    timed_out: bool = False


def result_dir_for(result_root: Path, now: datetime) -> Path:
    """Per-day result directory shared by hooks and steps."""
    return result_root / now.strftime("%Y%m%d")


def expand_event_macros(
    text: Optional[str],
    scenario_name: str,
    result: Optional[ScenarioResult],
    result_root: Path,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """Substitute ``{ScenarioName}``-style placeholders in an event string."""
    if not text:
        return text
    now = now or datetime.now()
    output = (
        text.replace("{ScenarioName}", scenario_name)
        .replace("{Date}", now.strftime("%Y-%m-%d"))
        .replace("{Time}", now.strftime("%H-%M-%S"))
        .replace("{DateTime}", now.strftime("%Y%m%d_%H%M%S"))
        .replace("{ResultDir}", str(result_dir_for(result_root, now)))
    )
    if result is not None:
        output = (
            output.replace("{PassedCount}", str(result.passed_count))
            .replace("{FailedCount}", str(result.failed_count))
            .replace("{TotalCount}", str(result.total_count))
            .replace("{Duration}", format_duration(result.duration))
            .replace("{Success}", str(result.failed_count == 0))
        )
    return output


def build_invocation(
    event: ScenarioEvent, command: str, arguments: str, platform: str = os.name,
) -> list[str]:
    """Resolve the argv used to launch an event for the given platform."""
    windows = platform == "nt"
    args = split_arguments(arguments, posix=not windows)

    match event.event_type:
        case EventType.POWERSHELL:
            interpreter = "powershell.exe" if windows else "pwsh"
            return [interpreter, "-ExecutionPolicy", "Bypass", "-File", command, *args]
        case EventType.BATCH_FILE:
            if windows:
                return ["cmd.exe", "/c", command, *args]
            return ["/bin/sh", command, *args]
        case EventType.COMMAND:
            line = f"{command} {arguments}".strip() if arguments else command
            if windows:
                return ["cmd.exe", "/c", line]
            return ["/bin/sh", "-c", line]
        case _:
            return [command, *args]


def build_environment(
    event: ScenarioEvent,
    scenario_name: str,
    result: Optional[ScenarioResult],
    result_root: Path,
    now: Optional[datetime] = None,
) -> dict[str, str]:
    now = now or datetime.now()
    env = dict(os.environ)
    for key, value in event.environment_variables.items():
        env[key] = expand_event_macros(value, scenario_name, result, result_root, now) or ""

    env["SCENARIO_NAME"] = scenario_name
    env["TEST_DATE"] = now.strftime("%Y-%m-%d")
    env["TEST_TIME"] = now.strftime("%H:%M:%S")
    if result is not None:
        env["TEST_PASSED"] = str(result.passed_count)
        env["TEST_FAILED"] = str(result.failed_count)
        env["TEST_TOTAL"] = str(result.total_count)
        env["TEST_SUCCESS"] = str(result.failed_count == 0)
    return env


class HookRunner:
    """Runs a ``ScenarioEvent`` as a host process and reports the outcome.

    Output is streamed line by line into the event stream while the process
    runs. ``run`` never raises: launch errors, timeouts and non-zero exits all
    come back as a failed ``HookResult``.
    """

    def __init__(
        self,
        result_root: Path,
        events: EventStream | None = None,
        platform: str = os.name,
    ):
        self.result_root = Path(result_root)
        self.events = events or EventStream()
        self.platform = platform

    async def run(
        self,
        event: ScenarioEvent,
        scenario_name: str,
        result: Optional[ScenarioResult] = None,
    ) -> HookResult:
        now = datetime.now()
        try:
            command = expand_event_macros(event.command, scenario_name, result, self.result_root, now)
            arguments = expand_event_macros(
                event.arguments, scenario_name, result, self.result_root, now,
            )
            argv = build_invocation(event, command or "", arguments or "", self.platform)

            cwd = None
            if event.working_directory:
                cwd = expand_event_macros(
                    event.working_directory, scenario_name, result, self.result_root, now,
                )
            env = build_environment(event, scenario_name, result, self.result_root, now)

            logger.debug("Launching event: %s (cwd=%s)", argv, cwd or os.getcwd())
            return await self._execute(argv, cwd, env, event)
        except Exception as e:
            logger.warning("Event %s failed to run: %s", event.command, e)
            return HookResult(success=False, error_message=str(e))

    async def _execute(
        self, argv: list[str], cwd: str | None, env: dict[str, str], event: ScenarioEvent,
    ) -> HookResult:
        kwargs: dict = {}
        if self.platform == "nt":
            if event.hide_window:
                kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW
        else:
            # Own process group so a timeout can take down shell children too
            kwargs["start_new_session"] = True

        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            **kwargs,
        )

        stdout_lines: list[str] = []
        stderr_lines: list[str] = []
        readers = [
            asyncio.create_task(self._pump(proc.stdout, stdout_lines, is_error=False)),
            asyncio.create_task(self._pump(proc.stderr, stderr_lines, is_error=True)),
        ]

        try:
            await asyncio.wait_for(proc.wait(), timeout=event.timeout_seconds)
        except asyncio.TimeoutError:
            self._kill(proc)
            await proc.wait()
            for task in readers:
                task.cancel()
            await asyncio.gather(*readers, return_exceptions=True)
            return HookResult(
                success=False,
                stdout="\n".join(stdout_lines),
                stderr="\n".join(stderr_lines),
                error_message=f"Event timed out after {event.timeout_seconds}s",
                timed_out=True,
            )

        await asyncio.gather(*readers)
        stdout = "\n".join(stdout_lines)
        stderr = "\n".join(stderr_lines)
        exit_code = proc.returncode
        result = HookResult(
            success=exit_code == 0, exit_code=exit_code, stdout=stdout, stderr=stderr,
        )
        if not result.success:
            result.error_message = f"Exit code: {exit_code}"
            if stderr.strip():
                result.error_message += f"\n{stderr}"
        return result

    async def _pump(
        self, stream: asyncio.StreamReader | None, sink: list[str], is_error: bool,
    ) -> None:
        if stream is None:
            return
        while True:
            raw = await stream.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line:
                continue
            sink.append(line)
            if is_error:
                self.events.warning(f"[Event Error] {line}")
            else:
                self.events.debug(f"[Event] {line}")

    def _kill(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        if self.platform != "nt" and hasattr(os, "killpg"):
            try:
                os.killpg(proc.pid, signal.SIGKILL)
                return
            except ProcessLookupError:
                return
            except OSError as e:
                logger.debug("killpg(%d) failed, killing process only: %s", proc.pid, e)
        proc.kill()
