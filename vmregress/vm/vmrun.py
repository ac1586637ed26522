"""VM control through VMware's ``vmrun`` command-line tool."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from vmregress.cmdline import split_arguments

from .controller import GuestProcessResult, Snapshot

logger = logging.getLogger(__name__)

DEFAULT_VMRUN_PATHS = [
    r"C:\Program Files (x86)\VMware\VMware Workstation\vmrun.exe",
    r"C:\Program Files\VMware\VMware Workstation\vmrun.exe",
    "/usr/bin/vmrun",
    "/Applications/VMware Fusion.app/Contents/Library/vmrun",
]

_GUEST_EXIT_CODE = re.compile(r"exit code:\s*(-?\d+)", re.IGNORECASE)


class VmrunTimeout(TimeoutError):
    pass


@dataclass
class VmrunOutput:
    exit_code: int
    stdout: str = ""
    stderr: str = ""


def _no_window_kwargs() -> dict:
    if os.name == "nt":
        return {"creationflags": subprocess.CREATE_NO_WINDOW}
    return {}


class VmrunController:
    """Drives VMs by shelling out to ``vmrun`` for every operation.

    ``vmrun`` authenticates each guest operation separately (``-gu``/``-gp``),
    so ``login_guest`` only records credentials for later calls. Reverting a
    snapshot drops them because the guest session is gone.
    """

    def __init__(
        self,
        vmrun_path: str | None = None,
        host_type: str = "ws",
        poll_interval_seconds: float = 5.0,
    ):
        self.vmrun_path = vmrun_path
        self.host_type = host_type
        self.poll_interval_seconds = poll_interval_seconds
        self._connected = False
        self._credentials: dict[str, tuple[str, str]] = {}

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _resolve_vmrun(self) -> str | None:
        candidates = [self.vmrun_path] if self.vmrun_path else []
        candidates += DEFAULT_VMRUN_PATHS
        for candidate in candidates:
            if candidate and Path(candidate).exists():
                return candidate
        return shutil.which("vmrun")

    async def connect(self) -> bool:
        path = self._resolve_vmrun()
        if path is None:
            logger.error("vmrun not found (checked %s and PATH)",
                         ", ".join(c for c in [self.vmrun_path, *DEFAULT_VMRUN_PATHS] if c))
            self._connected = False
            return False
        self.vmrun_path = path
        try:
            # Without arguments vmrun prints usage; launching at all is enough
            await self._exec([], timeout_seconds=10)
        except (OSError, VmrunTimeout) as e:
            logger.error("vmrun at %s is not usable: %s", path, e)
            self._connected = False
            return False
        logger.debug("Using vmrun at %s", path)
        self._connected = True
        return True

    def disconnect(self) -> None:
        self._credentials.clear()
        self._connected = False

    # --- VM lifecycle ---

    async def power_on(self, vm: str) -> bool:
        return await self._ok("start", vm, "nogui")

    async def wait_for_guest_ready(self, vm: str, timeout_seconds: int = 300) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning("Guest tools on %s not running after %ds", vm, timeout_seconds)
                return False
            try:
                out = await self._run(["checkToolsState", vm], timeout_seconds=max(1, int(remaining)))
            except (OSError, VmrunTimeout) as e:
                logger.warning("checkToolsState failed for %s: %s", vm, e)
                return False
            if "running" in out.stdout:
                return True
            await asyncio.sleep(min(self.poll_interval_seconds, max(0.0, remaining)))

    async def revert_to_snapshot(self, vm: str, name: str) -> bool:
        self._credentials.pop(vm, None)
        return await self._ok("revertToSnapshot", vm, name, timeout_seconds=120)

    async def list_snapshots(self, vm: str) -> list[Snapshot]:
        try:
            out = await self._run(["listSnapshots", vm])
        except (OSError, VmrunTimeout) as e:
            logger.warning("listSnapshots failed for %s: %s", vm, e)
            return []
        if out.exit_code != 0:
            return []
        return [
            Snapshot(name=line.strip())
            for line in out.stdout.splitlines()
            if line.strip() and not line.startswith("Total")
        ]

    # --- Guest operations ---

    async def login_guest(self, vm: str, username: str, password: str) -> bool:
        self._credentials[vm] = (username, password)
        return True

    async def copy_to_guest(self, vm: str, host_path: str, guest_path: str) -> bool:
        return await self._guest_ok(vm, "copyFileFromHostToGuest", vm, host_path, guest_path)

    async def copy_from_guest(self, vm: str, guest_path: str, host_path: str) -> bool:
        Path(host_path).parent.mkdir(parents=True, exist_ok=True)
        return await self._guest_ok(vm, "copyFileFromGuestToHost", vm, guest_path, host_path)

    async def create_guest_directory(self, vm: str, guest_path: str) -> bool:
        return await self._guest_ok(vm, "createDirectoryInGuest", vm, guest_path)

    async def run_program_in_guest(
        self, vm: str, program: str, arguments: str,
        timeout_seconds: int = 300, wait: bool = True,
    ) -> GuestProcessResult:
        flags = ["-activeWindow"] if wait else ["-noWait", "-activeWindow"]
        args = ["runProgramInGuest", vm, *flags, program,
                *split_arguments(arguments, posix=False)]
        return await self._guest_process(vm, args, timeout_seconds)

    async def run_script_in_guest(
        self, vm: str, interpreter: str, script: str, timeout_seconds: int = 300,
    ) -> GuestProcessResult:
        return await self._guest_process(
            vm, ["runScriptInGuest", vm, interpreter, script], timeout_seconds,
        )

    async def capture_screenshot(self, vm: str, host_path: str) -> bool:
        Path(host_path).parent.mkdir(parents=True, exist_ok=True)
        args = ["captureScreen", vm, host_path]
        if vm in self._credentials:
            args = self._auth_args(vm) + args
        try:
            out = await self._run(args)
        except (OSError, VmrunTimeout) as e:
            logger.warning("captureScreen failed for %s: %s", vm, e)
            return False
        return out.exit_code == 0

    # --- internals ---

    def _auth_args(self, vm: str) -> list[str]:
        username, password = self._credentials[vm]
        return ["-gu", username, "-gp", password]

    async def _ok(self, *args: str, timeout_seconds: int = 60) -> bool:
        try:
            out = await self._run(list(args), timeout_seconds=timeout_seconds)
        except (OSError, VmrunTimeout) as e:
            logger.warning("vmrun %s failed: %s", args[0], e)
            return False
        if out.exit_code != 0:
            logger.debug("vmrun %s exited %d: %s", args[0], out.exit_code,
                         (out.stdout + out.stderr).strip())
        return out.exit_code == 0

    async def _guest_ok(self, vm: str, *args: str) -> bool:
        if vm not in self._credentials:
            logger.warning("Guest login required before %s on %s", args[0], vm)
            return False
        return await self._ok(*self._auth_args(vm), *args)

    async def _guest_process(
        self, vm: str, args: list[str], timeout_seconds: int,
    ) -> GuestProcessResult:
        if vm not in self._credentials:
            return GuestProcessResult(success=False, error_message="Guest login required")
        try:
            out = await self._run(self._auth_args(vm) + args, timeout_seconds=timeout_seconds)
        except VmrunTimeout as e:
            return GuestProcessResult(success=False, error_message=str(e), timed_out=True)
        except OSError as e:
            return GuestProcessResult(success=False, error_message=str(e))

        exit_code = out.exit_code
        match = _GUEST_EXIT_CODE.search(out.stdout + out.stderr)
        if match:
            exit_code = int(match.group(1))
        return GuestProcessResult(
            success=out.exit_code == 0,
            exit_code=exit_code,
            stdout=out.stdout,
            stderr=out.stderr,
        )

    async def _run(self, args: list[str], timeout_seconds: int = 60) -> VmrunOutput:
        return await self._exec(["-T", self.host_type, *args], timeout_seconds)

    async def _exec(self, args: list[str], timeout_seconds: int) -> VmrunOutput:
        if not self.vmrun_path:
            raise FileNotFoundError("vmrun path not resolved; call connect() first")
        proc = await asyncio.create_subprocess_exec(
            self.vmrun_path, *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            **_no_window_kwargs(),
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise VmrunTimeout(f"vmrun did not finish within {timeout_seconds}s")
        return VmrunOutput(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
