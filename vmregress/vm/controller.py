"""VM control interface used by the step executor and orchestrator.

The executor only ever talks to this protocol. Concrete transports (the
``vmrun`` CLI wrapper, an SDK binding, an in-memory fake for tests) are
interchangeable behind it.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from pydantic import BaseModel


class GuestProcessResult(BaseModel):
    success: bool = False
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    error_message: Optional[str] = None
    timed_out: bool = False


class Snapshot(BaseModel):
    name: str
    description: str = ""
    created_time: Optional[datetime] = None
    parent_name: Optional[str] = None


class VMController(Protocol):
    @property
    def is_connected(self) -> bool: ...

    async def connect(self) -> bool: ...

    def disconnect(self) -> None: ...

    async def power_on(self, vm: str) -> bool: ...

    async def wait_for_guest_ready(self, vm: str, timeout_seconds: int = 300) -> bool: ...

    async def revert_to_snapshot(self, vm: str, name: str) -> bool: ...

    async def login_guest(self, vm: str, username: str, password: str) -> bool: ...

    async def copy_to_guest(self, vm: str, host_path: str, guest_path: str) -> bool: ...

    async def copy_from_guest(self, vm: str, guest_path: str, host_path: str) -> bool: ...

    async def create_guest_directory(self, vm: str, guest_path: str) -> bool: ...

    async def run_program_in_guest(
        self, vm: str, program: str, arguments: str,
        timeout_seconds: int = 300, wait: bool = True,
    ) -> GuestProcessResult: ...

    async def run_script_in_guest(
        self, vm: str, interpreter: str, script: str, timeout_seconds: int = 300,
    ) -> GuestProcessResult: ...

    async def capture_screenshot(self, vm: str, host_path: str) -> bool: ...

    async def list_snapshots(self, vm: str) -> list[Snapshot]: ...
