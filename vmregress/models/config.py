"""Configuration models for the regression harness."""

from __future__ import annotations

import json
import os
from pathlib import Path, PureWindowsPath
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from vmregress.models.schedule import ScheduledTask

DEFAULT_CONFIG_FILE = "vmregress.json"


def vm_display_name(handle: str) -> str:
    """Derive a display name from a VM handle such as ``C:\\VMs\\win10.vmx``."""
    # PureWindowsPath splits on both separators
    return PureWindowsPath(handle).stem or handle


class VMInfo(BaseModel):
    name: str
    vmx_path: str
    guest_username: Optional[str] = None
    guest_password: Optional[str] = None

    @field_validator("guest_password", mode="before")
    @classmethod
    def resolve_env_password(cls, v: Optional[str]) -> Optional[str]:
        if isinstance(v, str) and v.startswith("env:"):
            env_var = v[4:]
            resolved = os.environ.get(env_var)
            if resolved is None:
                raise ValueError(f"Environment variable '{env_var}' not set")
            return resolved
        return v

    @classmethod
    def for_handle(cls, handle: str) -> "VMInfo":
        """Build an unregistered VM entry named after its handle."""
        return cls(name=vm_display_name(handle), vmx_path=handle)


class NotificationSettings(BaseModel):
    enabled: bool = False
    channel: str = "log"  # log, none

    notify_on_start: bool = False
    notify_on_complete: bool = True
    notify_on_failure: bool = True
    notify_on_error: bool = True


class HarnessConfig(BaseModel):
    # VM control
    vmrun_path: Optional[str] = None
    boot_timeout_seconds: int = 300
    registered_vms: list[VMInfo] = Field(default_factory=list)

    # Storage
    scenarios_dir: str = "./scenarios"
    result_output_dir: str = "./results"

    # Reporting
    report_formats: list[str] = Field(default_factory=lambda: ["html", "json"])
    report_output_dir: str = "./reports"

    notification: NotificationSettings = Field(default_factory=NotificationSettings)
    scheduled_tasks: list[ScheduledTask] = Field(default_factory=list)

    def vm_lookup(self) -> dict[str, VMInfo]:
        """Map VM handle -> registered VM."""
        return {vm.vmx_path: vm for vm in self.registered_vms}

    def find_vm(self, name: str) -> VMInfo | None:
        for vm in self.registered_vms:
            if vm.name.lower() == name.lower():
                return vm
        return None

    @classmethod
    def load(cls, path: str | Path) -> "HarnessConfig":
        """Load config from a JSON file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        return cls(**data)

    def save(self, path: str | Path) -> None:
        """Save config to a JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2)
