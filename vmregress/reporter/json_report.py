"""JSON report output."""

from __future__ import annotations

import json
from pathlib import Path

from vmregress.models.result import ScenarioResult, format_duration


def generate_json_report(result: ScenarioResult, output_path: Path) -> None:
    """Write a machine-readable JSON report."""
    report = result.model_dump()
    report["duration"] = format_duration(result.duration)
    report["failed_steps"] = [
        {
            "step_name": r.step_name,
            "vm_name": r.vm_name,
            "status": r.status.value,
            "exit_code": r.exit_code,
            "error_message": r.error_message,
        }
        for r in result.step_results
        if r.status.value in ("failed", "error", "timeout")
    ]

    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(report, f, indent=2, default=str, ensure_ascii=False)
