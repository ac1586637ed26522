"""Report generation orchestration."""

from __future__ import annotations

import logging
from pathlib import Path

from vmregress.models.config import HarnessConfig
from vmregress.models.result import ScenarioResult

from .html_report import generate_html_report
from .json_report import generate_json_report

logger = logging.getLogger(__name__)


class Reporter:
    """Generates reports from scenario results."""

    def __init__(self, config: HarnessConfig):
        self.config = config

    def generate_reports(
        self, result: ScenarioResult, output_dir: Path | None = None,
    ) -> dict[str, str]:
        """Generate all configured report formats. Returns format -> file path."""
        out_dir = Path(output_dir or self.config.report_output_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        generated = {}
        logger.debug("Report output directory: %s", out_dir)

        stem = f"report_{result.scenario_id}_{result.start_time.strftime('%Y%m%d_%H%M%S')}"

        if "html" in self.config.report_formats:
            path = out_dir / f"{stem}.html"
            generate_html_report(result, path)
            generated["html"] = str(path)
            logger.info("HTML report: %s", path)

        if "json" in self.config.report_formats:
            path = out_dir / f"{stem}.json"
            generate_json_report(result, path)
            generated["json"] = str(path)
            logger.info("JSON report: %s", path)

        return generated


def summary_text(result: ScenarioResult) -> str:
    """One-line count summary, as announced by the log notifier."""
    return (
        f"{result.scenario_name}: {result.total_count} steps, "
        f"{result.passed_count} passed, {result.failed_count} failed, "
        f"{result.skipped_count} skipped, {result.error_count} errors"
    )
