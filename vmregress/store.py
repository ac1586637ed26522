"""Scenario store: persists scenarios and run results as JSON documents."""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from pathlib import Path

from vmregress.models.result import ScenarioResult
from vmregress.models.scenario import Scenario

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def safe_file_name(name: str) -> str:
    """Turn a display name into something usable as a file name."""
    cleaned = _UNSAFE_CHARS.sub("_", name).strip().strip(".")
    return cleaned or "scenario"


class ScenarioStore:
    """Manages a directory of ``<name>.json`` scenario documents."""

    def __init__(self, directory: Path | str):
        self.directory = Path(directory)

    def path_for(self, scenario: Scenario) -> Path:
        return self.directory / f"{safe_file_name(scenario.name)}.json"

    def load_all(self) -> list[Scenario]:
        """Load every readable scenario; broken documents are logged and skipped."""
        if not self.directory.exists():
            return []
        scenarios = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                with open(path, encoding="utf-8") as f:
                    data = json.load(f)
                scenarios.append(Scenario(**data))
            except Exception as e:
                logger.warning("Skipping unreadable scenario %s: %s", path, e)
        return scenarios

    def find(self, name: str) -> Scenario | None:
        for scenario in self.load_all():
            if scenario.name.lower() == name.lower():
                return scenario
        return None

    def find_by_id(self, scenario_id: str) -> Scenario | None:
        return next((s for s in self.load_all() if s.scenario_id == scenario_id), None)

    def save(self, scenario: Scenario) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(scenario)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(scenario.model_dump(mode="json"), f, indent=2)
        logger.debug("Saved scenario %s to %s", scenario.name, path)
        return path

    def delete(self, scenario: Scenario) -> bool:
        path = self.path_for(scenario)
        if not path.exists():
            return False
        path.unlink()
        logger.debug("Deleted scenario file %s", path)
        return True


def save_result(result: ScenarioResult, output_dir: Path | str) -> Path:
    """Write a run result to ``<output_dir>/<yyyyMMdd>/<name>_<HHmmss>.json``."""
    stamp = result.start_time or datetime.now()
    day_dir = Path(output_dir) / stamp.strftime("%Y%m%d")
    day_dir.mkdir(parents=True, exist_ok=True)
    path = day_dir / f"{safe_file_name(result.scenario_name)}_{stamp.strftime('%H%M%S')}.json"
    with open(path, "w", encoding="utf-8") as f:
        json.dump(result.model_dump(mode="json"), f, indent=2)
    logger.info("Result saved to %s", path)
    return path
