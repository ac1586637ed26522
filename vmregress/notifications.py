"""Notification collaborator: scenario start/finish/failure announcements."""

from __future__ import annotations

import logging
from typing import Protocol

from vmregress.models.config import NotificationSettings
from vmregress.models.result import ScenarioResult, StepResult, format_duration
from vmregress.models.scenario import Scenario
from vmregress.reporter.reporter import summary_text

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def on_scenario_started(self, scenario: Scenario) -> None: ...

    async def on_scenario_completed(self, result: ScenarioResult) -> None: ...

    async def on_step_failed(self, result: StepResult) -> None: ...

    async def on_error(self, message: str) -> None: ...


class LogNotifier:
    """Announces through the ``vmregress.notifications`` logger."""

    async def on_scenario_started(self, scenario: Scenario) -> None:
        logger.info("Scenario started: %s (%d steps)", scenario.name, len(scenario.steps))

    async def on_scenario_completed(self, result: ScenarioResult) -> None:
        logger.info(
            "Scenario %s in %s. %s",
            "succeeded" if result.is_success else "failed",
            format_duration(result.duration),
            summary_text(result),
        )

    async def on_step_failed(self, result: StepResult) -> None:
        logger.warning("Step failed: %s on %s (%s)", result.step_name, result.vm_name,
                       result.error_message or result.status.value)

    async def on_error(self, message: str) -> None:
        logger.error("Scenario error: %s", message)


class NotificationManager:
    """Gates each callback on the settings before handing it to a channel.

    The orchestrator calls every method unconditionally; whether anything is
    sent is decided here.
    """

    def __init__(self, settings: NotificationSettings, notifier: Notifier | None):
        self.settings = settings
        self.notifier = notifier

    def _active(self, flag: bool) -> bool:
        return self.notifier is not None and self.settings.enabled and flag

    async def on_scenario_started(self, scenario: Scenario) -> None:
        if self._active(self.settings.notify_on_start):
            await self.notifier.on_scenario_started(scenario)

    async def on_scenario_completed(self, result: ScenarioResult) -> None:
        if self._active(self.settings.notify_on_complete):
            await self.notifier.on_scenario_completed(result)

    async def on_step_failed(self, result: StepResult) -> None:
        if self._active(self.settings.notify_on_failure):
            await self.notifier.on_step_failed(result)

    async def on_error(self, message: str) -> None:
        if self._active(self.settings.notify_on_error):
            await self.notifier.on_error(message)


def build_notification_manager(settings: NotificationSettings) -> NotificationManager:
    """Pick the channel named in the settings."""
    channel = settings.channel.lower()
    if channel == "log":
        return NotificationManager(settings, LogNotifier())
    if channel != "none":
        logger.warning("Unknown notification channel '%s'; notifications disabled",
                       settings.channel)
    return NotificationManager(settings, None)
