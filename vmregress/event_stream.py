"""Per-orchestrator progress/log channel.

Each orchestrator owns one ``EventStream``. Observers subscribe to it to
receive typed progress and log events (a CLI printer, a notification bridge,
a test recorder). Log events are mirrored to the standard ``logging`` module
so a run is visible even with no observers attached.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from vmregress.models.events import LogEvent, LogLevel, ProgressEvent, ProgressPhase

logger = logging.getLogger(__name__)

_LOGGING_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class RunObserver(Protocol):
    def on_progress(self, event: ProgressEvent) -> None: ...

    def on_log(self, event: LogEvent) -> None: ...


class EventStream:
    def __init__(self) -> None:
        self._observers: list[RunObserver] = []

    def subscribe(self, observer: RunObserver) -> None:
        self._observers.append(observer)

    def unsubscribe(self, observer: RunObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def progress(
        self,
        step_name: str,
        vm_name: str,
        phase: ProgressPhase,
        current_step: int = 0,
        total_steps: int = 1,
    ) -> ProgressEvent:
        event = ProgressEvent(
            current_step=current_step, total_steps=total_steps,
            step_name=step_name, vm_name=vm_name, phase=phase,
        )
        logger.debug("[%s] %s: %s", vm_name, step_name, phase.value)
        for observer in list(self._observers):
            try:
                observer.on_progress(event)
            except Exception as e:
                logger.warning("Progress observer %r failed: %s", observer, e)
        return event

    def log(
        self, level: LogLevel, message: str, vm_name: Optional[str] = None,
    ) -> LogEvent:
        event = LogEvent(level=level, message=message, vm_name=vm_name)
        if vm_name:
            logger.log(_LOGGING_LEVELS[level], "[%s] %s", vm_name, message)
        else:
            logger.log(_LOGGING_LEVELS[level], "%s", message)
        for observer in list(self._observers):
            try:
                observer.on_log(event)
            except Exception as e:
                logger.warning("Log observer %r failed: %s", observer, e)
        return event

    def debug(self, message: str, vm_name: Optional[str] = None) -> LogEvent:
        return self.log(LogLevel.DEBUG, message, vm_name)

    def info(self, message: str, vm_name: Optional[str] = None) -> LogEvent:
        return self.log(LogLevel.INFO, message, vm_name)

    def warning(self, message: str, vm_name: Optional[str] = None) -> LogEvent:
        return self.log(LogLevel.WARNING, message, vm_name)

    def error(self, message: str, vm_name: Optional[str] = None) -> LogEvent:
        return self.log(LogLevel.ERROR, message, vm_name)
