from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from rlsmanager.config.defaults import logger
from rlsmanager.data_classes import StepStatus

SEPARATOR = "=" * 67

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


@dataclass(frozen=True)
class LogEntry:
    ts: float
    message: str
    severity: str = "INFO"
    error_code: Optional[int] = None
    error_name: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "ts": self.ts,
            "message": self.message,
            "severity": self.severity,
            "errorCode": self.error_code,
            "errorName": self.error_name,
        }


class PipelineContext:
    """
    Event sink shared by every phase of a publish or delete run.

    Steps are reported with ``report_step``; human-readable lines go through
    ``log``. Entries are only ever appended. Optional callbacks receive each
    event as it happens (used by the HTTP layer and by tests).
    """

    def __init__(
        self,
        on_step: Optional[Callable[[str, StepStatus], None]] = None,
        on_log: Optional[Callable[[LogEntry], None]] = None,
    ):
        self._on_step = on_step
        self._on_log = on_log
        self._entries: List[LogEntry] = []
        self.steps: Dict[str, StepStatus] = {}

    @property
    def entries(self) -> List[LogEntry]:
        return list(self._entries)

    def report_step(self, step: str, status: StepStatus) -> None:
        self.steps[step] = status
        logger.debug(f"[pipeline] {step} -> {status.value}")
        if self._on_step:
            self._on_step(step, status)

    def log(
        self,
        message: str,
        severity: str = "INFO",
        error_code: Optional[int] = None,
        error_name: Optional[str] = None,
    ) -> None:
        severity = severity.upper()
        entry = LogEntry(time.time(), message, severity, error_code, error_name)
        self._entries.append(entry)
        logger.log(_LEVELS.get(severity, logging.INFO), message)
        if self._on_log:
            self._on_log(entry)

    def separator(self) -> None:
        self.log(SEPARATOR)

    def to_dict(self) -> Dict[str, object]:
        return {
            "steps": {k: v.value for k, v in self.steps.items()},
            "log": [e.to_dict() for e in self._entries],
        }
