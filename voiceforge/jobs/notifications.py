"""Terminal job notifications."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List

from .models import HistoryRecord
from .progress import ProgressSnapshot

logger = logging.getLogger(__name__)


class JobOutcome(str, Enum):
    ALL_SUCCEEDED = "all_succeeded"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TerminalEvent:
    """Payload delivered once per job when it terminates."""
    job_id: str
    outcome: JobOutcome
    record: HistoryRecord
    progress: ProgressSnapshot

    @classmethod
    def build(cls, record: HistoryRecord, progress: ProgressSnapshot, cancelled: bool) -> 'TerminalEvent':
        if cancelled:
            outcome = JobOutcome.CANCELLED
        elif progress.failed == 0:
            outcome = JobOutcome.ALL_SUCCEEDED
        elif progress.completed > 0:
            outcome = JobOutcome.PARTIALLY_FAILED
        else:
            outcome = JobOutcome.FAILED
        return cls(job_id=record.job_id, outcome=outcome, record=record, progress=progress)

    def format_message(self) -> str:
        if self.outcome == JobOutcome.ALL_SUCCEEDED:
            return f"Generation completed successfully ({self.progress.completed} item(s))"
        if self.outcome == JobOutcome.PARTIALLY_FAILED:
            return f"Generation finished: {self.progress.completed} succeeded, {self.progress.failed} failed"
        if self.outcome == JobOutcome.FAILED:
            return f"Generation failed for all {self.progress.failed} item(s)"
        return f"Generation cancelled after {self.progress.completed} of {self.progress.total} item(s)"


class NotificationSink(ABC):
    """Receiver of terminal job events, usually the user-facing layer."""

    @abstractmethod
    def notify(self, event: TerminalEvent) -> None:
        ...


class LoggingNotificationSink(NotificationSink):
    """Default sink: writes terminal events to the log."""

    def notify(self, event: TerminalEvent) -> None:
        level = logging.INFO if event.outcome == JobOutcome.ALL_SUCCEEDED else logging.WARNING
        logger.log(level, "[%s] %s", event.job_id, event.format_message())


class CallbackNotificationSink(NotificationSink):
    """Sink forwarding events to plain callables."""

    def __init__(self, *callbacks: Callable[[TerminalEvent], None]):
        self.callbacks: List[Callable[[TerminalEvent], None]] = list(callbacks)

    def notify(self, event: TerminalEvent) -> None:
        for callback in self.callbacks:
            callback(event)
