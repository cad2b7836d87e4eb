"""
Structured logging for generation jobs.

Entries are persisted next to the history records and mirrored to the
standard `logging` hierarchy under `voiceforge.job.<job_id>`.
"""

import logging
import threading
import traceback
from typing import Optional, Dict, Any

from ..errors import PersistenceError
from .models import JobID
from .storage import HistoryStore

logger = logging.getLogger(__name__)


class JobLogger:
    """
    Logger for job-specific structured logging.

    Features:
    - Thread-safe logging operations
    - Persistence to the history database
    - Structured metadata support
    - Standard Python logging integration
    """

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

    def __init__(self, job_id: JobID, store: HistoryStore):
        """
        Initialize logger for a specific job.

        Args:
            job_id: Job ID to log for
            store: HistoryStore used for persistence
        """
        self.job_id = job_id
        self.store = store
        self._lock = threading.Lock()
        self._py_logger = logging.getLogger(f"voiceforge.job.{job_id}")

    def _log(self, level: str, message: str, metadata: Optional[Dict[str, Any]] = None):
        with self._lock:
            # Job logs are best-effort; a failed write must not stall the job
            try:
                self.store.add_log(
                    job_id=self.job_id,
                    level=level,
                    message=message,
                    metadata=metadata
                )
            except PersistenceError:
                logger.exception("Could not persist log entry for job %s", self.job_id)

            py_level = self._level_to_py_level(level)
            if self._py_logger.isEnabledFor(py_level):
                extra_msg = f" [{metadata}]" if metadata else ""
                self._py_logger.log(py_level, f"{message}{extra_msg}")

    @staticmethod
    def _level_to_py_level(level: str) -> int:
        """Convert string level to Python logging level."""
        return {
            "DEBUG": logging.DEBUG,
            "INFO": logging.INFO,
            "WARNING": logging.WARNING,
            "ERROR": logging.ERROR,
            "CRITICAL": logging.CRITICAL,
        }.get(level, logging.INFO)

    def debug(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        self._log(self.DEBUG, message, metadata)

    def info(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        self._log(self.INFO, message, metadata)

    def warning(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        self._log(self.WARNING, message, metadata)

    def error(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        self._log(self.ERROR, message, metadata)

    def critical(self, message: str, metadata: Optional[Dict[str, Any]] = None):
        self._log(self.CRITICAL, message, metadata)

    def log_progress(self, finished: int, total: int, operation: str, metadata: Optional[Dict[str, Any]] = None):
        """
        Log a job-level progress update.

        Args:
            finished: Items in a terminal state
            total: Items in the job
            operation: Description of the step that just happened
            metadata: Optional additional context
        """
        percentage = (finished / total * 100) if total > 0 else 0

        self.info(
            f"{operation}: {finished}/{total} ({percentage:.1f}%)",
            metadata={
                "finished": finished,
                "total": total,
                "percentage": percentage,
                **(metadata or {})
            }
        )

    def log_item_start(self, index: int, name: str, total: int, attempt: int = 1):
        """Log dispatch of an item to the gateway."""
        suffix = f" (attempt {attempt})" if attempt > 1 else ""
        self.info(
            f"Starting item {index + 1}/{total}: {name}{suffix}",
            metadata={"index": index, "name": name, "total": total, "attempt": attempt}
        )

    def log_item_complete(self, index: int, name: str, location: Optional[str], duration_seconds: float):
        """Log a successful item."""
        self.info(
            f"Completed item {index + 1}: {name} in {duration_seconds:.1f}s",
            metadata={
                "index": index,
                "name": name,
                "location": location,
                "duration_seconds": duration_seconds
            }
        )

    def log_error_with_context(self, error: BaseException, context: str, index: Optional[int] = None):
        """
        Log an error with full context.

        Args:
            error: Exception that occurred
            context: Description of what was being done
            index: Item being processed (if applicable)
        """
        error_metadata = {
            "error_type": type(error).__name__,
            "error_message": str(error),
            "context": context,
            "traceback": ''.join(traceback.format_exception(type(error), error, error.__traceback__)),
        }

        if index is not None:
            error_metadata["index"] = index

        self.error(
            f"Error during {context}: {type(error).__name__}: {error}",
            metadata=error_metadata
        )

    def get_error_logs(self) -> list:
        """
        Get all error and critical logs for this job, newest first.
        """
        error_logs = self.store.get_logs(self.job_id, level=self.ERROR)
        critical_logs = self.store.get_logs(self.job_id, level=self.CRITICAL)

        all_errors = error_logs + critical_logs
        all_errors.sort(key=lambda x: x['timestamp'], reverse=True)

        return all_errors
