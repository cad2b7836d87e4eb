"""
Batch generation job system for VoiceForge.

This package turns a set of text items into audio through a synthesis
gateway. Items are validated on submission, dispatched sequentially or by
a bounded worker pool, tracked with live progress, and every finished job
leaves exactly one record in a SQLite history store.

Key Components:
- JobManager: High-level API for submission, progress, cancel and history
- JobScheduler: Per-job execution and completion tracking
- ItemValidator: Type and size admission checks
- HistoryStore: SQLite persistence layer
- JobLogger: Structured logging system

Example Usage:
    from voiceforge.jobs import JobManager, ItemRequest, ExecutionPolicy

    manager = JobManager()
    submission = manager.submit_batch(
        [ItemRequest.from_file("intro.txt"), ItemRequest.from_file("outro.txt")],
        execution_policy=ExecutionPolicy.PARALLEL
    )

    record = await manager.run_job(submission.job_id)
    print(record.format_status_message())
"""

__version__ = "1.0.0"

# Import key components for easy access
from .models import (
    BatchJob,
    JobItem,
    ItemRequest,
    ItemStatus,
    JobStatus,
    JobKind,
    ExecutionPolicy,
    OutputNaming,
    OutputDescriptor,
    HistoryFilter,
    HistoryRecord,
    ErrorInfo,
    JobID,
    format_file_size
)

from .validator import (
    ItemValidator,
    ValidationResult,
    Rejection,
    ContentClass,
    FileType,
    BATCH_SCRIPT,
    DOCUMENT,
    AUDIO_SAMPLE,
    validate
)
from .progress import ProgressSnapshot, JobSnapshot, snapshot, job_snapshot
from .storage import HistoryStore
from .logger import JobLogger
from .notifications import (
    JobOutcome,
    TerminalEvent,
    NotificationSink,
    LoggingNotificationSink,
    CallbackNotificationSink
)
from .packaging import bundle_outputs
from .scheduler import JobScheduler
from .manager import JobManager, Submission, assign_output_names
from .runner import run_batch

__all__ = [
    # Data models
    'BatchJob',
    'JobItem',
    'ItemRequest',
    'ItemStatus',
    'JobStatus',
    'JobKind',
    'ExecutionPolicy',
    'OutputNaming',
    'OutputDescriptor',
    'HistoryFilter',
    'HistoryRecord',
    'ErrorInfo',
    'JobID',
    'format_file_size',

    # Admission
    'ItemValidator',
    'ValidationResult',
    'Rejection',
    'ContentClass',
    'FileType',
    'BATCH_SCRIPT',
    'DOCUMENT',
    'AUDIO_SAMPLE',
    'validate',

    # Progress
    'ProgressSnapshot',
    'JobSnapshot',
    'snapshot',
    'job_snapshot',

    # Core components
    'HistoryStore',
    'JobLogger',
    'JobOutcome',
    'TerminalEvent',
    'NotificationSink',
    'LoggingNotificationSink',
    'CallbackNotificationSink',
    'bundle_outputs',
    'JobScheduler',
    'JobManager',
    'Submission',
    'assign_output_names',

    # Runner
    'run_batch',
]
