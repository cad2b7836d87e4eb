"""
Data models for the batch generation pipeline.

History records support JSON serialization/deserialization for storage in SQLite.
"""

import json
import os
import time
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, List

from ..core import AudioArtifact, AudioFormat, OutputQuality, SynthesisSettings, DEFAULT_VOICE


class ItemStatus(str, Enum):
    """Lifecycle status of a single job item."""
    PENDING = "pending"          # Admitted, not yet dispatched
    PROCESSING = "processing"    # Gateway call in flight
    COMPLETED = "completed"      # Artifact produced
    FAILED = "failed"            # Gateway failed, timed out or was abandoned

    @property
    def is_terminal(self) -> bool:
        return self in (ItemStatus.COMPLETED, ItemStatus.FAILED)


class JobStatus(str, Enum):
    """Derived status of a batch job."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class JobKind(str, Enum):
    SINGLE = "single"
    BATCH = "batch"


class ExecutionPolicy(str, Enum):
    """How the items of a job are dispatched to the gateway."""
    SEQUENTIAL = "sequential"    # One at a time, in submission order
    PARALLEL = "parallel"        # Bounded worker pool, order not preserved


class OutputNaming(str, Enum):
    """How output files of a batch are named."""
    ORIGINAL = "original"        # Keep the source name
    SEQUENTIAL = "sequential"    # <prefix>_001, <prefix>_002, ...
    CUSTOM = "custom"            # Template with {index} and {name}


class HistoryFilter(str, Enum):
    """Filters offered by the history view."""
    ALL = "all"
    KIND_SINGLE = "single"
    KIND_BATCH = "batch"
    STATUS_COMPLETED = "completed"
    STATUS_PROCESSING = "processing"


@dataclass
class ItemRequest:
    """
    One unit submitted by the caller: text or a text file plus voice settings.

    The pipeline keeps a reference to this object rather than copying the
    text; file contents are read only when the item is dispatched.
    """
    name: str = "untitled.txt"
    text: Optional[str] = None
    file_path: Optional[str] = None
    content_type: str = "text/plain"
    size_bytes: Optional[int] = None
    voice_ref: str = DEFAULT_VOICE
    settings: SynthesisSettings = field(default_factory=SynthesisSettings)

    def __post_init__(self):
        if self.text is None and self.file_path is None:
            raise ValueError("ItemRequest needs either text or file_path")
        if self.size_bytes is None:
            if self.text is not None:
                self.size_bytes = len(self.text.encode('utf-8'))
            else:
                self.size_bytes = os.path.getsize(self.file_path)

    @classmethod
    def from_file(cls, file_path: str, content_type: Optional[str] = None, **kwargs) -> 'ItemRequest':
        """Build a request for a text file on disk."""
        path = Path(file_path)
        return cls(
            name=path.name,
            file_path=str(path),
            content_type=content_type or "",
            size_bytes=path.stat().st_size,
            **kwargs
        )

    def load_text(self) -> str:
        """Return the text to synthesize."""
        if self.text is not None:
            return self.text
        with open(self.file_path, 'r', encoding='utf-8') as f:
            return f.read()


@dataclass
class ErrorInfo:
    """
    Information about an item failure.
    """
    error_type: str
    error_message: str
    error_kind: str = "unknown"
    attempts: int = 1
    timestamp: float = field(default_factory=time.time)


@dataclass
class JobItem:
    """
    One text-to-speech request inside a batch job.

    Mutated only by the job's scheduler.
    """
    index: int
    source: ItemRequest
    output_name: str
    item_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    status: ItemStatus = ItemStatus.PENDING
    progress_percent: float = 0.0
    error: Optional[ErrorInfo] = None
    result: Optional[AudioArtifact] = None

    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    attempts: int = 0


@dataclass(frozen=True)
class OutputDescriptor:
    """Where and in what shape the output of a job can be downloaded."""
    format: str
    quality: str
    download_ref: Optional[str] = None


@dataclass
class BatchJob:
    """
    A set of job items sharing an execution policy and output settings.

    `status` is derived from the items and never stored.
    """
    items: List[JobItem] = field(default_factory=list)
    kind: JobKind = JobKind.BATCH
    execution_policy: ExecutionPolicy = ExecutionPolicy.SEQUENTIAL
    output_format: AudioFormat = AudioFormat.MP3
    output_quality: OutputQuality = OutputQuality.HIGH
    output_naming: OutputNaming = OutputNaming.ORIGINAL

    job_id: str = field(default_factory=lambda: f"job_{uuid.uuid4().hex[:12]}")
    created_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    cancelled: bool = False

    @property
    def status(self) -> JobStatus:
        if self.cancelled and self.completed_at is not None:
            return JobStatus.CANCELLED
        if self.items and all(item.status.is_terminal for item in self.items):
            return JobStatus.COMPLETED
        if any(item.status != ItemStatus.PENDING for item in self.items):
            return JobStatus.PROCESSING
        return JobStatus.PENDING

    def succeeded_items(self) -> List[JobItem]:
        return [item for item in self.items if item.status == ItemStatus.COMPLETED]


@dataclass(frozen=True)
class HistoryRecord:
    """
    Immutable summary of a terminated job, owned by the history store.
    """
    job_id: str
    kind: JobKind
    status: JobStatus
    created_at: float
    completed_at: Optional[float]
    item_count: int
    succeeded_count: int
    failed_count: int
    output: OutputDescriptor
    size_bytes: Optional[int] = None
    execution_policy: ExecutionPolicy = ExecutionPolicy.SEQUENTIAL

    @classmethod
    def from_job(
        cls,
        job: BatchJob,
        download_ref: Optional[str] = None,
        size_bytes: Optional[int] = None
    ) -> 'HistoryRecord':
        """Snapshot a finished job."""
        return cls(
            job_id=job.job_id,
            kind=job.kind,
            status=JobStatus.CANCELLED if job.cancelled else JobStatus.COMPLETED,
            created_at=job.created_at,
            completed_at=job.completed_at,
            item_count=len(job.items),
            succeeded_count=sum(1 for item in job.items if item.status == ItemStatus.COMPLETED),
            failed_count=sum(1 for item in job.items if item.status == ItemStatus.FAILED),
            output=OutputDescriptor(
                format=AudioFormat(job.output_format).value,
                quality=OutputQuality(job.output_quality).value,
                download_ref=download_ref
            ),
            size_bytes=size_bytes,
            execution_policy=job.execution_policy,
        )

    @property
    def sort_timestamp(self) -> float:
        return self.completed_at if self.completed_at is not None else self.created_at

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert to dictionary for database storage.
        """
        return {
            'job_id': self.job_id,
            'kind': self.kind.value,
            'status': self.status.value,
            'created_at': self.created_at,
            'completed_at': self.completed_at,
            'sort_ts': self.sort_timestamp,
            'item_count': self.item_count,
            'succeeded_count': self.succeeded_count,
            'failed_count': self.failed_count,
            'output': json.dumps(asdict(self.output)),
            'size_bytes': self.size_bytes,
            'execution_policy': self.execution_policy.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HistoryRecord':
        """
        Create from dictionary loaded from database.
        """
        output = OutputDescriptor(**json.loads(data['output'])) if data.get('output') else OutputDescriptor('mp3', 'high')
        return cls(
            job_id=data['job_id'],
            kind=JobKind(data['kind']),
            status=JobStatus(data['status']),
            created_at=data['created_at'],
            completed_at=data.get('completed_at'),
            item_count=data['item_count'],
            succeeded_count=data['succeeded_count'],
            failed_count=data['failed_count'],
            output=output,
            size_bytes=data.get('size_bytes'),
            execution_policy=ExecutionPolicy(data.get('execution_policy') or 'sequential'),
        )

    def format_status_message(self) -> str:
        """Format a user-friendly status message."""
        if self.status == JobStatus.CANCELLED:
            return f"Cancelled ({self.succeeded_count}/{self.item_count} completed)"
        if self.status == JobStatus.PROCESSING:
            return "Processing..."
        if self.failed_count == 0:
            return f"Completed successfully ({self.item_count} item{'s' if self.item_count != 1 else ''})"
        return f"Completed with {self.failed_count} failed of {self.item_count}"


def format_file_size(size_bytes: Optional[int]) -> str:
    """Format a byte count as a human-readable size."""
    if not size_bytes:
        return "0 Bytes"
    units = ['Bytes', 'KB', 'MB', 'GB']
    size = float(size_bytes)
    unit = 0
    while size >= 1024 and unit < len(units) - 1:
        size /= 1024
        unit += 1
    return f"{round(size, 2):g} {units[unit]}"


# Type aliases for clarity
JobID = str
