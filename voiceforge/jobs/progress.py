"""
Progress aggregation for batch jobs.

Everything here is derived from item statuses; nothing is stored or
updated independently.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .models import BatchJob, ItemStatus, JobItem, JobStatus


@dataclass(frozen=True)
class ProgressSnapshot:
    """Counts of items per status."""
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def finished(self) -> int:
        return self.completed + self.failed

    @property
    def percentage(self) -> float:
        """Share of items in a terminal state, 0 for an empty job."""
        if self.total == 0:
            return 0.0
        return self.finished / self.total * 100

    @property
    def all_terminal(self) -> bool:
        return self.total > 0 and self.finished == self.total


@dataclass(frozen=True)
class ItemProgress:
    """Read-only view of one item for progress displays."""
    item_id: str
    index: int
    output_name: str
    status: ItemStatus
    progress_percent: float
    error: Optional[str] = None


@dataclass(frozen=True)
class JobSnapshot:
    """Job-level aggregate plus per-item status."""
    job_id: str
    status: JobStatus
    progress: ProgressSnapshot
    items: List[ItemProgress] = field(default_factory=list)
    cancelled: bool = False


def snapshot(items: Sequence[JobItem]) -> ProgressSnapshot:
    """
    Count items per status.

    Args:
        items: Items of one job

    Returns:
        ProgressSnapshot where pending + processing + completed + failed == total
    """
    counts = {status: 0 for status in ItemStatus}
    for item in items:
        counts[item.status] += 1

    return ProgressSnapshot(
        total=len(items),
        pending=counts[ItemStatus.PENDING],
        processing=counts[ItemStatus.PROCESSING],
        completed=counts[ItemStatus.COMPLETED],
        failed=counts[ItemStatus.FAILED],
    )


def job_snapshot(job: BatchJob) -> JobSnapshot:
    """Build the full progress view of a job."""
    return JobSnapshot(
        job_id=job.job_id,
        status=job.status,
        progress=snapshot(job.items),
        items=[
            ItemProgress(
                item_id=item.item_id,
                index=item.index,
                output_name=item.output_name,
                status=item.status,
                progress_percent=100.0 if item.status == ItemStatus.COMPLETED else item.progress_percent,
                error=item.error.error_message if item.error else None,
            )
            for item in job.items
        ],
        cancelled=job.cancelled,
    )
