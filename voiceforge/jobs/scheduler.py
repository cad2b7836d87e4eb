"""
Per-job scheduler for batch generation.

A JobScheduler owns every state change of its job's items. It drives the
items through the synthesis gateway under the job's execution policy,
publishes progress after each transition, and when the job terminates
appends exactly one history record and fires exactly one notification.
"""

import asyncio
import dataclasses
import logging
import threading
import time
from functools import partial
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..config import PipelineConfig
from ..core import AudioArtifact, SynthesisGateway, SynthesisSettings
from ..errors import (
    SynthesisError,
    TransitionError,
    classify_exception,
    is_retryable,
    ERROR_KIND_CANCELLED,
    ERROR_KIND_TIMEOUT,
)
from .logger import JobLogger
from .models import BatchJob, ErrorInfo, ExecutionPolicy, HistoryRecord, ItemStatus, JobItem
from .notifications import LoggingNotificationSink, NotificationSink, TerminalEvent
from .packaging import bundle_outputs
from .progress import JobSnapshot, job_snapshot, snapshot
from .storage import HistoryStore

logger = logging.getLogger(__name__)

ProgressListener = Callable[[JobSnapshot], None]
Packager = Callable[[BatchJob], Tuple[Optional[str], Optional[int]]]

_ALLOWED: Dict[ItemStatus, Set[ItemStatus]] = {
    ItemStatus.PENDING: {ItemStatus.PROCESSING},
    ItemStatus.PROCESSING: {ItemStatus.PROCESSING, ItemStatus.COMPLETED, ItemStatus.FAILED},
    ItemStatus.COMPLETED: set(),
    ItemStatus.FAILED: set(),
}


def ensure_transition_allowed(item: JobItem, to_status: ItemStatus) -> None:
    if to_status not in _ALLOWED[item.status]:
        raise TransitionError(item.item_id, item.status.value, to_status.value)


class JobScheduler:
    """
    Drives one batch job to completion.

    All item mutations and the completion check happen under one lock per
    job, so two items finishing together cannot both finish the job.

    Example:
        scheduler = JobScheduler(job, gateway, store, config)
        scheduler.add_listener(lambda view: print(view.progress.percentage))
        record = await scheduler.run()
    """

    def __init__(
        self,
        job: BatchJob,
        gateway: SynthesisGateway,
        history: HistoryStore,
        config: Optional[PipelineConfig] = None,
        notifier: Optional[NotificationSink] = None,
        packager: Optional[Packager] = None,
        job_logger: Optional[JobLogger] = None
    ):
        """
        Initialize the scheduler.

        Args:
            job: Job to execute; its items must all be pending
            gateway: Synthesis backend
            history: Store receiving the history record
            config: Pipeline configuration (concurrency bound, timeout, retry)
            notifier: Receiver of the terminal event
            packager: Builds (download_ref, size_bytes) for the finished job
            job_logger: Structured logger (default: persisted to `history`)
        """
        if not job.items:
            raise ValueError(f"Job {job.job_id} has no items to schedule")
        if any(item.status != ItemStatus.PENDING for item in job.items):
            raise ValueError(f"Job {job.job_id} has items that already left the pending state")

        self.job = job
        self.gateway = gateway
        self.history = history
        self.config = config or PipelineConfig()
        self.notifier = notifier or LoggingNotificationSink()
        self.packager = packager or self._default_packager
        self.job_logger = job_logger or JobLogger(job.job_id, history)

        self._lock = threading.Lock()
        self._finalize_lock = threading.Lock()
        self._listeners: List[ProgressListener] = []
        self._in_flight: Dict[str, asyncio.Future] = {}
        self._completion_claimed = False
        self._abandoning = False
        self._started = False
        self._record: Optional[HistoryRecord] = None

    # Observation

    @property
    def record(self) -> Optional[HistoryRecord]:
        """History record, once the job has been finalized."""
        return self._record

    @property
    def is_finished(self) -> bool:
        return self._record is not None

    def add_listener(self, listener: ProgressListener):
        """Register a callback receiving a JobSnapshot after every transition."""
        self._listeners.append(listener)

    def snapshot(self) -> JobSnapshot:
        """Consistent progress view of the job."""
        with self._lock:
            return job_snapshot(self.job)

    def _publish(self, view: JobSnapshot):
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception:
                logger.exception("Progress listener failed for job %s", self.job.job_id)

    # State transitions

    def _claim_completion_locked(self) -> bool:
        """
        Mark the job terminal if it just became so. Caller holds the lock.

        Returns True only for the first caller that observes termination.
        """
        if self._completion_claimed:
            return False
        progress = snapshot(self.job.items)
        if progress.all_terminal or (self.job.cancelled and progress.processing == 0):
            self._completion_claimed = True
            self.job.completed_at = time.time()
            return True
        return False

    def _transition(self, item: JobItem, to_status: ItemStatus, **changes) -> bool:
        """
        Apply one item transition and re-check job completion atomically.

        Returns:
            False if the transition was skipped because the job is cancelled
            (only for pending -> processing), True otherwise
        """
        with self._lock:
            if to_status == ItemStatus.PROCESSING and item.status == ItemStatus.PENDING and self.job.cancelled:
                return False
            ensure_transition_allowed(item, to_status)
            item.status = to_status
            for name, value in changes.items():
                setattr(item, name, value)
            if self._claim_completion_locked():
                logger.debug("Job %s reached a terminal state", self.job.job_id)
            view = job_snapshot(self.job)

        self._publish(view)
        return True

    def _on_gateway_progress(self, item: JobItem, message: str, current: int, total: int):
        percent = min(100.0, current / total * 100) if total > 0 else 0.0
        with self._lock:
            # Late reports after a timeout or abandon are ignored
            if item.status != ItemStatus.PROCESSING:
                return
            item.progress_percent = percent
            view = job_snapshot(self.job)
        self._publish(view)

    # Dispatch

    def _settings_for(self, item: JobItem) -> SynthesisSettings:
        return dataclasses.replace(
            item.source.settings,
            output_format=self.job.output_format,
            quality=self.job.output_quality,
            output_name=f"{self.job.job_id}/{item.output_name}",
        )

    async def _invoke(self, item: JobItem) -> AudioArtifact:
        """Call the gateway for one item, retrying when the policy allows."""
        text = item.source.load_text()
        settings = self._settings_for(item)
        total = len(self.job.items)
        max_attempts = self.config.max_attempts

        for attempt in range(1, max_attempts + 1):
            item.attempts = attempt
            self.job_logger.log_item_start(item.index, item.output_name, total, attempt)
            try:
                return await asyncio.wait_for(
                    self.gateway.synthesize(
                        text,
                        item.source.voice_ref,
                        settings,
                        progress_callback=partial(self._on_gateway_progress, item)
                    ),
                    timeout=self.config.item_timeout_seconds
                )
            except asyncio.TimeoutError as e:
                error = SynthesisError(
                    f"Gateway did not respond within {self.config.item_timeout_seconds:g}s",
                    error_kind=ERROR_KIND_TIMEOUT
                )
                error.__cause__ = e
            except Exception as e:
                error = e

            kind = classify_exception(error)
            if attempt >= max_attempts or not is_retryable(kind) or self.job.cancelled:
                raise error

            delay = self.config.retry_backoff_seconds * (2 ** (attempt - 1))
            self.job_logger.warning(
                f"Retrying item {item.index + 1} after {kind} failure in {delay:.1f}s",
                metadata={"index": item.index, "attempt": attempt, "error_kind": kind}
            )
            await asyncio.sleep(delay)

        raise RuntimeError("unreachable")

    async def _dispatch(self, item: JobItem):
        """Run one item from pending to a terminal state."""
        if not self._transition(item, ItemStatus.PROCESSING, started_at=time.time(), progress_percent=0.0):
            return

        task = asyncio.ensure_future(self._invoke(item))
        self._in_flight[item.item_id] = task
        try:
            artifact = await task
        except asyncio.CancelledError:
            if not (self._abandoning and task.cancelled()):
                raise
            self._transition(
                item,
                ItemStatus.FAILED,
                completed_at=time.time(),
                error=ErrorInfo(
                    error_type="CancelledError",
                    error_message="Abandoned when the job was cancelled",
                    error_kind=ERROR_KIND_CANCELLED,
                    attempts=item.attempts
                )
            )
            self.job_logger.warning(f"Item {item.index + 1} abandoned", metadata={"index": item.index})
            return
        except Exception as e:
            # Terminal state first; logging comes after
            self._transition(
                item,
                ItemStatus.FAILED,
                completed_at=time.time(),
                error=ErrorInfo(
                    error_type=type(e).__name__,
                    error_message=str(e) or type(e).__name__,
                    error_kind=classify_exception(e),
                    attempts=item.attempts
                )
            )
            self.job_logger.log_error_with_context(e, f"synthesizing item {item.index + 1}", index=item.index)
            return
        finally:
            self._in_flight.pop(item.item_id, None)

        self._transition(item, ItemStatus.COMPLETED, completed_at=time.time(), result=artifact, progress_percent=100.0)
        self.job_logger.log_item_complete(
            item.index,
            item.output_name,
            artifact.location,
            item.completed_at - item.started_at
        )

    async def _run_sequential(self):
        for item in self.job.items:
            if self.job.cancelled:
                break
            await self._dispatch(item)

    async def _run_parallel(self):
        queue: asyncio.Queue = asyncio.Queue()
        for item in self.job.items:
            queue.put_nowait(item)

        async def worker():
            while not self.job.cancelled:
                try:
                    item = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                await self._dispatch(item)

        pool_size = min(self.config.max_concurrent_items, len(self.job.items))
        workers = [asyncio.ensure_future(worker()) for _ in range(pool_size)]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for w in workers:
                w.cancel()
            raise

    async def run(self) -> HistoryRecord:
        """
        Execute the job and return its history record.

        Raises:
            PersistenceError: If the history record cannot be stored; the
                job stays terminal and `finalize()` may be retried
            RuntimeError: If the scheduler has already been started
        """
        if self._started:
            raise RuntimeError(f"Job {self.job.job_id} has already been started")
        self._started = True

        self.job_logger.info(
            f"Job started: {len(self.job.items)} item(s), {self.job.execution_policy.value} policy",
            metadata={
                "kind": self.job.kind.value,
                "items": len(self.job.items),
                "policy": self.job.execution_policy.value,
                "max_concurrent_items": self.config.max_concurrent_items,
            }
        )

        if self.job.execution_policy == ExecutionPolicy.PARALLEL:
            await self._run_parallel()
        else:
            await self._run_sequential()

        progress = self.snapshot().progress
        self.job_logger.log_progress(progress.finished, progress.total, "Items finished")

        return self.finalize()

    # Cancellation

    def cancel(self) -> bool:
        """
        Stop dispatching pending items.

        In-flight items finish normally ('drain') or are abandoned
        ('abandon') according to the configured cancel mode.

        Returns:
            True if the job was cancelled, False if it had already terminated
            or been cancelled
        """
        with self._lock:
            if self.job.cancelled or self._completion_claimed:
                return False
            self.job.cancelled = True
            self._claim_completion_locked()
            self._abandoning = self.config.cancel_mode == "abandon"
            to_abandon = list(self._in_flight.values()) if self._abandoning else []
            view = job_snapshot(self.job)

        self.job_logger.warning(
            "Job cancelled by user",
            metadata={"cancel_mode": self.config.cancel_mode, "in_flight": view.progress.processing}
        )
        for task in to_abandon:
            task.cancel()
        self._publish(view)
        return True

    # Finalization

    def _default_packager(self, job: BatchJob) -> Tuple[Optional[str], Optional[int]]:
        return bundle_outputs(job, self.config.output_dir, archive=self.config.bundle_batch_outputs)

    def finalize(self) -> HistoryRecord:
        """
        Build, persist and announce the history record. Idempotent.

        Raises:
            PersistenceError: If the record cannot be appended
            RuntimeError: If the job is not terminal yet
        """
        with self._finalize_lock:
            if self._record is not None:
                return self._record
            return self._finalize_locked()

    def _finalize_locked(self) -> HistoryRecord:
        with self._lock:
            self._claim_completion_locked()
            if not self._completion_claimed:
                raise RuntimeError(f"Job {self.job.job_id} is not terminal yet")
            progress = snapshot(self.job.items)

        try:
            download_ref, size_bytes = self.packager(self.job)
        except OSError as e:
            self.job_logger.log_error_with_context(e, "packaging outputs")
            download_ref, size_bytes = None, None

        record = HistoryRecord.from_job(self.job, download_ref=download_ref, size_bytes=size_bytes)
        self.history.append(record)

        self._record = record

        self.job_logger.info(
            f"Job finished: {record.format_status_message()}",
            metadata={
                "status": record.status.value,
                "succeeded": record.succeeded_count,
                "failed": record.failed_count,
                "download_ref": record.output.download_ref,
            }
        )

        event = TerminalEvent.build(record, progress, cancelled=self.job.cancelled)
        try:
            self.notifier.notify(event)
        except Exception:
            logger.exception("Notification sink failed for job %s", self.job.job_id)

        return record
