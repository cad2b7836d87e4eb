"""
High-level generation job API.

Provides the interface the presentation layer uses to submit batches,
follow progress, cancel jobs and browse history.
"""

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Any

from ..config import PipelineConfig
from ..core import AudioFormat, KokoroGateway, OutputQuality, SynthesisGateway, SynthesisSettings, DEFAULT_VOICE
from ..errors import AdmissionError
from .models import (
    BatchJob,
    ExecutionPolicy,
    HistoryFilter,
    HistoryRecord,
    ItemRequest,
    JobItem,
    JobKind,
    OutputNaming,
    JobID
)
from .notifications import NotificationSink
from .progress import JobSnapshot
from .scheduler import JobScheduler, ProgressListener
from .storage import HistoryStore
from .validator import ItemValidator, Rejection, BATCH_SCRIPT

logger = logging.getLogger(__name__)


@dataclass
class Submission:
    """Result of submitting items: the created job and what was rejected."""
    job: BatchJob
    rejected: List[Rejection] = field(default_factory=list)

    @property
    def job_id(self) -> JobID:
        return self.job.job_id


def assign_output_names(
    requests: Sequence[ItemRequest],
    naming: OutputNaming,
    prefix: str = "audio-output",
    template: str = "{name}_{index}"
) -> List[str]:
    """
    Name the outputs of a batch, in submission order.

    Args:
        requests: Admitted requests in order
        naming: Naming scheme
        prefix: Prefix for sequential naming
        template: Format string for custom naming ({index} is 1-based, {name} the source stem)

    Returns:
        One unique name per request
    """
    names = []
    for position, request in enumerate(requests, 1):
        stem = Path(request.name).stem or f"item_{position:03d}"
        if naming == OutputNaming.SEQUENTIAL:
            name = f"{prefix}_{position:03d}"
        elif naming == OutputNaming.CUSTOM:
            name = template.format(index=f"{position:03d}", name=stem)
        else:
            name = stem
        names.append(name)

    # Duplicate names get a numeric suffix
    seen: Dict[str, int] = {}
    unique = []
    for name in names:
        count = seen.get(name, 0)
        seen[name] = count + 1
        unique.append(name if count == 0 else f"{name}_{count + 1}")
    return unique


class JobManager:
    """
    High-level API for generation jobs.

    Owns the history store and one scheduler per active job.

    Example:
        manager = JobManager(gateway=gateway)

        submission = manager.submit_batch(
            [ItemRequest.from_file("intro.txt"), ItemRequest.from_file("outro.txt")],
            execution_policy=ExecutionPolicy.PARALLEL
        )
        record = await manager.run_job(submission.job_id)
        print(record.format_status_message())
    """

    def __init__(
        self,
        gateway: Optional[SynthesisGateway] = None,
        config: Optional[PipelineConfig] = None,
        history: Optional[HistoryStore] = None,
        notifier: Optional[NotificationSink] = None
    ):
        """
        Initialize job manager.

        Args:
            gateway: Synthesis backend (default: KokoroGateway from config)
            config: Pipeline configuration (default: from environment)
            history: History store (default: SQLite at config.history_db_path)
            notifier: Receiver of terminal events (default: log them)
        """
        self.config = config or PipelineConfig.from_env()
        self.history = history or HistoryStore(self.config.history_db_path)
        self.notifier = notifier
        self.validator = ItemValidator(self.config)
        self._gateway = gateway
        self._schedulers: Dict[JobID, JobScheduler] = {}
        self._tasks: Dict[JobID, asyncio.Task] = {}

    @property
    def gateway(self) -> SynthesisGateway:
        if self._gateway is None:
            self._gateway = KokoroGateway(
                model_path=self.config.model_path,
                voices_path=self.config.voices_path,
                output_dir=self.config.output_dir
            )
        return self._gateway

    # Submission

    def submit_batch(
        self,
        requests: Sequence[ItemRequest],
        execution_policy: ExecutionPolicy = ExecutionPolicy.SEQUENTIAL,
        output_format: AudioFormat = AudioFormat.MP3,
        output_quality: OutputQuality = OutputQuality.HIGH,
        output_naming: OutputNaming = OutputNaming.ORIGINAL,
        voice_ref: Optional[str] = None,
        on_rejection: str = "skip",
        kind: JobKind = JobKind.BATCH,
        naming_prefix: str = "audio-output",
        naming_template: str = "{name}_{index}"
    ) -> Submission:
        """
        Validate items and create a job from the admitted ones.

        Only batch script types (text, JSON, CSV) are admitted.

        Args:
            requests: Items in submission order
            execution_policy: Sequential or parallel dispatch
            output_format: Audio format of every output
            output_quality: Output quality tier
            output_naming: How output files are named
            voice_ref: Voice used for every item, overriding per-item voices
            on_rejection: 'skip' drops rejected items, 'abort' refuses the batch
            kind: Job kind recorded in history
            naming_prefix: Prefix for sequential naming
            naming_template: Template for custom naming

        Returns:
            Submission with the created job and the rejected items

        Raises:
            AdmissionError: If nothing is admissible, or on any rejection with
                on_rejection='abort'
        """
        if on_rejection not in ("skip", "abort"):
            raise ValueError(f"on_rejection must be 'skip' or 'abort', got {on_rejection!r}")

        admitted, rejected = self.validator.validate_all(requests, BATCH_SCRIPT.name)

        if rejected and on_rejection == "abort":
            raise AdmissionError(
                f"{len(rejected)} of {len(requests)} item(s) rejected: "
                + "; ".join(f"{r.name}: {r.reason}" for r in rejected),
                rejections=rejected
            )
        if not admitted:
            raise AdmissionError("No admissible items in submission", rejections=rejected)

        sources = [request for _, request in admitted]
        if voice_ref:
            # Same voice for the whole batch; the caller's requests stay untouched
            sources = [dataclasses.replace(source, voice_ref=voice_ref) for source in sources]

        names = assign_output_names(sources, OutputNaming(output_naming), naming_prefix, naming_template)
        job = BatchJob(
            items=[
                JobItem(index=position, source=source, output_name=name)
                for position, (source, name) in enumerate(zip(sources, names))
            ],
            kind=JobKind(kind),
            execution_policy=ExecutionPolicy(execution_policy),
            output_format=AudioFormat(output_format),
            output_quality=OutputQuality(output_quality),
            output_naming=OutputNaming(output_naming),
        )

        scheduler = JobScheduler(
            job,
            self.gateway,
            self.history,
            config=self.config,
            notifier=self.notifier
        )
        self._schedulers[job.job_id] = scheduler

        scheduler.job_logger.info(
            f"Job submitted: {len(job.items)} admitted, {len(rejected)} rejected",
            metadata={
                'kind': job.kind.value,
                'policy': job.execution_policy.value,
                'format': job.output_format.value,
                'quality': job.output_quality.value,
                'rejected': [f"{r.name}: {r.reason}" for r in rejected],
            }
        )

        return Submission(job=job, rejected=rejected)

    def submit_single(
        self,
        text: str,
        voice_ref: str = DEFAULT_VOICE,
        settings: Optional[SynthesisSettings] = None,
        output_format: AudioFormat = AudioFormat.MP3,
        output_quality: OutputQuality = OutputQuality.HIGH,
        name: str = "audio-output.txt"
    ) -> Submission:
        """
        Submit one script as a single-item job.

        Raises:
            AdmissionError: If the script is rejected
        """
        request = ItemRequest(
            name=name,
            text=text,
            content_type="text/plain",
            voice_ref=voice_ref,
            settings=settings or SynthesisSettings()
        )
        return self.submit_batch(
            [request],
            output_format=output_format,
            output_quality=output_quality,
            on_rejection="abort",
            kind=JobKind.SINGLE
        )

    # Execution

    def _get_scheduler(self, job_id: JobID) -> JobScheduler:
        scheduler = self._schedulers.get(job_id)
        if scheduler is None:
            raise KeyError(f"No active job with id {job_id}")
        return scheduler

    async def run_job(self, job_id: JobID) -> HistoryRecord:
        """
        Run a submitted job to completion.

        Returns:
            The job's history record

        Raises:
            KeyError: If the job is unknown or already finished
            PersistenceError: If the history record cannot be stored
        """
        scheduler = self._get_scheduler(job_id)
        try:
            return await scheduler.run()
        finally:
            # A job whose record could not be stored stays reachable for retry
            if scheduler.is_finished:
                self._schedulers.pop(job_id, None)

    def start_job(self, job_id: JobID) -> asyncio.Task:
        """
        Run a job in the background on the current event loop.

        Returns:
            Task resolving to the job's history record
        """
        if job_id in self._tasks:
            return self._tasks[job_id]
        task = asyncio.ensure_future(self.run_job(job_id))
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job_id, None))
        return task

    def retry_finalize(self, job_id: JobID) -> HistoryRecord:
        """
        Retry storing the record of a terminated job after a persistence failure.
        """
        scheduler = self._get_scheduler(job_id)
        record = scheduler.finalize()
        self._schedulers.pop(job_id, None)
        return record

    def cancel_job(self, job_id: JobID) -> bool:
        """
        Cancel an active job.

        Returns:
            True if cancelled, False if the job is unknown or already terminal
        """
        scheduler = self._schedulers.get(job_id)
        if scheduler is None:
            logger.debug("Cancel requested for unknown or finished job %s", job_id)
            return False
        return scheduler.cancel()

    def get_job(self, job_id: JobID) -> Optional[BatchJob]:
        scheduler = self._schedulers.get(job_id)
        return scheduler.job if scheduler else None

    def get_active_jobs(self) -> List[BatchJob]:
        return [scheduler.job for scheduler in self._schedulers.values()]

    def get_progress(self, job_id: JobID) -> Optional[JobSnapshot]:
        """
        Progress snapshot of an active job.

        Returns:
            JobSnapshot or None if the job is not active
        """
        scheduler = self._schedulers.get(job_id)
        return scheduler.snapshot() if scheduler else None

    def subscribe(self, job_id: JobID, listener: ProgressListener):
        """Push a JobSnapshot to `listener` after every item transition."""
        self._get_scheduler(job_id).add_listener(listener)

    # History

    def list_history(self, filter: HistoryFilter = HistoryFilter.ALL, limit: Optional[int] = None) -> List[HistoryRecord]:
        return self.history.list(HistoryFilter(filter), limit=limit)

    def get_history_record(self, job_id: JobID) -> Optional[HistoryRecord]:
        return self.history.get(job_id)

    def remove_history(self, job_id: JobID):
        """
        Delete a history record. Unknown ids are ignored.

        Raises:
            PersistenceError: If the delete cannot be committed
        """
        self.history.remove(job_id)

    def download_ref(self, job_id: JobID) -> Optional[str]:
        """Download location of a finished job, if it has one."""
        record = self.history.get(job_id)
        return record.output.download_ref if record else None

    def get_job_logs(
        self,
        job_id: JobID,
        level: Optional[str] = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        return self.history.get_logs(job_id, level=level, limit=limit)

    def close(self):
        """Close database connections."""
        self.history.close()
