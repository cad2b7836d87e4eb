"""
Tests for per-job scheduling.

Covers execution policies, completion tracking, cancellation, timeouts,
retries and history recording.
"""

import asyncio
import dataclasses
import sys
import zipfile
from pathlib import Path
from unittest.mock import patch

import pytest

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import ScriptedGateway
from voiceforge.core import AudioFormat, OutputQuality
from voiceforge.errors import PersistenceError, SynthesisError, TransitionError
from voiceforge.jobs import (
    BatchJob,
    CallbackNotificationSink,
    ExecutionPolicy,
    ItemRequest,
    ItemStatus,
    JobItem,
    JobKind,
    JobOutcome,
    JobScheduler,
    JobStatus,
)
from voiceforge.jobs.scheduler import ensure_transition_allowed


def make_job(texts, policy=ExecutionPolicy.SEQUENTIAL, kind=JobKind.BATCH, **kwargs):
    return BatchJob(
        items=[
            JobItem(index=i, source=ItemRequest(name=f"item{i}.txt", text=text), output_name=f"item{i}")
            for i, text in enumerate(texts)
        ],
        kind=kind,
        execution_policy=policy,
        **kwargs
    )


def make_scheduler(job, gateway, store, config, events=None, **kwargs):
    notifier = CallbackNotificationSink(events.append) if events is not None else None
    return JobScheduler(job, gateway, store, config=config, notifier=notifier, **kwargs)


def test_sequential_all_succeed(gateway, store, config):
    """Three items run one after another in submission order."""
    print("\n=== Test: Sequential Batch ===")

    events = []
    job = make_job(["first.", "second.", "third."])
    scheduler = make_scheduler(job, gateway, store, config, events)

    record = asyncio.run(scheduler.run())

    assert record.succeeded_count == 3
    assert record.failed_count == 0
    assert record.status == JobStatus.COMPLETED
    assert [call[0] for call in gateway.calls] == ["first.", "second.", "third."]
    assert gateway.max_in_flight == 1

    finished = sorted(job.items, key=lambda item: item.completed_at)
    assert [item.index for item in finished] == [0, 1, 2]

    assert store.count() == 1
    assert store.get(job.job_id) == record
    assert len(events) == 1
    assert events[0].outcome == JobOutcome.ALL_SUCCEEDED
    assert job.status == JobStatus.COMPLETED

    print(f"✓ {record.format_status_message()}")


def test_parallel_with_failures(temp_dir, store, config):
    """Five items, two failing, never more than two in flight."""
    print("\n=== Test: Parallel Batch With Failures ===")

    gateway = ScriptedGateway(
        Path(config.output_dir),
        delay=0.05,
        failures={
            "two": SynthesisError("voice unavailable", error_kind="invalid_input"),
            "four": RuntimeError("backend exploded"),
        }
    )
    events = []
    job = make_job(["one", "two", "three", "four", "five"], policy=ExecutionPolicy.PARALLEL)
    scheduler = make_scheduler(job, gateway, store, config, events)

    record = asyncio.run(scheduler.run())

    assert record.succeeded_count == 3
    assert record.failed_count == 2
    assert record.item_count == 5
    assert gateway.max_in_flight <= config.max_concurrent_items
    assert gateway.max_in_flight == 2
    assert store.count() == 1
    assert len(events) == 1
    assert events[0].outcome == JobOutcome.PARTIALLY_FAILED

    failed = {item.source.text: item.error for item in job.items if item.status == ItemStatus.FAILED}
    assert failed["two"].error_kind == "invalid_input"
    assert failed["four"].error_kind == "unknown"
    assert failed["four"].error_message == "backend exploded"

    print(f"✓ {events[0].format_message()}")


def test_all_items_fail(gateway, store, config):
    gateway.failures = {"a": RuntimeError("no"), "b": RuntimeError("no")}
    events = []
    scheduler = make_scheduler(make_job(["a", "b"]), gateway, store, config, events)

    record = asyncio.run(scheduler.run())

    assert record.failed_count == 2
    assert record.output.download_ref is None
    assert events[0].outcome == JobOutcome.FAILED


def test_cancel_after_first_item(gateway, store, config):
    """Cancelling after item 1 leaves item 3 undispatched."""
    print("\n=== Test: Cancel Sequential Job ===")

    events = []
    job = make_job(["first.", "second.", "third."])
    scheduler = make_scheduler(job, gateway, store, config, events)

    def cancel_after_first(view):
        if view.progress.completed == 1:
            scheduler.cancel()

    scheduler.add_listener(cancel_after_first)
    record = asyncio.run(scheduler.run())

    assert job.items[0].status == ItemStatus.COMPLETED
    assert job.items[2].status == ItemStatus.PENDING
    assert len(gateway.calls) == 1
    assert record.status == JobStatus.CANCELLED
    assert record.succeeded_count == 1
    assert record.item_count == 3
    assert store.count() == 1
    assert len(events) == 1
    assert events[0].outcome == JobOutcome.CANCELLED

    print(f"✓ {record.format_status_message()}")


def test_cancel_before_run(gateway, store, config):
    events = []
    scheduler = make_scheduler(make_job(["a", "b"], policy=ExecutionPolicy.PARALLEL), gateway, store, config, events)

    assert scheduler.cancel() is True
    assert scheduler.cancel() is False

    record = asyncio.run(scheduler.run())

    assert gateway.calls == []
    assert record.status == JobStatus.CANCELLED
    assert record.succeeded_count == 0
    assert len(events) == 1


def test_cancel_drain_lets_in_flight_items_finish(store, config):
    gateway = ScriptedGateway(Path(config.output_dir), delay=0.2)
    job = make_job(["a", "b", "c", "d", "e"], policy=ExecutionPolicy.PARALLEL)
    scheduler = make_scheduler(job, gateway, store, config)

    async def scenario():
        task = asyncio.ensure_future(scheduler.run())
        await asyncio.sleep(0.05)
        assert scheduler.cancel() is True
        return await task

    record = asyncio.run(scenario())

    statuses = [item.status for item in job.items]
    assert statuses.count(ItemStatus.COMPLETED) == 2
    assert statuses.count(ItemStatus.PENDING) == 3
    assert record.status == JobStatus.CANCELLED
    assert record.succeeded_count == 2


def test_cancel_abandon_fails_in_flight_items(store, config):
    config = dataclasses.replace(config, cancel_mode="abandon")
    gateway = ScriptedGateway(Path(config.output_dir), delay=5.0)
    job = make_job(["a", "b", "c", "d"], policy=ExecutionPolicy.PARALLEL)
    scheduler = make_scheduler(job, gateway, store, config)

    async def scenario():
        task = asyncio.ensure_future(scheduler.run())
        await asyncio.sleep(0.05)
        scheduler.cancel()
        return await task

    record = asyncio.run(scenario())

    abandoned = [item for item in job.items if item.status == ItemStatus.FAILED]
    assert len(abandoned) == 2
    assert all(item.error.error_kind == "cancelled" for item in abandoned)
    assert record.status == JobStatus.CANCELLED
    assert record.failed_count == 2
    assert record.succeeded_count == 0
    assert gateway.in_flight == 0


def test_item_timeout(store, config):
    config = dataclasses.replace(config, item_timeout_seconds=0.05)
    gateway = ScriptedGateway(Path(config.output_dir), delay=0.01, delays={"slow": 2.0})
    job = make_job(["fast", "slow"])
    scheduler = make_scheduler(job, gateway, store, config)

    record = asyncio.run(scheduler.run())

    slow = job.items[1]
    assert slow.status == ItemStatus.FAILED
    assert slow.error.error_kind == "timeout"
    assert slow.error.error_type == "SynthesisError"
    assert record.succeeded_count == 1
    assert record.failed_count == 1


def test_timed_out_items_are_not_retried(store, config):
    config = dataclasses.replace(config, item_timeout_seconds=0.05, max_attempts=3, retry_backoff_seconds=0.01)
    gateway = ScriptedGateway(Path(config.output_dir), delays={"slow": 2.0})
    job = make_job(["slow"])
    scheduler = make_scheduler(job, gateway, store, config)

    record = asyncio.run(scheduler.run())

    assert len(gateway.calls) == 1
    assert job.items[0].error.error_kind == "timeout"
    assert job.items[0].error.attempts == 1
    assert record.failed_count == 1


def test_retry_transient_failures(store, config):
    config = dataclasses.replace(config, max_attempts=3)
    gateway = ScriptedGateway(
        Path(config.output_dir),
        failures={"flaky": ConnectionError("connection reset")},
        fail_times={"flaky": 2}
    )
    job = make_job(["flaky"])
    scheduler = make_scheduler(job, gateway, store, config)

    record = asyncio.run(scheduler.run())

    assert record.succeeded_count == 1
    assert job.items[0].attempts == 3
    assert len(gateway.calls) == 3

    warnings = store.get_logs(job.job_id, level="WARNING")
    assert len(warnings) == 2


def test_no_retry_for_invalid_input(store, config):
    config = dataclasses.replace(config, max_attempts=3)
    gateway = ScriptedGateway(
        Path(config.output_dir),
        failures={"bad": SynthesisError("Unsupported voice: xx", error_kind="invalid_input")}
    )
    job = make_job(["bad"])
    scheduler = make_scheduler(job, gateway, store, config)

    asyncio.run(scheduler.run())

    assert len(gateway.calls) == 1
    assert job.items[0].error.attempts == 1


def test_no_retry_by_default(store, config):
    gateway = ScriptedGateway(Path(config.output_dir), failures={"flaky": ConnectionError("reset")})
    job = make_job(["flaky"])
    asyncio.run(make_scheduler(job, gateway, store, config).run())

    assert len(gateway.calls) == 1
    assert job.items[0].error.error_kind == "network"


def test_simultaneous_completions_finish_once(store, config):
    config = dataclasses.replace(config, max_concurrent_items=6)
    gateway = ScriptedGateway(Path(config.output_dir), delay=0.02)
    events = []
    job = make_job([f"text {i}" for i in range(6)], policy=ExecutionPolicy.PARALLEL)
    scheduler = make_scheduler(job, gateway, store, config, events)

    record = asyncio.run(scheduler.run())

    assert scheduler.finalize() is record
    assert store.count() == 1
    assert len(events) == 1
    assert gateway.max_in_flight == 6


def test_progress_published_after_each_transition(gateway, store, config):
    views = []
    job = make_job(["a.", "b."])
    scheduler = make_scheduler(job, gateway, store, config)
    scheduler.add_listener(views.append)

    asyncio.run(scheduler.run())

    percentages = [view.progress.percentage for view in views]
    assert percentages == sorted(percentages)
    assert percentages[-1] == 100.0
    assert all(
        view.progress.pending + view.progress.processing + view.progress.completed + view.progress.failed == 2
        for view in views
    )
    # Gateway progress reaches the processing item
    assert any(
        item.status == ItemStatus.PROCESSING and item.progress_percent == 50.0
        for view in views for item in view.items
    )


def test_failing_listener_does_not_stop_job(gateway, store, config):
    def broken(view):
        raise RuntimeError("display gone")

    scheduler = make_scheduler(make_job(["a"]), gateway, store, config)
    scheduler.add_listener(broken)

    record = asyncio.run(scheduler.run())

    assert record.succeeded_count == 1


def test_gateway_receives_job_output_settings(gateway, store, config):
    job = make_job(["a"], output_format=AudioFormat.WAV, output_quality=OutputQuality.PREMIUM)
    asyncio.run(make_scheduler(job, gateway, store, config).run())

    text, voice_ref, settings = gateway.calls[0]
    assert settings.output_format == AudioFormat.WAV
    assert settings.quality == OutputQuality.PREMIUM
    assert settings.output_name == f"{job.job_id}/item0"
    assert voice_ref == "af_sarah"
    assert job.items[0].result.location.endswith(f"{job.job_id}/item0.wav")


def test_persistence_failure_is_surfaced_and_retryable(gateway, store, config):
    events = []
    job = make_job(["a"])
    scheduler = make_scheduler(job, gateway, store, config, events)

    with patch.object(store, 'append', side_effect=PersistenceError("disk full")):
        with pytest.raises(PersistenceError):
            asyncio.run(scheduler.run())

    assert not scheduler.is_finished
    assert events == []
    assert store.count() == 0

    record = scheduler.finalize()

    assert store.get(job.job_id) == record
    assert len(events) == 1


def test_failed_log_writes_do_not_strand_items(store, config):
    """Items still reach a terminal state when job logs cannot be written."""
    gateway = ScriptedGateway(Path(config.output_dir), delay=0.01, failures={"b": RuntimeError("backend exploded")})
    events = []
    job = make_job(["a", "b", "c"], policy=ExecutionPolicy.PARALLEL)
    scheduler = make_scheduler(job, gateway, store, config, events)

    add_log = store.add_log

    def failing_add_log(job_id, level, message, metadata=None):
        if level == "ERROR":
            raise PersistenceError("database is locked")
        add_log(job_id, level, message, metadata)

    with patch.object(store, 'add_log', side_effect=failing_add_log):
        record = asyncio.run(scheduler.run())

    assert all(item.status.is_terminal for item in job.items)
    assert job.items[1].status == ItemStatus.FAILED
    assert record.succeeded_count == 2
    assert record.failed_count == 1
    assert store.count() == 1
    assert len(events) == 1
    assert store.get_logs(job.job_id, level="ERROR") == []


def test_job_logs_per_item(gateway, store, config):
    """Each item persists one start and one outcome entry."""
    job = make_job(["first.", "second.", "third."])
    asyncio.run(make_scheduler(job, gateway, store, config).run())

    logs = store.get_logs(job.job_id)
    messages = [log['message'] for log in reversed(logs)]

    # started, 3 x (start, complete), summary, finished
    assert len(logs) == 9
    assert messages[0].startswith("Job started")
    assert messages[-2] == "Items finished: 3/3 (100.0%)"
    assert messages[-1].startswith("Job finished")


def test_batch_outputs_bundled(gateway, store, config):
    job = make_job(["a", "b", "c"])
    record = asyncio.run(make_scheduler(job, gateway, store, config).run())

    archive = record.output.download_ref
    assert archive.endswith(f"{job.job_id}.zip")
    assert record.size_bytes == Path(archive).stat().st_size
    with zipfile.ZipFile(archive) as bundle:
        assert sorted(bundle.namelist()) == ["item0.mp3", "item1.mp3", "item2.mp3"]


def test_single_job_links_artifact(gateway, store, config):
    job = make_job(["hello"], kind=JobKind.SINGLE)
    record = asyncio.run(make_scheduler(job, gateway, store, config).run())

    assert record.output.download_ref == job.items[0].result.location
    assert record.size_bytes == len(b"hello")


def test_packaging_failure_still_records_job(gateway, store, config):
    def broken_packager(job):
        raise OSError("no space left on device")

    job = make_job(["a", "b"])
    scheduler = make_scheduler(job, gateway, store, config, packager=broken_packager)

    record = asyncio.run(scheduler.run())

    assert record.output.download_ref is None
    assert record.succeeded_count == 2
    assert store.get(job.job_id) is not None


def test_scheduler_rejects_bad_jobs(gateway, store, config):
    with pytest.raises(ValueError):
        JobScheduler(BatchJob(items=[]), gateway, store, config=config)

    job = make_job(["a"])
    job.items[0].status = ItemStatus.COMPLETED
    with pytest.raises(ValueError):
        JobScheduler(job, gateway, store, config=config)


def test_run_only_once(gateway, store, config):
    scheduler = make_scheduler(make_job(["a"]), gateway, store, config)
    asyncio.run(scheduler.run())

    with pytest.raises(RuntimeError):
        asyncio.run(scheduler.run())


def test_terminal_items_cannot_move():
    item = JobItem(index=0, source=ItemRequest(text="a"), output_name="a", status=ItemStatus.COMPLETED)

    with pytest.raises(TransitionError):
        ensure_transition_allowed(item, ItemStatus.PROCESSING)

    pending = JobItem(index=1, source=ItemRequest(text="b"), output_name="b")
    with pytest.raises(TransitionError):
        ensure_transition_allowed(pending, ItemStatus.COMPLETED)
