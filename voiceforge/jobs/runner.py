"""
Command-line runner for batch generation jobs.

Submits a set of script files as one job, runs it in the foreground and
prints progress as items finish.

Usage:
    python -m voiceforge.jobs.runner intro.txt chapter1.txt [--parallel] [--format wav]
"""

import asyncio
import sys
from typing import List, Optional, Sequence

from ..config import PipelineConfig
from ..core import AudioFormat, OutputQuality, SynthesisGateway
from ..errors import AdmissionError, PersistenceError
from .manager import JobManager
from .models import ExecutionPolicy, HistoryRecord, ItemRequest, OutputNaming, format_file_size
from .notifications import CallbackNotificationSink, TerminalEvent
from .progress import JobSnapshot


def print_progress(view: JobSnapshot):
    progress = view.progress
    print(
        f"\r[{view.job_id}] {progress.finished}/{progress.total} "
        f"({progress.percentage:.0f}%) - {progress.processing} in progress, {progress.failed} failed",
        end="",
        flush=True
    )


def print_outcome(event: TerminalEvent):
    print(f"\n{event.format_message()}")


def run_batch(
    files: Sequence[str],
    execution_policy: ExecutionPolicy = ExecutionPolicy.SEQUENTIAL,
    output_format: AudioFormat = AudioFormat.MP3,
    output_quality: OutputQuality = OutputQuality.HIGH,
    output_naming: OutputNaming = OutputNaming.ORIGINAL,
    voice: Optional[str] = None,
    config: Optional[PipelineConfig] = None,
    gateway: Optional[SynthesisGateway] = None,
    verbose: bool = True
) -> HistoryRecord:
    """
    Generate audio for a list of script files and wait for the result.

    Args:
        files: Script file paths, in submission order
        execution_policy: Sequential or parallel dispatch
        output_format: Audio format of every output
        output_quality: Output quality tier
        output_naming: How output files are named
        voice: Voice for every item (default: per-request default voice)
        config: Pipeline configuration (default: from environment)
        gateway: Synthesis backend (default: KokoroGateway)
        verbose: Print progress to stdout

    Returns:
        History record of the finished job

    Raises:
        AdmissionError: If none of the files can be admitted
    """
    manager = JobManager(
        gateway=gateway,
        config=config,
        notifier=CallbackNotificationSink(print_outcome) if verbose else None
    )
    try:
        requests = [ItemRequest.from_file(path) for path in files]
        submission = manager.submit_batch(
            requests,
            execution_policy=execution_policy,
            output_format=output_format,
            output_quality=output_quality,
            output_naming=output_naming,
            voice_ref=voice
        )

        if verbose:
            for rejection in submission.rejected:
                print(f"Skipped {rejection.name}: {rejection.reason} ({rejection.detail})")
            manager.subscribe(submission.job_id, print_progress)

        return asyncio.run(manager.run_job(submission.job_id))
    finally:
        manager.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)

    if not args or '--help' in args or '-h' in args:
        print(__doc__)
        return 0

    files = []
    policy = ExecutionPolicy.SEQUENTIAL
    audio_format = AudioFormat.MP3
    quality = OutputQuality.HIGH
    naming = OutputNaming.ORIGINAL
    voice = None

    i = 0
    while i < len(args):
        arg = args[i]
        try:
            if arg == '--parallel':
                policy = ExecutionPolicy.PARALLEL
            elif arg == '--format':
                i += 1
                audio_format = AudioFormat(args[i].lower())
            elif arg == '--quality':
                i += 1
                quality = OutputQuality(args[i].lower())
            elif arg == '--naming':
                i += 1
                naming = OutputNaming(args[i].lower())
            elif arg == '--voice':
                i += 1
                voice = args[i]
            elif arg.startswith('--'):
                print(f"Error: Unknown option '{arg}'")
                return 2
            else:
                files.append(arg)
        except IndexError:
            print(f"Error: {arg} requires a value")
            return 2
        except ValueError as e:
            print(f"Error: {e}")
            return 2
        i += 1

    if not files:
        print("Error: No input files given")
        return 2

    try:
        record = run_batch(
            files,
            execution_policy=policy,
            output_format=audio_format,
            output_quality=quality,
            output_naming=naming,
            voice=voice
        )
    except AdmissionError as e:
        print(f"Error: {e}")
        return 1
    except (FileNotFoundError, PersistenceError) as e:
        print(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130

    print(record.format_status_message())
    if record.output.download_ref:
        print(f"Output: {record.output.download_ref} ({format_file_size(record.size_bytes)})")
    return 0 if record.failed_count == 0 else 1


if __name__ == '__main__':
    sys.exit(main())
