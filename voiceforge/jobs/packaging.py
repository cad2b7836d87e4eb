"""
Download packaging for finished jobs.

A single job is downloaded straight from its artifact. A batch job with
local artifacts is bundled into one zip archive named after the job.
"""

import os
import zipfile
from pathlib import Path
from typing import Optional, Tuple

from .models import BatchJob, JobKind


def total_artifact_size(job: BatchJob) -> Optional[int]:
    """Sum of known artifact sizes, None when no size is known."""
    sizes = [item.result.size_bytes for item in job.succeeded_items() if item.result.size_bytes is not None]
    return sum(sizes) if sizes else None


def bundle_outputs(
    job: BatchJob,
    output_dir: str,
    archive: bool = True
) -> Tuple[Optional[str], Optional[int]]:
    """
    Decide the download reference and size for a finished job.

    Args:
        job: Finished job
        output_dir: Directory the archive is written to
        archive: Zip batch artifacts; when False a batch has no single download

    Returns:
        (download reference, size in bytes); either may be None
    """
    succeeded = job.succeeded_items()
    if not succeeded:
        return None, None

    if job.kind == JobKind.SINGLE or len(succeeded) == 1:
        artifact = succeeded[0].result
        return artifact.location, artifact.size_bytes

    if not archive:
        return None, total_artifact_size(job)

    local_items = [item for item in succeeded if os.path.isfile(item.result.location)]
    if not local_items:
        return None, total_artifact_size(job)

    archive_path = Path(output_dir) / f"{job.job_id}.zip"
    archive_path.parent.mkdir(parents=True, exist_ok=True)

    with zipfile.ZipFile(archive_path, 'w', compression=zipfile.ZIP_DEFLATED) as bundle:
        used_names = set()
        for item in local_items:
            suffix = Path(item.result.location).suffix
            arcname = f"{Path(item.output_name).name}{suffix}"
            if arcname in used_names:
                arcname = f"{Path(item.output_name).name}_{item.index + 1:03d}{suffix}"
            used_names.add(arcname)
            bundle.write(item.result.location, arcname=arcname)

    return str(archive_path), archive_path.stat().st_size
