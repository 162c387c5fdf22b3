"""Stage progress persistence and time-remaining estimates."""

import logging
from datetime import datetime
from typing import Optional
from ..errors import JobNotFoundError
from ..models.job import Job, JobProgress, JobStatus
from ..storage.database import Storage

logger = logging.getLogger(__name__)

# No estimate until the job is past this percentage; early numbers are noise.
ETA_MIN_PROGRESS = 10


def status_message(status: JobStatus, progress: int) -> str:
    """Default caller-facing message when a job has no stage message of its own."""
    if status == JobStatus.PENDING:
        return "Job queued for processing..."
    if status == JobStatus.PROCESSING:
        if progress < 20:
            return "Initializing..."
        if progress < 40:
            return "Downloading video..."
        if progress < 60:
            return "Processing with AI..."
        if progress < 80:
            return "Generating clips..."
        return "Finalizing..."
    if status == JobStatus.COMPLETED:
        return "Processing completed successfully"
    if status == JobStatus.FAILED:
        return "Processing failed"
    if status == JobStatus.CANCELLED:
        return "Processing cancelled"
    return "Unknown status"


def estimate_remaining(job: Job, now: datetime) -> Optional[int]:
    """Seconds left, extrapolated linearly from elapsed time and progress.

    Advisory only; nothing schedules on it.
    """
    if job.status != JobStatus.PROCESSING or job.started_at is None:
        return None
    if job.progress <= ETA_MIN_PROGRESS:
        return None
    elapsed = max((now - job.started_at).total_seconds(), 0.0)
    return round(elapsed * (100.0 / job.progress - 1))


class ProgressTracker:
    def __init__(self, storage: Storage):
        self.storage = storage

    def report(self, job_id: str, progress: int, message: str) -> bool:
        """Persist a stage checkpoint. False means the job stopped processing."""
        updated = self.storage.update_progress(job_id, progress, message)
        if updated:
            logger.info(f"Job {job_id}: processing ({progress}%) - {message}")
        return updated

    def get_progress(self, job_id: str) -> JobProgress:
        job = self.storage.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        if job.status == JobStatus.FAILED and job.error_message:
            message = job.error_message
        else:
            message = job.message or status_message(job.status, job.progress)

        return JobProgress(
            job_id=job.id,
            progress=job.progress,
            status=job.status,
            message=message,
            estimated_seconds_remaining=estimate_remaining(job, self.storage.clock()),
        )
