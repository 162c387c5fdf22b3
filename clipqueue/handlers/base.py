import tempfile
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Dict, Optional, Type
from pydantic import BaseModel, ValidationError
from ..collaborators import Services
from ..errors import (
    JobCancelledError, JobInterruptedError, JobTimeoutError, JobValidationError, PermanentJobError,
)
from ..models.job import Job, JobPriority, JobStatus
from ..workers.progress import ProgressTracker


def describe_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "payload"
        problems.append(f"{location}: {error['msg']}")
    return "; ".join(problems)


class JobContext:
    """What a running handler may touch: its stage reporter, the fan-out
    hook, the collaborators and a scratch directory."""

    def __init__(self, job: Job, tracker: ProgressTracker, services: Optional[Services],
                 enqueue: Callable[..., str], media_dir: str,
                 deadline: Optional[float] = None):
        self.job = job
        self.tracker = tracker
        self.services = services
        self.media_dir = media_dir
        self.deadline = deadline
        self._enqueue = enqueue

    def stage(self, progress: int, message: str):
        """Record a checkpoint, then stop the handler if the job was cancelled,
        reaped, or has run past its deadline."""
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise JobTimeoutError(f"Job exceeded its time limit before: {message}")
        if self.tracker.report(self.job.id, progress, message):
            return
        current = self.tracker.storage.get_job(self.job.id)
        status = current.status if current else None
        if status == JobStatus.CANCELLED:
            raise JobCancelledError(self.job.id, status)
        raise JobInterruptedError(self.job.id, status)

    def require_services(self) -> Services:
        if self.services is None:
            raise PermanentJobError(f"No collaborators configured for {self.job.type} jobs")
        return self.services

    def enqueue(self, job_type: str, payload: Dict[str, Any],
                priority: JobPriority = JobPriority.NORMAL) -> str:
        """Submit a child job owned by the same principal."""
        return self._enqueue(job_type, payload, self.job.owner, priority, parent_id=self.job.id)

    @contextmanager
    def working_directory(self):
        with tempfile.TemporaryDirectory(prefix=f"clipqueue-{self.job.id[:8]}-") as path:
            yield path


class JobHandler(ABC):
    job_type: str
    payload_model: Type[BaseModel]

    def validate_payload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Check a submitted payload and return it normalised for storage."""
        try:
            return self.payload_model.model_validate(payload).model_dump(mode="json")
        except ValidationError as exc:
            raise JobValidationError(
                f"Invalid {self.job_type} payload: {describe_validation_error(exc)}"
            ) from exc

    def parse_payload(self, job: Job) -> BaseModel:
        try:
            return self.payload_model.model_validate(job.payload)
        except ValidationError as exc:
            raise PermanentJobError(
                f"Stored {self.job_type} payload is invalid: {describe_validation_error(exc)}"
            ) from exc

    def run(self, job: Job, context: JobContext) -> Any:
        return self.execute(job, self.parse_payload(job), context)

    @abstractmethod
    def execute(self, job: Job, payload: BaseModel, context: JobContext) -> Any:
        """Run the stage sequence. Raise to fail the attempt."""
