import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Union
from .collaborators import Services
from .config import Settings
from .errors import JobNotFoundError, JobValidationError
from .handlers.registry import HandlerRegistry
from .models.job import Job, JobPriority, JobProgress, QueueStats
from .storage.database import Storage
from .workers.dispatcher import Dispatcher
from .workers.progress import ProgressTracker
from .workers.reaper import Reaper
from .workers.retry import RetryPolicy

logger = logging.getLogger(__name__)


class ClipQueue:
    """Entry point for callers: submit, inspect, cancel and list jobs, and
    run the dispatcher and reaper."""

    def __init__(self, storage: Storage, registry: Optional[HandlerRegistry] = None,
                 services: Optional[Services] = None, settings: Optional[Settings] = None):
        self.settings = settings or Settings(db_path=str(storage.engine.url.database))
        self.storage = storage
        self.registry = registry or HandlerRegistry.default()
        self.services = services
        self.tracker = ProgressTracker(storage)
        self.retry_policy = RetryPolicy(
            backoff_base=self.settings.backoff_base,
            classify_failures=self.settings.classify_failures,
        )
        self.dispatcher = Dispatcher(
            storage,
            self.registry,
            services=services,
            tracker=self.tracker,
            retry_policy=self.retry_policy,
            enqueue=self.add_job,
            max_concurrent_jobs=self.settings.max_concurrent_jobs,
            poll_interval=self.settings.poll_interval,
            idle_interval=self.settings.idle_interval,
            job_timeout=self.settings.job_timeout,
            media_dir=self.settings.media_dir,
        )
        self.reaper = Reaper(
            storage,
            retention=timedelta(days=self.settings.retention_days),
            interval=self.settings.reaper_interval,
            stuck_job_timeout=timedelta(seconds=self.settings.stuck_job_timeout),
            media_dir=self.settings.media_dir,
        )

    @classmethod
    def from_settings(cls, settings: Settings, services: Optional[Services] = None,
                      registry: Optional[HandlerRegistry] = None,
                      clock: Optional[Callable] = None) -> "ClipQueue":
        return cls(Storage(settings.db_path, clock=clock), registry=registry,
                   services=services, settings=settings)

    def add_job(self, job_type: str, payload: Dict[str, Any], owner: str,
                priority: Union[JobPriority, str] = JobPriority.NORMAL,
                parent_id: Optional[str] = None) -> str:
        job_type = getattr(job_type, "value", job_type)
        if job_type not in self.registry:
            raise JobValidationError(
                f"Unknown job type: {job_type} (registered: {', '.join(self.registry.job_types)})"
            )
        if not isinstance(payload, dict) or not payload:
            raise JobValidationError("Job payload must be a non-empty JSON object")
        payload = self.registry.resolve(job_type).validate_payload(payload)

        job_id = self.storage.enqueue(
            job_type, payload, owner, priority,
            max_retries=self.settings.max_retries, parent_id=parent_id,
        )
        logger.info(f"Added job {job_id} to queue: {job_type}")
        self.dispatcher.wake()
        return job_id

    def get_job(self, job_id: str) -> Job:
        job = self.storage.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get_job_progress(self, job_id: str) -> JobProgress:
        return self.tracker.get_progress(job_id)

    def cancel_job(self, job_id: str, owner: str) -> bool:
        cancelled = self.storage.cancel(job_id, owner)
        if cancelled:
            logger.info(f"Job {job_id} cancelled by {owner}")
        else:
            logger.info(f"Job {job_id} not cancelled: unknown, not owned by {owner}, or already finished")
        return cancelled

    def list_jobs(self, owner: str, limit: int = 50) -> List[Job]:
        return self.storage.list_by_owner(owner, limit)

    def cleanup_old_jobs(self) -> int:
        return self.reaper.cleanup_old_jobs()

    def stats(self, window: timedelta = timedelta(hours=24)) -> QueueStats:
        return self.storage.stats(window)

    def start(self):
        self.dispatcher.start()
        self.reaper.start()

    def stop(self, wait: bool = True, timeout: float = 30.0):
        self.reaper.stop()
        self.dispatcher.stop(wait=wait, timeout=timeout)

    def close(self):
        self.stop(wait=False, timeout=0)
        self.storage.close()
