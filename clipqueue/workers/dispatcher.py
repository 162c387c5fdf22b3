import logging
import os
import threading
import time
from typing import Callable, Dict, Optional
from ..collaborators import Services
from ..errors import JobInterruptedError
from ..handlers.base import JobContext
from ..handlers.registry import HandlerRegistry
from ..models.job import Job, JobStatus
from ..storage.database import Storage
from .progress import ProgressTracker
from .retry import RetryPolicy


class Dispatcher:
    """Claims pending jobs and runs each on its own thread, never more than
    ``max_concurrent_jobs`` at once.

    A slot is taken when a job is claimed and given back in a ``finally`` when
    its thread ends, so a crashing handler cannot leak capacity.
    """

    def __init__(self, storage: Storage, registry: HandlerRegistry,
                 services: Optional[Services] = None,
                 tracker: Optional[ProgressTracker] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 enqueue: Optional[Callable[..., str]] = None,
                 max_concurrent_jobs: int = 3,
                 poll_interval: float = 5.0,
                 idle_interval: float = 10.0,
                 job_timeout: Optional[float] = None,
                 media_dir: Optional[str] = None):
        self.storage = storage
        self.registry = registry
        self.services = services
        self.tracker = tracker or ProgressTracker(storage)
        self.retry_policy = retry_policy or RetryPolicy()
        self.enqueue = enqueue or storage.enqueue
        self.max_concurrent_jobs = max_concurrent_jobs
        self.poll_interval = poll_interval
        self.idle_interval = idle_interval
        self.job_timeout = job_timeout
        self.media_dir = media_dir or os.path.join(os.path.expanduser("~"), ".clipqueue", "media")

        self.running = False
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._lock = threading.Lock()
        self._in_flight = 0
        self._job_threads: Dict[str, threading.Thread] = {}
        self._loop_thread: Optional[threading.Thread] = None
        self.logger = logging.getLogger(__name__)

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    def start(self, recover_stale: bool = True):
        if self.running:
            return
        if recover_stale:
            recovered = self.storage.requeue_stale_jobs()
            if recovered:
                self.logger.warning(f"Recovered {recovered} job(s) left processing by a previous run")

        self.running = True
        self._stop_event.clear()
        self._loop_thread = threading.Thread(target=self.run, name="clipqueue-dispatcher", daemon=True)
        self._loop_thread.start()

    def stop(self, wait: bool = True, timeout: float = 30.0):
        """Stop claiming jobs; optionally wait for running handlers to finish."""
        self.running = False
        self._stop_event.set()
        self._wake_event.set()

        deadline = time.monotonic() + timeout
        if self._loop_thread is not None:
            self._loop_thread.join(max(deadline - time.monotonic(), 0))
            self._loop_thread = None

        if wait:
            with self._lock:
                threads = list(self._job_threads.values())
            for thread in threads:
                thread.join(max(deadline - time.monotonic(), 0))

    def wake(self):
        """Cut the current idle or capacity wait short."""
        self._wake_event.set()

    def run(self):
        """Main dispatch loop"""
        self.logger.info(f"Dispatcher started (max {self.max_concurrent_jobs} concurrent jobs)")
        while not self._stop_event.is_set():
            try:
                delay = self.dispatch_once()
            except Exception:
                # A failed store call must not take the loop down with it
                self.logger.exception("Dispatcher error")
                delay = self.poll_interval

            if delay and self._wake_event.wait(delay):
                self._wake_event.clear()
        self.logger.info("Dispatcher stopped")

    def dispatch_once(self) -> float:
        """Try to start one job. Returns how long the loop should wait."""
        with self._lock:
            if self._in_flight >= self.max_concurrent_jobs:
                return self.poll_interval

        job = self.storage.claim_next()
        if job is None:
            return self.idle_interval

        self._launch(job)
        return 0

    def _launch(self, job: Job):
        thread = threading.Thread(
            target=self._run_job, args=(job,), name=f"clipqueue-job-{job.id[:8]}", daemon=True
        )
        with self._lock:
            self._in_flight += 1
            self._job_threads[job.id] = thread
        try:
            thread.start()
        except Exception:
            self._release(job, thread)
            raise

    def _release(self, job: Job, thread: threading.Thread):
        with self._lock:
            self._in_flight -= 1
            # A retry of this job may already be running under the same id
            if self._job_threads.get(job.id) is thread:
                del self._job_threads[job.id]

    def _run_job(self, job: Job):
        try:
            self.process_job(job)
        except Exception:
            self.logger.exception(f"Error processing job {job.id}")
        finally:
            self._release(job, threading.current_thread())
            self.wake()

    def process_job(self, job: Job):
        """Run the handler for a claimed job and record the outcome."""
        self.logger.info(
            f"Processing job {job.id}: {job.type} "
            f"(attempt {job.retry_count + 1}/{job.max_retries + 1})"
        )
        deadline = time.monotonic() + self.job_timeout if self.job_timeout else None

        try:
            handler = self.registry.resolve(job.type)
            context = JobContext(job, self.tracker, self.services, self.enqueue, self.media_dir, deadline)
            result = handler.run(job, context)
        except JobInterruptedError as e:
            self.logger.info(f"Job {job.id} stopped early: {e}")
            return
        except Exception as e:
            self.logger.debug(f"Job {job.id} raised", exc_info=True)
            self.handle_failure(job, e)
            return

        completed = self.storage.update_status(
            job.id, JobStatus.COMPLETED, progress=100,
            message="Processing completed successfully", expected=JobStatus.PROCESSING,
        )
        if completed:
            self.logger.info(f"Job {job.id} completed successfully")
            self.logger.debug(f"Job {job.id} result: {result!r}")
        else:
            self.logger.warning(f"Job {job.id} left processing before it finished; result discarded")

    def handle_failure(self, job: Job, error: Exception):
        message = str(error) or type(error).__name__
        decision = self.retry_policy.decide(job, error, self.storage.clock())

        if decision.retry and self.storage.requeue(job.id, message, decision.next_retry_at):
            self.logger.warning(f"Job {job.id} queued for {decision.reason}: {message}")
            return

        failed = self.storage.update_status(
            job.id, JobStatus.FAILED, error_message=message, expected=JobStatus.PROCESSING
        )
        if failed:
            self.logger.error(f"Job {job.id} failed ({decision.reason}): {message}")
        else:
            self.logger.warning(f"Job {job.id} left processing before it failed; error discarded: {message}")
