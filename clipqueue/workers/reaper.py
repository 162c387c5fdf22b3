import logging
import os
import shutil
import threading
from datetime import timedelta
from typing import Dict, Optional
from ..storage.database import Storage

logger = logging.getLogger(__name__)


class Reaper:
    """Periodic housekeeping, independent of the dispatch loop.

    Deletes terminal jobs past the retention window, fails jobs that have
    been processing for longer than ``stuck_job_timeout`` and removes source
    downloads under ``media_dir`` that no job still needs.
    """

    def __init__(self, storage: Storage, retention: timedelta = timedelta(days=7),
                 interval: float = 3600.0, stuck_job_timeout: Optional[timedelta] = timedelta(hours=2),
                 media_dir: Optional[str] = None):
        self.storage = storage
        self.retention = retention
        self.interval = interval
        self.stuck_job_timeout = stuck_job_timeout
        self.media_dir = media_dir
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def cleanup_old_jobs(self) -> int:
        deleted = self.storage.delete_terminal_older_than(self.retention)
        if deleted:
            logger.info(f"Cleaned up {deleted} old job(s)")
        return deleted

    def fail_stuck_jobs(self) -> int:
        if self.stuck_job_timeout is None:
            return 0
        failed = self.storage.fail_stuck_jobs(self.stuck_job_timeout)
        if failed:
            logger.warning(f"Failed {failed} job(s) stuck in processing")
        return failed

    def prune_media(self) -> int:
        """Remove ``media_dir/<job id>`` once that job is finished and none
        of the clip jobs it fanned out is still pending or processing."""
        if not self.media_dir or not os.path.isdir(self.media_dir):
            return 0

        removed = 0
        for job_id in os.listdir(self.media_dir):
            path = os.path.join(self.media_dir, job_id)
            if not os.path.isdir(path):
                continue
            job = self.storage.get_job(job_id)
            if job is not None and not job.is_terminal:
                continue
            if any(not child.is_terminal for child in self.storage.list_jobs(parent_id=job_id)):
                continue
            shutil.rmtree(path)
            removed += 1
            logger.debug(f"Removed source download for job {job_id}")

        if removed:
            logger.info(f"Removed {removed} source download(s)")
        return removed

    def run_once(self) -> Dict[str, int]:
        """One sweep. Errors are logged; a failed step counts as zero."""
        result = {"deleted": 0, "stuck": 0, "pruned": 0}
        try:
            result["deleted"] = self.cleanup_old_jobs()
        except Exception:
            logger.exception("Failed to clean up old jobs")
        try:
            result["stuck"] = self.fail_stuck_jobs()
        except Exception:
            logger.exception("Failed to sweep stuck jobs")
        try:
            result["pruned"] = self.prune_media()
        except Exception:
            logger.exception("Failed to prune source downloads")
        return result

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="clipqueue-reaper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self):
        while True:
            self.run_once()
            if self._stop_event.wait(self.interval):
                break
