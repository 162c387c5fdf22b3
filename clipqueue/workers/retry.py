import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from ..errors import PermanentJobError
from ..models.job import Job


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    reason: str
    next_retry_at: Optional[datetime] = None


class RetryPolicy:
    """Decides whether a failed attempt goes back to pending or fails for good.

    With ``classify_failures`` off every error is retried until the job runs
    out of attempts. ``backoff_base`` of 0 requeues immediately.
    """

    def __init__(self, backoff_base: float = 0.0, classify_failures: bool = True):
        self.backoff_base = backoff_base
        self.classify_failures = classify_failures

    def is_permanent(self, error: BaseException) -> bool:
        return self.classify_failures and isinstance(error, PermanentJobError)

    def calculate_next_retry(self, attempts: int, now: datetime) -> Optional[datetime]:
        """Calculate next retry time using exponential backoff"""
        if self.backoff_base <= 0:
            return None
        delay = math.pow(self.backoff_base, attempts)
        return now + timedelta(seconds=delay)

    def decide(self, job: Job, error: BaseException, now: datetime) -> RetryDecision:
        if self.is_permanent(error):
            return RetryDecision(False, "permanent failure")
        if job.retry_count >= job.max_retries:
            return RetryDecision(False, f"retries exhausted ({job.retry_count}/{job.max_retries})")
        attempt = job.retry_count + 1
        return RetryDecision(
            True,
            f"retry {attempt}/{job.max_retries}",
            self.calculate_next_retry(attempt, now),
        )
