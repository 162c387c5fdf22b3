from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field
from uuid import uuid4


def utcnow() -> datetime:
    """Naive UTC timestamp, the form the job table stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobType(str, Enum):
    PROCESS_VIDEO = "process_video"
    GENERATE_CLIP = "generate_clip"
    GENERATE_SUBTITLES = "generate_subtitles"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)
ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)


class JobPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return PRIORITY_RANKS[self]


PRIORITY_RANKS = {
    JobPriority.LOW: 0,
    JobPriority.NORMAL: 1,
    JobPriority.HIGH: 2,
}


class Job(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    type: str
    status: JobStatus = JobStatus.PENDING
    priority: JobPriority = JobPriority.NORMAL
    payload: Dict[str, Any] = Field(default_factory=dict)
    owner: str
    progress: int = Field(default=0, ge=0, le=100)
    message: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    next_retry_at: Optional[datetime] = None  # only set when retry backoff is configured
    parent_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class JobProgress(BaseModel):
    job_id: str
    progress: int
    status: JobStatus
    message: str
    estimated_seconds_remaining: Optional[int] = None


class QueueStats(BaseModel):
    """Job counts for a recent window, plus mean runtime of completed jobs."""

    window_hours: float
    total_jobs: int = 0
    pending_jobs: int = 0
    processing_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    cancelled_jobs: int = 0
    avg_processing_seconds: Optional[float] = None
