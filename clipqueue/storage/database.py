from sqlalchemy import (
    JSON, Column, DateTime, Enum as SQLEnum, Index, Integer, String, Text,
    case, create_engine, delete, func, or_, select, update,
)
from sqlalchemy.orm import declarative_base, sessionmaker
import logging
import os
from datetime import timedelta
from typing import Callable, Iterable, List, Optional, Union
from ..errors import JobValidationError
from ..models.job import (
    ACTIVE_STATUSES, TERMINAL_STATUSES, Job, JobPriority, JobStatus, QueueStats, utcnow,
)

logger = logging.getLogger(__name__)

Base = declarative_base()

STUCK_JOB_MESSAGE = "Job timeout - processing took too long"
STALE_JOB_MESSAGE = "Job interrupted - dispatcher restarted while it was processing"


class JobModel(Base):
    __tablename__ = "jobs"

    id = Column(String, primary_key=True)
    type = Column(String, nullable=False, index=True)
    status = Column(SQLEnum(JobStatus), nullable=False, default=JobStatus.PENDING)
    priority = Column(SQLEnum(JobPriority), nullable=False, default=JobPriority.NORMAL)
    priority_rank = Column(Integer, nullable=False, default=1)
    seq = Column(Integer, nullable=False)
    payload = Column(JSON, nullable=False)
    owner = Column(String, nullable=False, index=True)
    progress = Column(Integer, nullable=False, default=0)
    message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)
    parent_id = Column(String, nullable=True, index=True)

    __table_args__ = (
        Index("ix_jobs_claim", "status", "priority_rank", "created_at", "seq"),
    )


class Storage:
    """Job Store. One short-lived session per call; every state change is a
    single UPDATE keyed by job id so concurrent handlers never lose writes."""

    CLAIM_ATTEMPTS = 5

    def __init__(self, db_path: str = None, clock: Callable = None):
        if not db_path:
            db_path = os.path.join(os.path.expanduser("~"), ".clipqueue", "jobs.db")
        os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)

        # Handler threads share the engine; sqlite serialises writers behind its file lock
        self.engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.clock = clock or utcnow

    def __del__(self):
        if hasattr(self, 'engine'):
            self.engine.dispose()

    def close(self):
        self.engine.dispose()

    @staticmethod
    def _to_job(row: JobModel) -> Job:
        return Job.model_validate(row)

    def enqueue(self, job_type, payload: dict, owner: str,
                priority: Union[JobPriority, str] = JobPriority.NORMAL,
                max_retries: int = 3, parent_id: Optional[str] = None) -> str:
        job_type = getattr(job_type, "value", job_type)
        if not job_type or not isinstance(job_type, str):
            raise JobValidationError("Job type is required")
        if not owner:
            raise JobValidationError("Job owner is required")
        if not isinstance(payload, dict) or not payload:
            raise JobValidationError("Job payload must be a non-empty JSON object")
        try:
            priority = JobPriority(priority)
        except ValueError:
            raise JobValidationError(f"Unknown priority: {priority}") from None
        if max_retries < 0:
            raise JobValidationError("max_retries must not be negative")

        job = Job(
            type=job_type,
            payload=payload,
            owner=owner,
            priority=priority,
            max_retries=max_retries,
            parent_id=parent_id,
            created_at=self.clock(),
        )
        # Insertion order, the tie-break when two jobs share a created_at
        next_seq = select(func.coalesce(func.max(JobModel.seq), 0) + 1).scalar_subquery()
        session = self.Session()
        try:
            session.add(JobModel(**job.model_dump(), priority_rank=priority.rank, seq=next_seq))
            session.commit()
        finally:
            session.close()
        logger.debug(f"Stored job {job.id} ({job.type}, {priority.value})")
        return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        session = self.Session()
        try:
            row = session.get(JobModel, job_id)
            return self._to_job(row) if row else None
        finally:
            session.close()

    def claim_next(self) -> Optional[Job]:
        """Move the best pending job to processing and return it.

        Best means highest priority, then oldest. The move is a conditional
        UPDATE on status='pending', so a row taken by another claimant in the
        meantime is skipped rather than claimed twice.
        """
        session = self.Session()
        try:
            for _ in range(self.CLAIM_ATTEMPTS):
                now = self.clock()
                candidate = session.execute(
                    select(JobModel.id)
                    .where(JobModel.status == JobStatus.PENDING)
                    .where(or_(JobModel.next_retry_at.is_(None), JobModel.next_retry_at <= now))
                    .order_by(JobModel.priority_rank.desc(), JobModel.created_at.asc(), JobModel.seq.asc())
                    .limit(1)
                ).scalar_one_or_none()
                if candidate is None:
                    session.rollback()
                    return None

                result = session.execute(
                    update(JobModel)
                    .where(JobModel.id == candidate, JobModel.status == JobStatus.PENDING)
                    .values(
                        status=JobStatus.PROCESSING,
                        progress=0,
                        message="Starting processing...",
                        started_at=now,
                        completed_at=None,
                        error_message=None,
                    )
                    .execution_options(synchronize_session=False)
                )
                session.commit()
                if result.rowcount == 1:
                    return self._to_job(session.get(JobModel, candidate))
                logger.debug(f"Lost claim race for job {candidate}, trying next candidate")
            return None
        finally:
            session.close()

    def update_status(self, job_id: str, status: Union[JobStatus, str], progress: int = None,
                      message: str = None, error_message: str = None,
                      expected: Union[JobStatus, Iterable[JobStatus]] = None) -> bool:
        """Idempotent partial update. Returns False when no row matched.

        ``expected`` restricts the update to jobs currently in that status.
        """
        status = JobStatus(status)
        now = self.clock()
        values = {"status": status}
        if progress is not None:
            values["progress"] = max(0, min(100, int(progress)))
        if message is not None:
            values["message"] = message
        if status == JobStatus.FAILED:
            if error_message or message:
                values["error_message"] = error_message or message
        elif status == JobStatus.COMPLETED:
            values["error_message"] = None
        elif error_message is not None:
            values["error_message"] = error_message

        if status == JobStatus.PROCESSING and progress == 0:
            values["started_at"] = func.coalesce(JobModel.started_at, now)
        elif status in TERMINAL_STATUSES:
            values["completed_at"] = now

        stmt = update(JobModel).where(JobModel.id == job_id)
        if expected is not None:
            expected = [expected] if isinstance(expected, (JobStatus, str)) else list(expected)
            stmt = stmt.where(JobModel.status.in_([JobStatus(s) for s in expected]))
        return self._execute(stmt.values(**values)) == 1

    def update_progress(self, job_id: str, progress: int, message: str = None) -> bool:
        """Raise progress (never lower it) while the job is processing.

        Returns False if the job is no longer processing.
        """
        progress = max(0, min(100, int(progress)))
        values = {"progress": case((JobModel.progress < progress, progress), else_=JobModel.progress)}
        if message is not None:
            values["message"] = message
        stmt = (
            update(JobModel)
            .where(JobModel.id == job_id, JobModel.status == JobStatus.PROCESSING)
            .values(**values)
        )
        return self._execute(stmt) == 1

    def requeue(self, job_id: str, error_message: str, next_retry_at=None) -> bool:
        """Send a processing job back to pending, incrementing retry_count.

        The increment and the bound check happen in one statement; returns
        False when retries are exhausted or the job left processing.
        """
        stmt = (
            update(JobModel)
            .where(
                JobModel.id == job_id,
                JobModel.status == JobStatus.PROCESSING,
                JobModel.retry_count < JobModel.max_retries,
            )
            .values(
                status=JobStatus.PENDING,
                retry_count=JobModel.retry_count + 1,
                progress=0,
                message="Queued for retry",
                started_at=None,
                completed_at=None,
                error_message=error_message,
                next_retry_at=next_retry_at,
            )
        )
        return self._execute(stmt) == 1

    def cancel(self, job_id: str, owner: str) -> bool:
        stmt = (
            update(JobModel)
            .where(
                JobModel.id == job_id,
                JobModel.owner == owner,
                JobModel.status.in_(ACTIVE_STATUSES),
            )
            .values(
                status=JobStatus.CANCELLED,
                message="Processing cancelled",
                completed_at=self.clock(),
            )
        )
        return self._execute(stmt) == 1

    def list_by_owner(self, owner: str, limit: int = 50, status: JobStatus = None) -> List[Job]:
        session = self.Session()
        try:
            query = select(JobModel).where(JobModel.owner == owner)
            if status:
                query = query.where(JobModel.status == JobStatus(status))
            query = query.order_by(JobModel.created_at.desc(), JobModel.seq.desc()).limit(limit)
            return [self._to_job(row) for row in session.execute(query).scalars()]
        finally:
            session.close()

    def list_jobs(self, status: JobStatus = None, limit: int = None, job_type: str = None,
                  parent_id: str = None) -> List[Job]:
        session = self.Session()
        try:
            query = select(JobModel)
            if status:
                query = query.where(JobModel.status == JobStatus(status))
            if job_type:
                query = query.where(JobModel.type == job_type)
            if parent_id:
                query = query.where(JobModel.parent_id == parent_id)
            query = query.order_by(JobModel.created_at.asc(), JobModel.seq.asc())
            if limit:
                query = query.limit(limit)
            return [self._to_job(row) for row in session.execute(query).scalars()]
        finally:
            session.close()

    def count_by_status(self, status: JobStatus) -> int:
        session = self.Session()
        try:
            return session.execute(
                select(func.count()).select_from(JobModel).where(JobModel.status == JobStatus(status))
            ).scalar_one()
        finally:
            session.close()

    def delete_terminal_older_than(self, age: timedelta) -> int:
        cutoff = self.clock() - age
        stmt = delete(JobModel).where(
            JobModel.status.in_(TERMINAL_STATUSES),
            JobModel.completed_at < cutoff,
        )
        return self._execute(stmt)

    def fail_stuck_jobs(self, max_runtime: timedelta) -> int:
        now = self.clock()
        stmt = (
            update(JobModel)
            .where(
                JobModel.status == JobStatus.PROCESSING,
                JobModel.started_at < now - max_runtime,
            )
            .values(
                status=JobStatus.FAILED,
                error_message=STUCK_JOB_MESSAGE,
                message=STUCK_JOB_MESSAGE,
                completed_at=now,
            )
        )
        return self._execute(stmt)

    def requeue_stale_jobs(self) -> int:
        """Recover jobs a previous process left in processing.

        Only safe when this process is the sole dispatcher for the database.
        """
        now = self.clock()
        session = self.Session()
        try:
            exhausted = session.execute(
                update(JobModel)
                .where(
                    JobModel.status == JobStatus.PROCESSING,
                    JobModel.retry_count >= JobModel.max_retries,
                )
                .values(status=JobStatus.FAILED, error_message=STALE_JOB_MESSAGE,
                        message=STALE_JOB_MESSAGE, completed_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            requeued = session.execute(
                update(JobModel)
                .where(JobModel.status == JobStatus.PROCESSING)
                .values(
                    status=JobStatus.PENDING,
                    retry_count=JobModel.retry_count + 1,
                    progress=0,
                    message="Queued for retry",
                    started_at=None,
                    error_message=STALE_JOB_MESSAGE,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            session.commit()
            return exhausted + requeued
        finally:
            session.close()

    def stats(self, window: timedelta = timedelta(hours=24)) -> QueueStats:
        since = self.clock() - window
        session = self.Session()
        try:
            counts = dict(
                session.execute(
                    select(JobModel.status, func.count())
                    .where(JobModel.created_at > since)
                    .group_by(JobModel.status)
                ).all()
            )
            runs = session.execute(
                select(JobModel.started_at, JobModel.completed_at).where(
                    JobModel.created_at > since,
                    JobModel.status == JobStatus.COMPLETED,
                    JobModel.started_at.is_not(None),
                    JobModel.completed_at.is_not(None),
                )
            ).all()
        finally:
            session.close()

        durations = [(done - started).total_seconds() for started, done in runs]
        return QueueStats(
            window_hours=window.total_seconds() / 3600,
            total_jobs=sum(counts.values()),
            pending_jobs=counts.get(JobStatus.PENDING, 0),
            processing_jobs=counts.get(JobStatus.PROCESSING, 0),
            completed_jobs=counts.get(JobStatus.COMPLETED, 0),
            failed_jobs=counts.get(JobStatus.FAILED, 0),
            cancelled_jobs=counts.get(JobStatus.CANCELLED, 0),
            avg_processing_seconds=sum(durations) / len(durations) if durations else None,
        )

    def _execute(self, stmt) -> int:
        session = self.Session()
        try:
            result = session.execute(stmt.execution_options(synchronize_session=False))
            session.commit()
            return result.rowcount
        finally:
            session.close()
