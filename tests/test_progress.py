from datetime import datetime, timedelta
import pytest
from clipqueue.errors import JobNotFoundError, PermanentJobError, TransientJobError
from clipqueue.models.job import Job, JobStatus
from clipqueue.workers.progress import estimate_remaining, status_message
from clipqueue.workers.retry import RetryPolicy

NOW = datetime(2024, 1, 1, 12, 0, 0)


def _job(**fields):
    defaults = dict(type="process_video", owner="alice", status=JobStatus.PROCESSING,
                    started_at=NOW - timedelta(seconds=60), progress=25)
    defaults.update(fields)
    return Job(**defaults)


def test_estimate_remaining_extrapolates_from_elapsed_time():
    assert estimate_remaining(_job(progress=25), NOW) == 180
    assert estimate_remaining(_job(progress=60), NOW) == 40
    assert estimate_remaining(_job(progress=100), NOW) == 0


@pytest.mark.parametrize("fields", [
    {"progress": 10},
    {"progress": 5},
    {"status": JobStatus.PENDING},
    {"status": JobStatus.COMPLETED, "progress": 100},
    {"started_at": None},
])
def test_no_estimate_early_or_outside_processing(fields):
    assert estimate_remaining(_job(**fields), NOW) is None


@pytest.mark.parametrize("status,progress,message", [
    (JobStatus.PENDING, 0, "Job queued for processing..."),
    (JobStatus.PROCESSING, 10, "Initializing..."),
    (JobStatus.PROCESSING, 20, "Downloading video..."),
    (JobStatus.PROCESSING, 45, "Processing with AI..."),
    (JobStatus.PROCESSING, 79, "Generating clips..."),
    (JobStatus.PROCESSING, 80, "Finalizing..."),
    (JobStatus.COMPLETED, 100, "Processing completed successfully"),
    (JobStatus.FAILED, 40, "Processing failed"),
    (JobStatus.CANCELLED, 0, "Processing cancelled"),
])
def test_status_message(status, progress, message):
    assert status_message(status, progress) == message


def test_get_job_progress_reports_stage_and_eta(queue, storage, clock):
    job_id = queue.add_job("flaky", {"failures": 0}, "alice")
    storage.claim_next()
    storage.update_progress(job_id, 50, "Analyzing for highlights...")
    clock.advance(seconds=30)

    info = queue.get_job_progress(job_id)
    assert info.job_id == job_id
    assert info.status == JobStatus.PROCESSING
    assert info.progress == 50
    assert info.message == "Analyzing for highlights..."
    assert info.estimated_seconds_remaining == 30


def test_get_job_progress_for_pending_and_failed_jobs(queue, storage):
    job_id = queue.add_job("flaky", {"failures": 0}, "alice")
    info = queue.get_job_progress(job_id)
    assert info.status == JobStatus.PENDING
    assert info.message == "Job queued for processing..."
    assert info.estimated_seconds_remaining is None

    storage.claim_next()
    storage.update_status(job_id, JobStatus.FAILED, error_message="corrupt source")
    assert queue.get_job_progress(job_id).message == "corrupt source"


def test_get_job_progress_unknown_job(queue):
    with pytest.raises(JobNotFoundError):
        queue.get_job_progress("missing")


def test_retry_policy_requeues_until_exhausted():
    policy = RetryPolicy()
    decision = policy.decide(_job(retry_count=2, max_retries=3), TransientJobError("x"), NOW)
    assert decision.retry
    assert decision.next_retry_at is None

    decision = policy.decide(_job(retry_count=3, max_retries=3), TransientJobError("x"), NOW)
    assert not decision.retry


def test_retry_policy_treats_plain_exceptions_as_transient():
    assert RetryPolicy().decide(_job(), ConnectionError("reset"), NOW).retry


def test_retry_policy_permanent_errors():
    job = _job(retry_count=0)
    assert not RetryPolicy().decide(job, PermanentJobError("gone"), NOW).retry
    assert RetryPolicy(classify_failures=False).decide(job, PermanentJobError("gone"), NOW).retry


def test_retry_policy_backoff():
    policy = RetryPolicy(backoff_base=2)
    decision = policy.decide(_job(retry_count=2), TransientJobError("x"), NOW)
    assert decision.next_retry_at == NOW + timedelta(seconds=8)
