class ClipQueueError(Exception):
    """Base class for queue errors."""


class JobValidationError(ClipQueueError):
    """Submission rejected: unknown job type or malformed payload."""


class JobNotFoundError(ClipQueueError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class TransientJobError(ClipQueueError):
    """A failure worth retrying (network errors, unavailable services)."""


class JobTimeoutError(TransientJobError):
    pass


class PermanentJobError(ClipQueueError):
    """A failure that will not go away on retry (missing entity, corrupt input)."""


class HandlerNotFoundError(PermanentJobError):
    def __init__(self, job_type: str):
        super().__init__(f"Unknown job type: {job_type}")
        self.job_type = job_type


class JobInterruptedError(ClipQueueError):
    """The job left the processing state while its handler was running."""

    def __init__(self, job_id: str, status):
        super().__init__(f"Job {job_id} is no longer processing (status: {status})")
        self.job_id = job_id
        self.status = status


class JobCancelledError(JobInterruptedError):
    pass
