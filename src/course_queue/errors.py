"""Error taxonomy for the queue and the worker."""

from __future__ import annotations


class CourseQueueError(RuntimeError):
    """Base class for all queue/worker errors."""


class ValidationError(CourseQueueError):
    """Execution precondition failed; the job is never retried."""

    def __init__(self, message: str, *, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class TransientExecutionError(CourseQueueError):
    """Crash, non-zero exit or I/O failure; retried with backoff."""


class ExecutionTimeoutError(TransientExecutionError):
    """The Analyzer exceeded the strategy timeout."""


class LeaseLost(CourseQueueError):
    """The calling worker no longer owns the job lease."""

    def __init__(self, job_id: str, worker_id: str) -> None:
        super().__init__(f"Lease lost for job {job_id} (worker {worker_id})")
        self.job_id = job_id
        self.worker_id = worker_id


class DuplicateActiveJob(CourseQueueError):
    """A non-terminal job already exists for the dedupe key."""

    def __init__(self, dedupe_key: str, existing_job_id: str | None) -> None:
        super().__init__(
            f"Active job already exists for dedupe_key={dedupe_key!r}"
            + (f" (job_id={existing_job_id})" if existing_job_id else ""),
        )
        self.dedupe_key = dedupe_key
        self.existing_job_id = existing_job_id


class JobNotFound(CourseQueueError):
    """No job with the requested id exists."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidTransition(CourseQueueError):
    """Requested state change is not allowed from the current status."""
