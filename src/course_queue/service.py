"""Caller-facing use cases on top of the job queue."""

from __future__ import annotations

from dataclasses import dataclass

from course_queue.errors import JobNotFound
from course_queue.queue.manager import DEFAULT_MAX_ATTEMPTS, QueueManager
from course_queue.queue.models import DEFAULT_TOTAL_STEPS, JobDetails, JobView, LogEntryView

DEFAULT_LOG_PAGE_SIZE = 200


@dataclass(slots=True)
class CreateCourseJob:
    """High-level command to request a course for one subject."""

    subject_ref: str
    requested_profile: str
    owner_ref: str
    dedupe_key: str | None = None
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    total_steps: int = DEFAULT_TOTAL_STEPS


class JobService:
    """Owner-scoped job operations for the dashboard and the CLI."""

    def __init__(self, *, queue: QueueManager) -> None:
        self.queue = queue
        self.store = queue.store

    def create_job(
        self,
        subject_ref: str,
        requested_profile: str,
        *,
        owner_ref: str,
        dedupe_key: str | None = None,
    ) -> str:
        """Enqueue a job and return its id; raises DuplicateActiveJob on a live duplicate."""

        return self.submit(
            CreateCourseJob(
                subject_ref=subject_ref,
                requested_profile=requested_profile,
                owner_ref=owner_ref,
                dedupe_key=dedupe_key,
            ),
        ).job_id

    def submit(self, command: CreateCourseJob) -> JobView:
        subject_ref = command.subject_ref.strip()
        if not command.owner_ref.strip():
            raise ValueError("owner_ref must not be empty")
        dedupe_key = command.dedupe_key or default_dedupe_key(command.owner_ref, subject_ref)
        return self.queue.enqueue(
            subject_ref,
            dedupe_key,
            owner_ref=command.owner_ref,
            profile=command.requested_profile,
            max_attempts=command.max_attempts,
            total_steps=command.total_steps,
        )

    def read_job(self, job_id: str, *, owner_ref: str | None = None) -> JobDetails:
        job = self._owned_job(job_id, owner_ref)
        return JobDetails(job=job, documents=self.store.list_documents(job_id))

    def stream_logs(
        self,
        job_id: str,
        after_sequence: int = 0,
        limit: int = DEFAULT_LOG_PAGE_SIZE,
        *,
        owner_ref: str | None = None,
    ) -> list[LogEntryView]:
        """Log entries with ``sequence > after_sequence``; callers page by the last sequence seen."""

        self._owned_job(job_id, owner_ref)
        return self.store.list_logs(job_id, after_sequence=after_sequence, limit=limit)

    def request_cancel(self, job_id: str, requester_ref: str) -> JobView:
        """Cancel a job owned by ``requester_ref``.

        Jobs owned by someone else are reported as missing so ids do not leak
        across owners.
        """

        self._owned_job(job_id, requester_ref)
        return self.queue.cancel(job_id, requester_ref)

    def list_jobs(self, *, owner_ref: str | None = None, limit: int = 50) -> list[JobView]:
        return self.store.list_jobs(owner_ref=owner_ref, limit=limit)

    def _owned_job(self, job_id: str, owner_ref: str | None) -> JobView:
        job = self.store.get_job(job_id)
        if job is None or (owner_ref is not None and job.owner_ref != owner_ref):
            raise JobNotFound(job_id)
        return job


def default_dedupe_key(owner_ref: str, subject_ref: str) -> str:
    return f"{owner_ref}:{subject_ref.strip().rstrip('/')}"
