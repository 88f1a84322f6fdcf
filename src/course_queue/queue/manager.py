"""Lease-based queue operations on top of the job store."""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any

from course_queue.errors import InvalidTransition, JobNotFound, LeaseLost
from course_queue.queue.backoff import BackoffPolicy
from course_queue.queue.models import (
    DEFAULT_TOTAL_STEPS,
    FailOutcome,
    FailureClass,
    JobCreate,
    JobStatus,
    JobView,
    OutputDocumentWrite,
    ReclaimSummary,
)
from course_queue.queue.store import JobStore
from course_queue.sanitization import sanitize_summary

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 300.0
DEFAULT_MAX_ATTEMPTS = 5
_CLAIM_SCAN_LIMIT = 10
_LEASE_CLEARED: dict[str, Any] = {"lease_owner": None, "lease_until": None}


class QueueManager:
    """Job lifecycle transitions with lease ownership checks.

    All writes are compare-and-swap updates through :class:`JobStore`, so any
    number of worker processes may share one database file.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        backoff: BackoffPolicy | None = None,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
    ) -> None:
        self.store = store
        self.clock = store.clock
        self.backoff = backoff or BackoffPolicy()
        self.lease_seconds = lease_seconds

    def enqueue(  # noqa: PLR0913
        self,
        subject_ref: str,
        dedupe_key: str | None = None,
        *,
        owner_ref: str = "anonymous",
        profile: str = "default",
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        total_steps: int = DEFAULT_TOTAL_STEPS,
    ) -> JobView:
        """Insert a pending job; raises DuplicateActiveJob on an active dedupe key."""

        if not subject_ref.strip():
            raise ValueError("subject_ref must not be empty")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if total_steps < 1:
            raise ValueError("total_steps must be >= 1")
        job = self.store.insert_job(
            JobCreate(
                subject_ref=subject_ref,
                owner_ref=owner_ref,
                profile=profile,
                dedupe_key=dedupe_key,
                max_attempts=max_attempts,
                total_steps=total_steps,
            ),
        )
        logger.info("Enqueued job %s for %s", job.job_id, subject_ref)
        return job

    def claim_next(self, worker_id: str, lease_seconds: float | None = None) -> JobView | None:
        """Atomically claim the oldest eligible job, or return None."""

        lease = timedelta(seconds=lease_seconds if lease_seconds is not None else self.lease_seconds)
        while True:
            now = self.clock.now()
            candidates = self.store.list_claim_candidates(now=now, limit=_CLAIM_SCAN_LIMIT)
            if not candidates:
                return None
            for candidate in candidates:
                attempt = candidate.attempts + 1
                note = ""
                if candidate.status is not JobStatus.PENDING:
                    note = f" (lease of {candidate.lease_owner} expired)"
                won = self.store.conditional_update(
                    candidate.job_id,
                    expected={
                        "status": candidate.status,
                        "attempts": candidate.attempts,
                        "lease_owner": candidate.lease_owner,
                        "lease_until": candidate.lease_until,
                    },
                    values={
                        "status": JobStatus.CLAIMED,
                        "attempts": attempt,
                        "lease_owner": worker_id,
                        "lease_until": now + lease,
                    },
                    log_text=f"claimed by {worker_id}, attempt {attempt}/{candidate.max_attempts}{note}",
                )
                if won:
                    claimed = self.store.get_job(candidate.job_id)
                    if claimed is not None:
                        logger.info(
                            "Worker %s claimed job %s (attempt %s)",
                            worker_id,
                            claimed.job_id,
                            claimed.attempts,
                        )
                        return claimed
                logger.debug("Lost claim race for job %s", candidate.job_id)

    def mark_running(self, job_id: str, worker_id: str) -> bool:
        """Move an owned job from claimed to running."""

        return self.store.conditional_update(
            job_id,
            expected={"status": JobStatus.CLAIMED, "lease_owner": worker_id},
            values={"status": JobStatus.RUNNING},
            log_text=f"running on {worker_id}",
        )

    def heartbeat(self, job_id: str, worker_id: str, lease_seconds: float | None = None) -> None:
        """Extend the lease; raises LeaseLost when the caller no longer owns the job."""

        seconds = lease_seconds if lease_seconds is not None else self.lease_seconds
        renewed = self.store.conditional_update(
            job_id,
            expected={"lease_owner": worker_id},
            values={"lease_until": self.clock.now() + timedelta(seconds=seconds)},
        )
        if not renewed:
            raise LeaseLost(job_id, worker_id)

    def report_progress(
        self,
        job_id: str,
        worker_id: str,
        step: int | None,
        total_steps: int,
        message: str,
    ) -> bool:
        """Record progress and append it to the job log; False on owner mismatch."""

        total = max(total_steps, 1)
        values: dict[str, Any] = {"total_steps": total, "progress_message": message}
        if step is not None:
            values["current_step"] = min(max(step, 0), total)
            log_text = f"[{values['current_step']}/{total}] {message}"
        else:
            log_text = message
        return self.store.conditional_update(
            job_id,
            expected={"lease_owner": worker_id},
            values=values,
            log_text=log_text,
        )

    def complete(
        self,
        job_id: str,
        worker_id: str,
        result: dict[str, Any],
        documents: list[OutputDocumentWrite] | None = None,
    ) -> bool:
        """Finish an owned running job and persist its documents atomically."""

        job = self.store.get_job(job_id)
        if job is None or job.lease_owner != worker_id:
            return False
        docs = documents or []
        completed = self.store.conditional_update(
            job_id,
            expected={"status": JobStatus.RUNNING, "lease_owner": worker_id},
            values={
                "status": JobStatus.COMPLETED,
                "current_step": job.total_steps,
                "completed_at": self.clock.now(),
                "result_json": json.dumps(result, ensure_ascii=False, sort_keys=True),
                "error_message": None,
                "failure_class": None,
                **_LEASE_CLEARED,
            },
            log_text=f"completed with {len(docs)} document(s)",
            documents=docs,
        )
        if completed:
            logger.info("Job %s completed with %s document(s)", job_id, len(docs))
        return completed

    def fail(  # noqa: PLR0913
        self,
        job_id: str,
        worker_id: str,
        error: BaseException | str,
        *,
        retryable: bool = True,
        failure_class: FailureClass | None = None,
    ) -> FailOutcome:
        """Schedule a retry with backoff, or mark the job dead."""

        job = self.store.get_job(job_id)
        if job is None or job.lease_owner != worker_id:
            return FailOutcome(applied=False, status=job.status if job is not None else None)

        summary = sanitize_summary(str(error)) or type(error).__name__
        now = self.clock.now()
        expected = {"lease_owner": worker_id, "attempts": job.attempts}
        error_values: dict[str, Any] = {
            "error_message": summary,
            "failure_class": failure_class,
            **_LEASE_CLEARED,
        }

        if retryable and job.attempts < job.max_attempts:
            delay = self.backoff.delay_seconds(job.attempts)
            run_at = now + timedelta(seconds=delay)
            applied = self.store.conditional_update(
                job_id,
                expected=expected,
                values={"status": JobStatus.PENDING, "run_at": run_at, **error_values},
                log_text=(
                    f"attempt {job.attempts}/{job.max_attempts} failed, "
                    f"retrying in {delay:.1f}s: {summary}"
                ),
            )
            if applied:
                logger.warning("Job %s failed, retry in %.1fs: %s", job_id, delay, summary)
                return FailOutcome(
                    applied=True,
                    status=JobStatus.PENDING,
                    run_at=run_at,
                    delay_seconds=delay,
                )
            return FailOutcome(applied=False, status=None)

        applied = self.store.conditional_update(
            job_id,
            expected=expected,
            values={"status": JobStatus.DEAD, "completed_at": now, **error_values},
            log_text=f"dead after {job.attempts}/{job.max_attempts} attempt(s): {summary}",
        )
        if applied:
            logger.warning("Job %s is dead: %s", job_id, summary)
            return FailOutcome(applied=True, status=JobStatus.DEAD)
        return FailOutcome(applied=False, status=None)

    def cancel(self, job_id: str, requester_ref: str) -> JobView:
        """Cancel a non-terminal job; the owning worker notices at its next heartbeat."""

        while True:
            job = self.store.get_job(job_id)
            if job is None:
                raise JobNotFound(job_id)
            if job.is_terminal:
                raise InvalidTransition(
                    f"Job {job_id} is already {job.status.value} and cannot be canceled",
                )
            canceled = self.store.conditional_update(
                job_id,
                expected={
                    "status": job.status,
                    "attempts": job.attempts,
                    "lease_owner": job.lease_owner,
                },
                values={
                    "status": JobStatus.CANCELED,
                    "completed_at": self.clock.now(),
                    **_LEASE_CLEARED,
                },
                log_text=f"canceled by {requester_ref} (was {job.status.value})",
            )
            if canceled:
                logger.info("Job %s canceled by %s", job_id, requester_ref)
                refreshed = self.store.get_job(job_id)
                if refreshed is None:
                    raise JobNotFound(job_id)
                return refreshed

    def reclaim_expired(self) -> ReclaimSummary:
        """Return lease-expired jobs to pending, or mark them dead when out of attempts."""

        summary = ReclaimSummary()
        now = self.clock.now()
        for job in self.store.list_expired_leases(now=now):
            expected = {
                "status": job.status,
                "attempts": job.attempts,
                "lease_owner": job.lease_owner,
                "lease_until": job.lease_until,
            }
            if job.attempts < job.max_attempts:
                if self.store.conditional_update(
                    job.job_id,
                    expected=expected,
                    values={"status": JobStatus.PENDING, "run_at": now, **_LEASE_CLEARED},
                    log_text=f"lease of {job.lease_owner} expired, requeued",
                ):
                    summary.requeued.append(job.job_id)
                continue
            if self.store.conditional_update(
                job.job_id,
                expected=expected,
                values={
                    "status": JobStatus.DEAD,
                    "completed_at": now,
                    "error_message": "lease expired",
                    "failure_class": FailureClass.LEASE_EXPIRED,
                    **_LEASE_CLEARED,
                },
                log_text=f"lease of {job.lease_owner} expired after final attempt, dead",
            ):
                summary.dead.append(job.job_id)
        if summary.total:
            logger.info(
                "Reclaimed expired leases: %s requeued, %s dead",
                len(summary.requeued),
                len(summary.dead),
            )
        return summary

    def get_job(self, job_id: str) -> JobView | None:
        return self.store.get_job(job_id)

    def queue_stats(self) -> dict[JobStatus, int]:
        return self.store.count_by_status()
