"""Controllers for course-queue CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from course_queue.clock import utc_now
from course_queue.config import ExecutionEnvironment, Settings
from course_queue.metrics import health_problems, read_stats_file, render_health_lines
from course_queue.queue.manager import QueueManager
from course_queue.queue.models import JobStatus
from course_queue.service import CreateCourseJob, JobService
from course_queue.worker import AnalysisWorker, build_queue

OPERATOR_REF = "operator"


@dataclass(slots=True)
class JobCreateCommand:
    """CLI input for job submission."""

    db_path: Path | None
    subject_ref: str
    profile: str
    owner_ref: str
    dedupe_key: str | None
    max_attempts: int | None


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    owner_ref: str | None
    limit: int


@dataclass(slots=True)
class JobInspectCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str
    show_content: bool = False


@dataclass(slots=True)
class JobLogsCommand:
    """CLI input for job log paging."""

    db_path: Path | None
    job_id: str
    after_sequence: int
    limit: int


@dataclass(slots=True)
class JobCancelCommand:
    """CLI input for cancellation; ``owner_ref`` enforces ownership when given."""

    db_path: Path | None
    job_id: str
    owner_ref: str | None


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int | None
    environment: str | None = None
    stats_path: Path | None = None


@dataclass(slots=True)
class WorkerHealthCommand:
    """CLI input for reading a running worker's published stats."""

    stats_path: Path | None
    max_age_seconds: float | None = None
    output_format: str = "table"


@dataclass(slots=True)
class QueueCommand:
    """CLI input for operator queue maintenance."""

    db_path: Path | None
    output_format: str = "table"


class CourseQueueCliController:
    """Coordinates job submission, worker runs and queue inspection."""

    def create_job(self, command: JobCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            job = JobService(queue=queue).submit(
                CreateCourseJob(
                    subject_ref=command.subject_ref,
                    requested_profile=command.profile,
                    owner_ref=command.owner_ref,
                    dedupe_key=command.dedupe_key,
                    max_attempts=command.max_attempts or settings.queue.max_attempts,
                ),
            )
        return [
            f"Job enqueued: job_id={job.job_id} status={job.status.value} "
            f"subject={job.subject_ref} profile={job.profile}",
        ]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _queue(settings) as queue:
            jobs = queue.store.list_jobs(
                status=status_filter,
                owner_ref=command.owner_ref,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} status={job.status.value} owner={job.owner_ref} "
                f"attempt={job.attempts}/{job.max_attempts} "
                f"step={job.current_step}/{job.total_steps} "
                f"run_at={job.run_at.isoformat()} subject={job.subject_ref}",
            )
        return lines

    def inspect_job(self, command: JobInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            job = queue.get_job(command.job_id)
            if job is None:
                return [f"Job not found: {command.job_id}"]
            details = JobService(queue=queue).read_job(command.job_id)

        lines = [
            f"Job: {job.job_id}",
            f"Owner: {job.owner_ref}",
            f"Subject: {job.subject_ref}",
            f"Profile: {job.profile}",
            f"Status: {job.status.value}",
            f"Attempt: {job.attempts}/{job.max_attempts}",
            f"Progress: {job.current_step}/{job.total_steps} {job.progress_message or ''}".rstrip(),
            f"Lease: {job.lease_owner or '-'} until "
            f"{job.lease_until.isoformat() if job.lease_until else '-'}",
            f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
            f"Error: {job.error_message or '-'}",
            f"Documents: {len(details.documents)}",
        ]
        for document in details.documents:
            lines.append(
                f"  {document.kind} #{document.index} {document.title} ({document.size_bytes} bytes)",
            )
            if command.show_content:
                lines.extend(f"    {line}" for line in document.content.splitlines())
        if job.result is not None:
            lines.append(f"Result: {json.dumps(job.result, ensure_ascii=False, sort_keys=True)}")
        return lines

    def job_logs(self, command: JobLogsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            entries = JobService(queue=queue).stream_logs(
                command.job_id,
                after_sequence=command.after_sequence,
                limit=command.limit,
            )
        return [
            f"{entry.sequence:>5} {entry.timestamp.isoformat()} {entry.text}" for entry in entries
        ]

    def cancel_job(self, command: JobCancelCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            if command.owner_ref is not None:
                job = JobService(queue=queue).request_cancel(command.job_id, command.owner_ref)
            else:
                job = queue.cancel(command.job_id, OPERATOR_REF)
        return [f"Job canceled: {job.job_id} status={job.status.value}"]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.environment is not None:
            settings.execution.environment = ExecutionEnvironment.parse(command.environment).value
        if command.stats_path is not None:
            settings.worker.stats_path = command.stats_path
        settings.validate()
        worker = AnalysisWorker.from_settings(settings)
        try:
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            )
        finally:
            worker.queue.store.close()

        return [
            f"Worker summary ({worker.worker_id}, {worker.strategy.name}): "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"retried={summary.retried} dead={summary.dead} "
            f"abandoned={summary.abandoned} timeouts={summary.timeouts} "
            f"reclaimed={summary.reclaimed} idle_polls={summary.idle_polls}",
        ]

    def worker_health(self, command: WorkerHealthCommand) -> tuple[list[str], bool]:
        """Render the stats file and recompute staleness; the flag is False when degraded."""

        settings = Settings.from_env()
        stats_path = command.stats_path or settings.worker.stats_path
        if stats_path is None:
            raise ValueError("No stats file given; pass --stats-file or set COURSE_QUEUE_WORKER_STATS_PATH.")
        if not stats_path.is_file():
            raise ValueError(f"Worker stats file not found: {stats_path}")
        snapshot = read_stats_file(stats_path)
        max_age = command.max_age_seconds or settings.worker.health_stale_after_seconds
        snapshot.problems = health_problems(snapshot, now=utc_now(), max_age_seconds=max_age)
        snapshot.healthy = not snapshot.problems
        if command.output_format == "json":
            return [json.dumps(snapshot.to_dict(), sort_keys=True)], snapshot.healthy
        return render_health_lines(snapshot), snapshot.healthy

    def reclaim(self, command: QueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            summary = queue.reclaim_expired()
        lines = [f"Reclaimed: requeued={len(summary.requeued)} dead={len(summary.dead)}"]
        lines.extend(f"  requeued {job_id}" for job_id in summary.requeued)
        lines.extend(f"  dead {job_id}" for job_id in summary.dead)
        return lines

    def stats(self, command: QueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            counts = queue.queue_stats()
        if command.output_format == "json":
            return [json.dumps({status.value: count for status, count in counts.items()}, sort_keys=True)]
        total = sum(counts.values())
        lines = [f"Jobs total: {total}"]
        for status in JobStatus:
            lines.append(f"  {status.value:<10} {counts.get(status, 0)}")
        return lines


@contextmanager
def _queue(settings: Settings) -> Iterator[QueueManager]:
    queue = build_queue(settings)
    try:
        yield queue
    finally:
        queue.store.close()


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())
