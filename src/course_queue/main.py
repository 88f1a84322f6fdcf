"""CLI entrypoint for course-queue."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from course_queue import __version__
from course_queue.controllers import (
    CourseQueueCliController,
    JobCancelCommand,
    JobCreateCommand,
    JobInspectCommand,
    JobListCommand,
    JobLogsCommand,
    QueueCommand,
    WorkerHealthCommand,
    WorkerRunCommand,
)
from course_queue.errors import CourseQueueError
from course_queue.queue.models import JobStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = CourseQueueCliController()

T = TypeVar("T")


@click.group()
@click.version_option(version=__version__, prog_name="course-queue")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    show_default=True,
    help="Log level for queue and worker diagnostics (stderr).",
)
def course_queue(log_level: str) -> None:
    """Course generation job queue CLI."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@course_queue.group()
def jobs() -> None:
    """Submit and inspect course jobs."""


@jobs.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--subject", "subject_ref", required=True, help="Local directory or git URL to analyze.")
@click.option("--profile", default="default", show_default=True, help="Requested course profile.")
@click.option("--owner", "owner_ref", default="cli", show_default=True, help="Owner reference.")
@click.option(
    "--dedupe-key",
    default=None,
    help="Idempotency key; defaults to <owner>:<subject>.",
)
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1, max=20),
    default=None,
    help="Max execution attempts including the first run. Defaults to COURSE_QUEUE_MAX_ATTEMPTS.",
)
def jobs_create(  # noqa: PLR0913
    db_path: Path | None,
    subject_ref: str,
    profile: str,
    owner_ref: str,
    dedupe_key: str | None,
    max_attempts: int | None,
) -> None:
    """Enqueue a course job for one subject."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.create_job(
                JobCreateCommand(
                    db_path=db_path,
                    subject_ref=subject_ref,
                    profile=profile,
                    owner_ref=owner_ref,
                    dedupe_key=dedupe_key,
                    max_attempts=max_attempts,
                ),
            ),
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--owner", "owner_ref", default=None, help="Optional owner filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(
    db_path: Path | None,
    status: str | None,
    owner_ref: str | None,
    limit: int,
) -> None:
    """List recent jobs."""

    _emit_lines(
        CONTROLLER.list_jobs(
            JobListCommand(
                db_path=db_path,
                status=status,
                owner_ref=owner_ref,
                limit=limit,
            ),
        ),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option(
    "--show-content/--no-show-content",
    default=False,
    show_default=True,
    help="Print stored document bodies.",
)
def jobs_inspect(db_path: Path | None, job_id: str, show_content: bool) -> None:
    """Inspect one job with its output documents."""

    _emit_lines(
        CONTROLLER.inspect_job(
            JobInspectCommand(
                db_path=db_path,
                job_id=job_id,
                show_content=show_content,
            ),
        ),
    )


@jobs.command("logs")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option(
    "--after",
    "after_sequence",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Only entries with a higher sequence number.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=5000),
    default=200,
    show_default=True,
    help="Max entries to print.",
)
def jobs_logs(db_path: Path | None, job_id: str, after_sequence: int, limit: int) -> None:
    """Print the job's progress and audit log."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.job_logs(
                JobLogsCommand(
                    db_path=db_path,
                    job_id=job_id,
                    after_sequence=after_sequence,
                    limit=limit,
                ),
            ),
        ),
    )


@jobs.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option(
    "--owner",
    "owner_ref",
    default=None,
    help="Cancel on behalf of this owner; without it the operator cancels any job.",
)
def jobs_cancel(db_path: Path | None, job_id: str, owner_ref: str | None) -> None:
    """Cancel a pending or running job."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.cancel_job(
                JobCancelCommand(
                    db_path=db_path,
                    job_id=job_id,
                    owner_ref=owner_ref,
                ),
            ),
        ),
    )


@course_queue.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run one claim-execute cycle or poll until stopped.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for claimed jobs in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit loop mode after this many consecutive empty polls.",
)
@click.option(
    "--environment",
    type=click.Choice(["isolated", "local", "production", "development"], case_sensitive=False),
    default=None,
    help="Execution environment. Defaults to COURSE_QUEUE_EXECUTION_ENV.",
)
@click.option(
    "--stats-file",
    "stats_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Publish worker health stats as JSON here. Defaults to COURSE_QUEUE_WORKER_STATS_PATH.",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int | None,
    environment: str | None,
    stats_path: Path | None,
) -> None:
    """Run the analysis worker."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.run_worker(
                WorkerRunCommand(
                    db_path=db_path,
                    once=once,
                    max_jobs=max_jobs,
                    max_idle_polls=max_idle_polls,
                    environment=environment,
                    stats_path=stats_path,
                ),
            ),
        ),
    )


@worker.command("health")
@click.option(
    "--stats-file",
    "stats_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Stats file written by `worker run`. Defaults to COURSE_QUEUE_WORKER_STATS_PATH.",
)
@click.option(
    "--max-age",
    "max_age_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Report degraded when the last poll or snapshot is older than this many seconds.",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
@click.pass_context
def worker_health(
    ctx: click.Context,
    stats_path: Path | None,
    max_age_seconds: float | None,
    output_format: str,
) -> None:
    """Show worker health; exits with 1 when degraded."""

    lines, healthy = _run(
        lambda: CONTROLLER.worker_health(
            WorkerHealthCommand(
                stats_path=stats_path,
                max_age_seconds=max_age_seconds,
                output_format=output_format.lower(),
            ),
        ),
    )
    _emit_lines(lines)
    if not healthy:
        ctx.exit(1)


@course_queue.group()
def queue() -> None:
    """Operator queue maintenance."""


@queue.command("reclaim")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def queue_reclaim(db_path: Path | None) -> None:
    """Requeue or kill jobs whose lease expired."""

    _emit_lines(CONTROLLER.reclaim(QueueCommand(db_path=db_path)))


@queue.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def queue_stats(db_path: Path | None, output_format: str) -> None:
    """Show job counts per status."""

    _emit_lines(CONTROLLER.stats(QueueCommand(db_path=db_path, output_format=output_format.lower())))


def _run(action: Callable[[], T]) -> T:
    try:
        return action()
    except (CourseQueueError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    course_queue()
