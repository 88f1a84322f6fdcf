"""Queue worker that runs the Analyzer for claimed jobs."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from course_queue.clock import new_worker_id
from course_queue.collector import CollectionResult, collect_outputs
from course_queue.config import ExecutionEnvironment, ExecutionSettings, Settings
from course_queue.errors import (
    ExecutionTimeoutError,
    LeaseLost,
    TransientExecutionError,
    ValidationError,
)
from course_queue.execution import ExecutionResult, ExecutionStrategy, create_strategy
from course_queue.failures import classify_execution_failure, summarize_failure
from course_queue.metrics import (
    DEFAULT_STALE_AFTER_SECONDS,
    JobOutcome,
    WorkerStats,
    WorkerStatsSnapshot,
    write_stats_file,
)
from course_queue.progress import DEFAULT_STAGE_TABLE, ProgressTracker, StageTable, load_stage_table
from course_queue.queue.backoff import BackoffPolicy
from course_queue.queue.manager import QueueManager
from course_queue.queue.models import FailOutcome, FailureClass, JobStatus, JobView
from course_queue.queue.store import JobStore
from course_queue.workspace import Workspace, WorkspaceManager

logger = logging.getLogger(__name__)

_STORE_ERRORS = (SQLAlchemyError, OSError)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    dead: int = 0
    abandoned: int = 0
    timeouts: int = 0
    reclaimed: int = 0
    idle_polls: int = 0
    store_errors: int = 0

    def record(self, outcome: JobOutcome, *, timed_out: bool = False) -> None:
        self.processed += 1
        if outcome is JobOutcome.SUCCEEDED:
            self.succeeded += 1
        elif outcome is JobOutcome.RETRIED:
            self.retried += 1
        elif outcome is JobOutcome.DEAD:
            self.dead += 1
        else:
            self.abandoned += 1
        if timed_out:
            self.timeouts += 1


@dataclass(slots=True)
class _JobResult:
    outcome: JobOutcome
    timed_out: bool = False


class LeaseKeeper:
    """Background heartbeat for one job; flags ``lost`` when ownership goes away."""

    def __init__(
        self,
        *,
        queue: QueueManager,
        job_id: str,
        worker_id: str,
        interval_seconds: float,
        lease_seconds: float | None,
    ) -> None:
        self.queue = queue
        self.job_id = job_id
        self.worker_id = worker_id
        self.interval_seconds = interval_seconds
        self.lease_seconds = lease_seconds
        self.lost = threading.Event()
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"lease-keeper-{job_id[:8]}",
            daemon=True,
        )

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=max(self.interval_seconds, 1.0) + 5.0)

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.queue.heartbeat(self.job_id, self.worker_id, self.lease_seconds)
            except LeaseLost:
                logger.warning("Lease lost for job %s; aborting Analyzer", self.job_id)
                self.lost.set()
                return
            except _STORE_ERRORS as error:
                # Keep trying; the lease simply runs out if the store stays down.
                logger.warning("Heartbeat for job %s failed: %s", self.job_id, error)


class AnalysisWorker:
    """Polls the queue, runs the Analyzer per job and records the outcome."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: QueueManager,
        strategy_environment: ExecutionEnvironment,
        execution_settings: ExecutionSettings,
        workspace_manager: WorkspaceManager,
        worker_id: str | None = None,
        poll_interval_seconds: float = 5.0,
        heartbeat_interval_seconds: float = 60.0,
        lease_seconds: float | None = None,
        max_concurrent_jobs: int = 1,
        graceful_shutdown_seconds: float = 30.0,
        store_error_backoff_max_seconds: float = 60.0,
        stage_table: StageTable = DEFAULT_STAGE_TABLE,
        base_env: Mapping[str, str] | None = None,
        stats_path: Path | None = None,
        health_stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
    ) -> None:
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be >= 1")
        self.queue = queue
        self.strategy_environment = strategy_environment
        self.strategy: ExecutionStrategy = create_strategy(
            strategy_environment,
            execution_settings,
            base_env=base_env,
        )
        self.workspaces = workspace_manager
        self.worker_id = worker_id or new_worker_id()
        self.poll_interval_seconds = poll_interval_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.lease_seconds = lease_seconds
        self.max_concurrent_jobs = max_concurrent_jobs
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.store_error_backoff_max_seconds = store_error_backoff_max_seconds
        self.stage_table = stage_table
        self.stats_path = stats_path
        self.stats = WorkerStats(
            worker_id=self.worker_id,
            clock=queue.clock,
            stale_after_seconds=health_stale_after_seconds,
        )
        self._stop_requested = threading.Event()
        self._shutdown_abort = threading.Event()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        worker_id: str | None = None,
        base_env: Mapping[str, str] | None = None,
    ) -> AnalysisWorker:
        """Wire store, queue and strategy from application settings."""

        queue = build_queue(settings)
        stage_table = (
            load_stage_table(settings.progress.keywords_path)
            if settings.progress.keywords_path is not None
            else DEFAULT_STAGE_TABLE
        )
        return cls(
            queue=queue,
            strategy_environment=settings.execution_environment,
            execution_settings=settings.execution,
            workspace_manager=WorkspaceManager(settings.worker.workspace_root),
            worker_id=worker_id or new_worker_id(settings.worker.worker_id_prefix),
            poll_interval_seconds=settings.worker.poll_interval_seconds,
            heartbeat_interval_seconds=settings.worker.heartbeat_interval_seconds,
            lease_seconds=settings.queue.lease_seconds,
            max_concurrent_jobs=settings.worker.max_concurrent_jobs,
            graceful_shutdown_seconds=settings.worker.graceful_shutdown_seconds,
            store_error_backoff_max_seconds=settings.worker.store_error_backoff_max_seconds,
            stage_table=stage_table,
            base_env=base_env,
            stats_path=settings.worker.stats_path,
            health_stale_after_seconds=settings.worker.health_stale_after_seconds,
        )

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    def request_stop(self) -> None:
        """Stop claiming new jobs; in-flight jobs keep running."""

        self._stop_requested.set()

    def run_once(self) -> WorkerRunSummary:
        """Reclaim expired leases, claim up to ``max_concurrent_jobs`` jobs and run them."""

        summary = WorkerRunSummary()
        if self.stop_requested:
            summary.idle_polls = 1
            return summary

        summary.reclaimed = self.queue.reclaim_expired().total
        jobs: list[JobView] = []
        while len(jobs) < self.max_concurrent_jobs and not self.stop_requested:
            job = self.queue.claim_next(self.worker_id, self.lease_seconds)
            if job is None:
                break
            jobs.append(job)
        self.stats.poll_succeeded()

        if not jobs:
            summary.idle_polls = 1
        elif len(jobs) == 1:
            result = self._process_job(jobs[0])
            summary.record(result.outcome, timed_out=result.timed_out)
        else:
            with ThreadPoolExecutor(max_workers=len(jobs), thread_name_prefix="job") as executor:
                for result in executor.map(self._process_job, jobs):
                    summary.record(result.outcome, timed_out=result.timed_out)
        self._publish_stats()
        return summary

    def health(self) -> WorkerStatsSnapshot:
        """Live counters: active jobs, throughput, average duration and liveness."""

        return self.stats.snapshot()

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Poll until stopped, ``max_jobs`` started jobs finish or the queue stays idle.

        Args:
            max_jobs: Stop claiming after this many jobs (None = unlimited).
            max_idle_polls: Exit after this many consecutive empty polls with
                nothing in flight (None = run until a stop signal).
        """

        aggregate = WorkerRunSummary()
        in_flight: set[Future[_JobResult]] = set()
        started = 0
        consecutive_idle = 0
        store_failures = 0
        self.stats.set_running(True)
        try:
            with (
                self._signal_handlers(),
                ThreadPoolExecutor(
                    max_workers=self.max_concurrent_jobs,
                    thread_name_prefix="job",
                ) as executor,
            ):
                while True:
                    in_flight = self._harvest(in_flight, aggregate)
                    self._publish_stats()
                    if self.stop_requested:
                        break
                    claims_exhausted = max_jobs is not None and started >= max_jobs
                    if claims_exhausted and not in_flight:
                        break

                    claimed_now = 0
                    try:
                        if not claims_exhausted:
                            aggregate.reclaimed += self.queue.reclaim_expired().total
                        while (
                            len(in_flight) < self.max_concurrent_jobs
                            and (max_jobs is None or started < max_jobs)
                            and not self.stop_requested
                        ):
                            job = self.queue.claim_next(self.worker_id, self.lease_seconds)
                            if job is None:
                                break
                            in_flight.add(executor.submit(self._process_job, job))
                            started += 1
                            claimed_now += 1
                        store_failures = 0
                        self.stats.poll_succeeded()
                    except _STORE_ERRORS as error:
                        store_failures += 1
                        aggregate.store_errors += 1
                        delay = self._store_error_delay(store_failures)
                        logger.warning("Job store unavailable (%s); retrying in %.1fs", error, delay)
                        self._sleep_with_stop(delay)
                        continue

                    if claimed_now == 0 and not in_flight:
                        consecutive_idle += 1
                        aggregate.idle_polls += 1
                        if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                            break
                        self._sleep_with_stop(self.poll_interval_seconds)
                        continue

                    consecutive_idle = 0
                    if in_flight:
                        wait(in_flight, timeout=self.poll_interval_seconds, return_when=FIRST_COMPLETED)

                self._drain_in_flight(in_flight, aggregate)
        finally:
            self.stats.set_running(False)
            self._publish_stats()
        return aggregate

    def _harvest(
        self,
        in_flight: set[Future[_JobResult]],
        aggregate: WorkerRunSummary,
    ) -> set[Future[_JobResult]]:
        pending: set[Future[_JobResult]] = set()
        for future in in_flight:
            if not future.done():
                pending.add(future)
                continue
            try:
                result = future.result()
            except Exception:  # noqa: BLE001
                logger.exception("Job thread failed unexpectedly")
                result = _JobResult(JobOutcome.ABANDONED)
            aggregate.record(result.outcome, timed_out=result.timed_out)
        return pending

    def _drain_in_flight(
        self,
        in_flight: set[Future[_JobResult]],
        aggregate: WorkerRunSummary,
    ) -> None:
        if not in_flight:
            return
        logger.info(
            "Waiting up to %.0fs for %s in-flight job(s)",
            self.graceful_shutdown_seconds,
            len(in_flight),
        )
        _, not_done = wait(in_flight, timeout=self.graceful_shutdown_seconds)
        if not_done:
            logger.warning("Graceful shutdown window elapsed; terminating %s job(s)", len(not_done))
            self._shutdown_abort.set()
            wait(not_done)
        self._harvest(in_flight, aggregate)

    def _process_job(self, job: JobView) -> _JobResult:
        keeper = LeaseKeeper(
            queue=self.queue,
            job_id=job.job_id,
            worker_id=self.worker_id,
            interval_seconds=self.heartbeat_interval_seconds,
            lease_seconds=self.lease_seconds,
        )
        keeper.start()
        self.stats.job_started(job.job_id)
        started = time.monotonic()
        result = _JobResult(JobOutcome.ABANDONED)
        try:
            result = self._run_claimed_job(job, keeper)
        except _STORE_ERRORS:
            logger.exception("Job store error while processing %s; leaving it to lease expiry", job.job_id)
        except Exception:  # noqa: BLE001
            logger.exception("Unexpected error while processing %s; leaving it to lease expiry", job.job_id)
        finally:
            keeper.stop()
            self.stats.job_finished(
                job.job_id,
                result.outcome,
                duration_seconds=time.monotonic() - started,
            )
        return result

    def _run_claimed_job(self, job: JobView, keeper: LeaseKeeper) -> _JobResult:
        validation = self.strategy.validate()
        for warning in validation.warnings:
            logger.warning("%s strategy: %s", self.strategy.name, warning)
        if not validation.valid:
            message = f"{self.strategy.name} strategy validation failed: {'; '.join(validation.errors)}"
            return self._fail(job, message, retryable=False, failure_class=FailureClass.VALIDATION)

        if not self.queue.mark_running(job.job_id, self.worker_id):
            logger.warning("Job %s changed hands before it started", job.job_id)
            return _JobResult(JobOutcome.ABANDONED)

        try:
            workspace = self.workspaces.materialize(job_id=job.job_id, subject_ref=job.subject_ref)
        except ValidationError as error:
            return self._fail(job, error, retryable=False, failure_class=FailureClass.WORKSPACE)
        except (TransientExecutionError, OSError) as error:
            return self._fail(job, error, retryable=True, failure_class=FailureClass.WORKSPACE)

        try:
            return self._run_in_workspace(job, workspace, keeper)
        finally:
            self.workspaces.cleanup(workspace)

    def _run_in_workspace(self, job: JobView, workspace: Workspace, keeper: LeaseKeeper) -> _JobResult:
        tracker = ProgressTracker(self.stage_table)

        def _on_line(line: str) -> None:
            update = tracker.feed(line)
            if update is None or keeper.lost.is_set():
                return
            self.queue.report_progress(
                job.job_id,
                self.worker_id,
                update.step,
                update.total_steps,
                update.message,
            )

        def _abort_requested() -> bool:
            return keeper.lost.is_set() or self._shutdown_abort.is_set()

        try:
            execution = self.strategy.execute(workspace, _on_line, _abort_requested)
        except ValidationError as error:
            return self._fail(job, error, retryable=False, failure_class=FailureClass.SPAWN_FAILED)
        except TransientExecutionError as error:
            return self._fail(job, error, retryable=True, failure_class=FailureClass.SPAWN_FAILED)

        if keeper.lost.is_set():
            logger.info("Abandoning job %s after lease loss", job.job_id)
            return _JobResult(JobOutcome.ABANDONED)
        if execution.aborted:
            return self._fail(
                job,
                "Analyzer interrupted by worker shutdown",
                retryable=True,
                failure_class=FailureClass.INTERNAL,
            )

        try:
            execution.raise_for_status(timeout_seconds=self._timeout_seconds(workspace))
        except TransientExecutionError as error:
            return self._fail_execution(job, execution, error)

        collection = collect_outputs(workspace.source_dir)
        keeper.stop()
        if keeper.lost.is_set():
            return _JobResult(JobOutcome.ABANDONED)
        completed = self.queue.complete(
            job.job_id,
            self.worker_id,
            _result_payload(collection, execution, strategy_name=self.strategy.name),
            collection.documents,
        )
        if not completed:
            logger.warning("Job %s could not be completed; lease no longer held", job.job_id)
            return _JobResult(JobOutcome.ABANDONED)
        return _JobResult(JobOutcome.SUCCEEDED)

    def _fail_execution(
        self,
        job: JobView,
        execution: ExecutionResult,
        error: TransientExecutionError,
    ) -> _JobResult:
        classification = classify_execution_failure(
            exit_code=execution.exit_code,
            stdout=execution.stdout,
            stderr=execution.stderr,
            timed_out=execution.timed_out,
        )
        if isinstance(error, ExecutionTimeoutError):
            message = str(error)
        else:
            message = summarize_failure(
                exit_code=execution.exit_code,
                stdout=execution.stdout,
                stderr=execution.stderr,
            )
        result = self._fail(
            job,
            message,
            retryable=classification.retryable,
            failure_class=classification.failure_class,
        )
        result.timed_out = execution.timed_out
        return result

    def _fail(
        self,
        job: JobView,
        error: BaseException | str,
        *,
        retryable: bool,
        failure_class: FailureClass,
    ) -> _JobResult:
        outcome = self.queue.fail(
            job.job_id,
            self.worker_id,
            error,
            retryable=retryable,
            failure_class=failure_class,
        )
        return _JobResult(_outcome_from_fail(outcome))

    def _publish_stats(self) -> None:
        if self.stats_path is None:
            return
        try:
            write_stats_file(self.stats_path, self.stats.snapshot())
        except OSError as error:
            logger.warning("Could not write worker stats to %s: %s", self.stats_path, error)

    def _timeout_seconds(self, workspace: Workspace) -> float | None:
        return self.strategy.get_command_config(workspace).timeout_seconds

    def _store_error_delay(self, failures: int) -> float:
        base = max(self.poll_interval_seconds, 0.1)
        return min(self.store_error_backoff_max_seconds, base * (2 ** min(failures, 16)))

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self.stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s; finishing in-flight jobs, no new claims", name)
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def _outcome_from_fail(outcome: FailOutcome) -> JobOutcome:
    if not outcome.applied:
        return JobOutcome.ABANDONED
    if outcome.status is JobStatus.PENDING:
        return JobOutcome.RETRIED
    return JobOutcome.DEAD


def _result_payload(
    collection: CollectionResult,
    execution: ExecutionResult,
    *,
    strategy_name: str,
) -> dict[str, Any]:
    return {
        "document_count": collection.document_count,
        "documents_by_kind": collection.documents_by_kind(),
        "configs": collection.configs_payload(),
        "warnings": list(collection.warnings),
        "exit_code": execution.exit_code,
        "duration_ms": execution.duration_ms,
        "strategy": strategy_name,
    }


def build_queue(settings: Settings) -> QueueManager:
    """Open the job store for ``settings.db_path`` (migrating it) and wrap it in a queue."""

    store = JobStore(settings.db_path, sqlite_busy_timeout_ms=settings.queue.sqlite_busy_timeout_ms)
    store.init_schema()
    return QueueManager(
        store,
        backoff=BackoffPolicy(
            base_seconds=settings.queue.backoff_base_seconds,
            factor=settings.queue.backoff_factor,
            max_seconds=settings.queue.backoff_max_seconds,
            jitter=settings.queue.backoff_jitter,
        ),
        lease_seconds=settings.queue.lease_seconds,
    )
