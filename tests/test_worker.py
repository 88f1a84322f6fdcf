from __future__ import annotations

import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import allure
import pytest
from sqlalchemy.exc import OperationalError

from course_queue.collector import OUTPUT_DIR_NAME
from course_queue.config import ExecutionEnvironment, ExecutionSettings
from course_queue.queue.manager import QueueManager
from course_queue.queue.models import FailureClass, JobStatus, JobView
from course_queue.metrics import read_stats_file
from course_queue.worker import AnalysisWorker, JobOutcome, LeaseKeeper, WorkerRunSummary
from course_queue.workspace import WorkspaceManager

pytestmark = [
    allure.epic("Analysis Worker"),
    allure.feature("Job Processing"),
]

WORKER_ID = "worker-test"


@pytest.fixture()
def make_worker(
    queue: QueueManager,
    demo_settings: Callable[..., ExecutionSettings],
    analyzer_env: dict[str, str],
    tmp_path: Path,
) -> Callable[..., AnalysisWorker]:
    def _build(
        *extra_args: str,
        timeout_seconds: float | None = None,
        settings: ExecutionSettings | None = None,
        **kwargs: object,
    ) -> AnalysisWorker:
        options: dict[str, object] = {
            "poll_interval_seconds": 0.05,
            "heartbeat_interval_seconds": 0.1,
            "base_env": analyzer_env,
        }
        options.update(kwargs)
        return AnalysisWorker(
            queue=queue,
            strategy_environment=ExecutionEnvironment.LOCAL,
            execution_settings=settings or demo_settings(*extra_args, timeout_seconds=timeout_seconds),
            workspace_manager=WorkspaceManager(tmp_path / "workspaces"),
            worker_id=WORKER_ID,
            **options,
        )

    return _build


def _wait_for(predicate: Callable[[], bool], timeout: float = 20.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.05)
    raise AssertionError("condition not reached in time")


def _job(queue: QueueManager, job_id: str) -> JobView:
    job = queue.get_job(job_id)
    assert job is not None
    return job


def test_run_once_completes_job_with_documents(
    queue: QueueManager,
    make_worker: Callable[..., AnalysisWorker],
    subject_dir: Path,
    tmp_path: Path,
) -> None:
    job = queue.enqueue(str(subject_dir), owner_ref="alice", profile="course")

    summary = make_worker().run_once()

    assert summary.processed == 1
    assert summary.succeeded == 1
    finished = _job(queue, job.job_id)
    assert finished.status == JobStatus.COMPLETED
    assert finished.current_step == finished.total_steps == 6
    assert finished.lease_owner is None
    assert finished.result is not None
    assert finished.result["document_count"] == 3
    assert finished.result["documents_by_kind"] == {"chapter": 3}
    assert finished.result["strategy"] == "local"
    assert finished.result["exit_code"] == 0
    assert set(finished.result["configs"]) == {"abstractions", "relationships", "chapter_order"}

    documents = queue.store.list_documents(job.job_id)
    assert [document.title for document in documents] == [
        "Chapter 1: Concept 1",
        "Chapter 2: Concept 2",
        "Chapter 3: Concept 3",
    ]
    logs = [entry.text for entry in queue.store.list_logs(job.job_id)]
    assert "[1/6] Extracting abstractions" in logs
    assert "[6/6] Creating tutorials" in logs
    assert not (tmp_path / "workspaces" / job.job_id).exists()
    assert not (subject_dir / OUTPUT_DIR_NAME).exists()


def test_nonzero_exit_is_retried_with_sanitized_summary(
    queue: QueueManager,
    make_worker: Callable[..., AnalysisWorker],
    subject_dir: Path,
) -> None:
    job = queue.enqueue(str(subject_dir))

    summary = make_worker(
        "--exit-code",
        "3",
        "--error-message",
        "analysis crashed for dev@example.com",
    ).run_once()

    assert summary.retried == 1
    retried = _job(queue, job.job_id)
    assert retried.status == JobStatus.PENDING
    assert retried.attempts == 1
    assert retried.failure_class == FailureClass.NONZERO_EXIT
    assert retried.error_message is not None
    assert retried.error_message.startswith("Analyzer exited with code 3")
    assert "dev@example.com" not in retried.error_message
    assert retried.run_at > retried.updated_at


def test_auth_failure_is_retried_with_auth_class(
    queue: QueueManager,
    make_worker: Callable[..., AnalysisWorker],
    subject_dir: Path,
) -> None:
    job = queue.enqueue(str(subject_dir))

    summary = make_worker(
        "--exit-code",
        "1",
        "--error-message",
        "OSError: [Errno 13] Permission denied: '/tmp/analyzer-cache'",
    ).run_once()

    assert summary.retried == 1
    assert summary.dead == 0
    retried = _job(queue, job.job_id)
    assert retried.status == JobStatus.PENDING
    assert retried.failure_class == FailureClass.AUTH
    assert retried.attempts == 1


def test_invalid_strategy_fails_job_as_validation(
    queue: QueueManager,
    make_worker: Callable[..., AnalysisWorker],
    subject_dir: Path,
) -> None:
    job = queue.enqueue(str(subject_dir))
    worker = make_worker(
        settings=ExecutionSettings(analyzer_command=("course-analyzer-that-does-not-exist",)),
        base_env={"PATH": "/nonexistent"},
    )

    summary = worker.run_once()

    assert summary.dead == 1
    dead = _job(queue, job.job_id)
    assert dead.status == JobStatus.DEAD
    assert dead.failure_class == FailureClass.VALIDATION
    assert dead.error_message is not None
    assert "local strategy validation failed" in dead.error_message


def test_missing_subject_fails_job_as_workspace_error(
    queue: QueueManager,
    make_worker: Callable[..., AnalysisWorker],
    tmp_path: Path,
) -> None:
    job = queue.enqueue(str(tmp_path / "missing-subject"))

    summary = make_worker().run_once()

    assert summary.dead == 1
    dead = _job(queue, job.job_id)
    assert dead.failure_class == FailureClass.WORKSPACE
    assert dead.error_message is not None
    assert "not a directory" in dead.error_message


def test_timeout_is_counted_and_retried(
    queue: QueueManager,
    make_worker: Callable[..., AnalysisWorker],
    subject_dir: Path,
) -> None:
    job = queue.enqueue(str(subject_dir))

    summary = make_worker("--hang-at-step", "3", timeout_seconds=1.5).run_once()

    assert summary.retried == 1
    assert summary.timeouts == 1
    retried = _job(queue, job.job_id)
    assert retried.status == JobStatus.PENDING
    assert retried.failure_class == FailureClass.TIMEOUT
    assert retried.error_message == "Analyzer timed out after 1.5s"
    assert retried.current_step >= 2


def test_cancel_during_run_kills_analyzer_and_keeps_canceled(
    queue: QueueManager,
    make_worker: Callable[..., AnalysisWorker],
    subject_dir: Path,
) -> None:
    job = queue.enqueue(str(subject_dir), owner_ref="alice")
    worker = make_worker("--hang-at-step", "2")
    results: list[WorkerRunSummary] = []
    thread = threading.Thread(target=lambda: results.append(worker.run_once()))
    thread.start()

    _wait_for(lambda: _job(queue, job.job_id).current_step >= 1)
    queue.cancel(job.job_id, "alice")
    thread.join(timeout=30)

    assert not thread.is_alive()
    assert results[0].abandoned == 1
    canceled = _job(queue, job.job_id)
    assert canceled.status == JobStatus.CANCELED
    assert canceled.result is None
    assert queue.store.list_documents(job.job_id) == []


def test_run_once_processes_jobs_concurrently(
    queue: QueueManager,
    make_worker: Callable[..., AnalysisWorker],
    subject_dir: Path,
) -> None:
    first = queue.enqueue(str(subject_dir), "first")
    second = queue.enqueue(str(subject_dir), "second")

    summary = make_worker(max_concurrent_jobs=2).run_once()

    assert summary.processed == 2
    assert summary.succeeded == 2
    assert _job(queue, first.job_id).status == JobStatus.COMPLETED
    assert _job(queue, second.job_id).status == JobStatus.COMPLETED


def test_run_once_on_empty_queue_is_idle(make_worker: Callable[..., AnalysisWorker]) -> None:
    summary = make_worker().run_once()

    assert summary.processed == 0
    assert summary.idle_polls == 1


def test_run_loop_stops_after_idle_polls(make_worker: Callable[..., AnalysisWorker]) -> None:
    summary = make_worker().run_loop(max_idle_polls=2)

    assert summary.processed == 0
    assert summary.idle_polls == 2


def test_run_loop_honors_max_jobs(
    queue: QueueManager,
    make_worker: Callable[..., AnalysisWorker],
    subject_dir: Path,
) -> None:
    jobs = [queue.enqueue(str(subject_dir), f"key-{number}") for number in range(3)]

    summary = make_worker(max_concurrent_jobs=2).run_loop(max_jobs=2)

    assert summary.processed == 2
    assert summary.succeeded == 2
    statuses = [_job(queue, job.job_id).status for job in jobs]
    assert statuses.count(JobStatus.COMPLETED) == 2
    assert statuses.count(JobStatus.PENDING) == 1


def test_stop_after_grace_period_requeues_interrupted_job(
    queue: QueueManager,
    make_worker: Callable[..., AnalysisWorker],
    subject_dir: Path,
) -> None:
    job = queue.enqueue(str(subject_dir))
    worker = make_worker("--hang-at-step", "2", graceful_shutdown_seconds=0.5)
    results: list[WorkerRunSummary] = []
    thread = threading.Thread(target=lambda: results.append(worker.run_loop()))
    thread.start()

    _wait_for(lambda: _job(queue, job.job_id).status == JobStatus.RUNNING)
    worker.request_stop()
    thread.join(timeout=30)

    assert not thread.is_alive()
    assert results[0].retried == 1
    interrupted = _job(queue, job.job_id)
    assert interrupted.status == JobStatus.PENDING
    assert interrupted.failure_class == FailureClass.INTERNAL
    assert interrupted.error_message == "Analyzer interrupted by worker shutdown"


def test_stopped_worker_claims_nothing(
    queue: QueueManager,
    make_worker: Callable[..., AnalysisWorker],
    subject_dir: Path,
) -> None:
    job = queue.enqueue(str(subject_dir))
    worker = make_worker()
    worker.request_stop()

    summary = worker.run_once()

    assert worker.stop_requested is True
    assert summary.processed == 0
    assert _job(queue, job.job_id).status == JobStatus.PENDING


def test_worker_rejects_zero_concurrency(make_worker: Callable[..., AnalysisWorker]) -> None:
    with pytest.raises(ValueError, match="max_concurrent_jobs"):
        make_worker(max_concurrent_jobs=0)


def test_lease_keeper_flags_loss_after_cancel(queue: QueueManager) -> None:
    job = queue.enqueue("/srv/subjects/demo")
    claimed = queue.claim_next(WORKER_ID)
    assert claimed is not None
    keeper = LeaseKeeper(
        queue=queue,
        job_id=job.job_id,
        worker_id=WORKER_ID,
        interval_seconds=0.05,
        lease_seconds=60,
    )

    keeper.start()
    queue.cancel(job.job_id, "operator")

    assert keeper.lost.wait(timeout=5) is True
    keeper.stop()


def test_lease_keeper_extends_lease_until_stopped(queue: QueueManager, clock: Any) -> None:
    job = queue.enqueue("/srv/subjects/demo")
    claimed = queue.claim_next(WORKER_ID)
    assert claimed is not None and claimed.lease_until is not None
    keeper = LeaseKeeper(
        queue=queue,
        job_id=job.job_id,
        worker_id=WORKER_ID,
        interval_seconds=0.05,
        lease_seconds=60,
    )

    keeper.start()
    clock.advance(30)
    _wait_for(lambda: _job(queue, job.job_id).lease_until != claimed.lease_until, timeout=5)
    keeper.stop()

    assert keeper.lost.is_set() is False
    renewed = _job(queue, job.job_id)
    assert renewed.lease_owner == WORKER_ID
    assert renewed.lease_until is not None
    assert renewed.lease_until > claimed.lease_until


def test_summary_record_counts_outcomes() -> None:
    summary = WorkerRunSummary()

    summary.record(JobOutcome.SUCCEEDED)
    summary.record(JobOutcome.RETRIED, timed_out=True)
    summary.record(JobOutcome.DEAD)
    summary.record(JobOutcome.ABANDONED)

    assert (summary.processed, summary.succeeded, summary.retried) == (4, 1, 1)
    assert (summary.dead, summary.abandoned, summary.timeouts) == (1, 1, 1)


def test_committed_output_in_subject_is_not_collected(
    queue: QueueManager,
    make_worker: Callable[..., AnalysisWorker],
    subject_dir: Path,
) -> None:
    leftover = subject_dir / OUTPUT_DIR_NAME / "chapters" / "01_old.md"
    leftover.parent.mkdir(parents=True)
    leftover.write_text("# Old chapter\n\nFrom a previous run.\n", "utf-8")
    job = queue.enqueue(str(subject_dir))

    summary = make_worker("--no-output").run_once()

    assert summary.succeeded == 1
    finished = _job(queue, job.job_id)
    assert finished.status == JobStatus.COMPLETED
    assert finished.result is not None
    assert finished.result["document_count"] == 0
    assert "collection_incomplete" in finished.result["warnings"]
    assert queue.store.list_documents(job.job_id) == []
    assert leftover.exists()


def test_run_loop_survives_transient_store_errors(
    queue: QueueManager,
    make_worker: Callable[..., AnalysisWorker],
    subject_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    job = queue.enqueue(str(subject_dir))
    real_claim_next = queue.claim_next
    failures_left = [2]

    def flaky_claim_next(worker_id: str, lease_seconds: float | None = None) -> JobView | None:
        if failures_left[0] > 0:
            failures_left[0] -= 1
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))
        return real_claim_next(worker_id, lease_seconds)

    monkeypatch.setattr(queue, "claim_next", flaky_claim_next)

    summary = make_worker(store_error_backoff_max_seconds=0.2).run_loop(max_jobs=1)

    assert summary.store_errors == 2
    assert summary.succeeded == 1
    assert failures_left == [0]
    assert _job(queue, job.job_id).status == JobStatus.COMPLETED


def test_unexpected_job_error_is_abandoned_without_killing_loop(
    queue: QueueManager,
    make_worker: Callable[..., AnalysisWorker],
    subject_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    job = queue.enqueue(str(subject_dir))
    worker = make_worker()

    def broken_materialize(**_: object) -> None:
        raise RuntimeError("disk driver exploded")

    monkeypatch.setattr(worker.workspaces, "materialize", broken_materialize)

    summary = worker.run_loop(max_jobs=1)

    assert summary.abandoned == 1
    assert summary.processed == 1
    stuck = _job(queue, job.job_id)
    assert stuck.status == JobStatus.RUNNING
    assert stuck.lease_owner == WORKER_ID
    assert worker.health().abandoned == 1
    assert worker.health().active_jobs == 0


def test_health_tracks_active_and_finished_jobs(
    queue: QueueManager,
    make_worker: Callable[..., AnalysisWorker],
    subject_dir: Path,
) -> None:
    queue.enqueue(str(subject_dir))
    worker = make_worker("--step-delay", "0.2")
    assert worker.health().healthy is False

    results: list[WorkerRunSummary] = []
    thread = threading.Thread(target=lambda: results.append(worker.run_loop(max_jobs=1)))
    thread.start()
    _wait_for(lambda: worker.health().active_jobs == 1 and worker.health().healthy)
    live = worker.health()
    thread.join(timeout=30)

    assert live.running is True
    assert live.healthy is True
    assert live.status == "healthy"
    assert live.last_poll_at is not None
    assert len(live.active_job_ids) == 1
    assert not thread.is_alive()
    assert results[0].succeeded == 1

    final = worker.health()
    assert final.running is False
    assert final.active_jobs == 0
    assert (final.processed, final.succeeded, final.failed) == (1, 1, 0)
    assert final.success_rate == 1.0
    assert final.average_job_seconds > 0
    assert final.last_job_at is not None
    assert "worker loop is not running" in final.problems


def test_run_loop_publishes_stats_file(
    make_worker: Callable[..., AnalysisWorker],
    tmp_path: Path,
) -> None:
    stats_path = tmp_path / "stats" / "worker.json"
    worker = make_worker(stats_path=stats_path)

    worker.run_loop(max_idle_polls=1)

    snapshot = read_stats_file(stats_path)
    assert snapshot.worker_id == WORKER_ID
    assert snapshot.running is False
    assert snapshot.processed == 0
    assert snapshot.last_poll_at is not None
    assert snapshot.status == "degraded"
    assert snapshot.problems == ["worker loop is not running"]
