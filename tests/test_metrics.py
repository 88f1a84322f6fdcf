from __future__ import annotations

from pathlib import Path
from typing import Any

import allure
import pytest

from course_queue.metrics import (
    JobOutcome,
    WorkerStats,
    health_problems,
    read_stats_file,
    render_health_lines,
    write_stats_file,
)

pytestmark = [
    allure.epic("Analysis Worker"),
    allure.feature("Worker Health"),
]


def test_counters_follow_job_lifecycle(clock: Any) -> None:
    stats = WorkerStats(worker_id="w-1", clock=clock)
    stats.set_running(True)
    stats.poll_succeeded()

    stats.job_started("a")
    stats.job_started("b")
    busy = stats.snapshot()
    stats.job_finished("a", JobOutcome.SUCCEEDED, duration_seconds=2.0)
    stats.job_finished("b", JobOutcome.RETRIED, duration_seconds=4.0)
    stats.job_started("c")
    stats.job_finished("c", JobOutcome.ABANDONED, duration_seconds=0.0)
    idle = stats.snapshot()

    assert busy.active_jobs == 2
    assert busy.active_job_ids == ["a", "b"]
    assert busy.healthy is True
    assert idle.active_jobs == 0
    assert (idle.processed, idle.succeeded, idle.failed, idle.abandoned) == (3, 1, 1, 1)
    assert idle.average_job_seconds == pytest.approx(2.0)
    assert idle.success_rate == pytest.approx(1 / 3)
    assert idle.last_job_at == clock.now()


def test_fresh_stats_are_degraded_until_running_and_polled(clock: Any) -> None:
    stats = WorkerStats(worker_id="w-1", clock=clock)

    snapshot = stats.snapshot()

    assert snapshot.status == "degraded"
    assert snapshot.problems == ["worker loop is not running", "no successful queue poll yet"]
    assert snapshot.average_job_seconds == 0.0
    assert snapshot.success_rate == 0.0


def test_stale_poll_marks_worker_degraded(clock: Any) -> None:
    stats = WorkerStats(worker_id="w-1", clock=clock, stale_after_seconds=30)
    stats.set_running(True)
    stats.poll_succeeded()
    clock.advance(31)

    snapshot = stats.snapshot()

    assert snapshot.healthy is False
    assert snapshot.problems == ["last successful queue poll older than 30s"]


def test_old_snapshot_is_reported_when_rechecked(clock: Any) -> None:
    stats = WorkerStats(worker_id="w-1", clock=clock)
    stats.set_running(True)
    stats.poll_succeeded()
    snapshot = stats.snapshot()
    clock.advance(120)

    problems = health_problems(snapshot, now=clock.now(), max_age_seconds=60)

    assert problems == [
        "last successful queue poll older than 60s",
        "stats snapshot older than 60s",
    ]


def test_stats_file_keeps_every_field(clock: Any, tmp_path: Path) -> None:
    stats = WorkerStats(worker_id="w-1", clock=clock)
    stats.set_running(True)
    stats.poll_succeeded()
    stats.job_started("job-1")
    snapshot = stats.snapshot()
    path = tmp_path / "nested" / "stats.json"

    write_stats_file(path, snapshot)
    loaded = read_stats_file(path)

    assert loaded == snapshot
    assert loaded.started_at.tzinfo is not None
    assert list(path.parent.iterdir()) == [path]


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("{not json", "not valid JSON"),
        ("[1, 2]", "must hold a JSON object"),
        ('{"worker_id": "w-1"}', "malformed"),
    ],
)
def test_read_stats_file_rejects_bad_content(tmp_path: Path, content: str, message: str) -> None:
    path = tmp_path / "stats.json"
    path.write_text(content, "utf-8")

    with pytest.raises(ValueError, match=message):
        read_stats_file(path)


def test_render_health_lines_lists_problems(clock: Any) -> None:
    snapshot = WorkerStats(worker_id="w-1", clock=clock).snapshot()

    lines = render_health_lines(snapshot)

    assert lines[0] == "Worker: w-1"
    assert "Status: degraded" in lines
    assert "Running: no" in lines
    assert "Last poll: -" in lines
    assert lines[-2:] == [
        "Problem: worker loop is not running",
        "Problem: no successful queue poll yet",
    ]
