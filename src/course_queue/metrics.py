"""Live worker counters and the health snapshot published for monitoring."""

from __future__ import annotations

import json
import os
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from course_queue.clock import Clock, SystemClock

DEFAULT_STALE_AFTER_SECONDS = 3_600.0


class JobOutcome(str, Enum):
    """How one claimed job ended from this worker's point of view."""

    SUCCEEDED = "succeeded"
    RETRIED = "retried"
    DEAD = "dead"
    ABANDONED = "abandoned"


@dataclass(slots=True)
class WorkerStatsSnapshot:
    """Point-in-time worker health and throughput."""

    worker_id: str
    running: bool
    healthy: bool
    active_jobs: int
    active_job_ids: list[str]
    processed: int
    succeeded: int
    failed: int
    abandoned: int
    average_job_seconds: float
    success_rate: float
    uptime_seconds: float
    started_at: datetime
    captured_at: datetime
    last_job_at: datetime | None = None
    last_poll_at: datetime | None = None
    problems: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        return "healthy" if self.healthy else "degraded"

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("started_at", "captured_at", "last_job_at", "last_poll_at"):
            value = payload[key]
            payload[key] = value.isoformat() if value is not None else None
        payload["status"] = self.status
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WorkerStatsSnapshot:
        values = {key: payload[key] for key in cls.__slots__ if key in payload}
        for key in ("started_at", "captured_at", "last_job_at", "last_poll_at"):
            raw = values.get(key)
            values[key] = datetime.fromisoformat(raw) if raw else None
        return cls(**values)


class WorkerStats:
    """Thread-safe counters updated by the poll loop and the job threads."""

    def __init__(
        self,
        *,
        worker_id: str,
        clock: Clock | None = None,
        stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
    ) -> None:
        self.worker_id = worker_id
        self.clock = clock or SystemClock()
        self.stale_after_seconds = stale_after_seconds
        self._lock = threading.Lock()
        self._started_monotonic = time.monotonic()
        self._started_at = self.clock.now()
        self._running = False
        self._active: set[str] = set()
        self._processed = 0
        self._succeeded = 0
        self._failed = 0
        self._abandoned = 0
        self._total_job_seconds = 0.0
        self._last_job_at: datetime | None = None
        self._last_poll_at: datetime | None = None

    def set_running(self, running: bool) -> None:
        with self._lock:
            self._running = running

    def poll_succeeded(self) -> None:
        with self._lock:
            self._last_poll_at = self.clock.now()

    def job_started(self, job_id: str) -> None:
        with self._lock:
            self._active.add(job_id)
            self._last_job_at = self.clock.now()

    def job_finished(self, job_id: str, outcome: JobOutcome, *, duration_seconds: float) -> None:
        with self._lock:
            self._active.discard(job_id)
            self._processed += 1
            self._total_job_seconds += max(duration_seconds, 0.0)
            if outcome is JobOutcome.SUCCEEDED:
                self._succeeded += 1
            elif outcome is JobOutcome.ABANDONED:
                self._abandoned += 1
            else:
                self._failed += 1

    def snapshot(self) -> WorkerStatsSnapshot:
        with self._lock:
            now = self.clock.now()
            processed = self._processed
            snapshot = WorkerStatsSnapshot(
                worker_id=self.worker_id,
                running=self._running,
                healthy=False,
                active_jobs=len(self._active),
                active_job_ids=sorted(self._active),
                processed=processed,
                succeeded=self._succeeded,
                failed=self._failed,
                abandoned=self._abandoned,
                average_job_seconds=self._total_job_seconds / processed if processed else 0.0,
                success_rate=self._succeeded / processed if processed else 0.0,
                uptime_seconds=time.monotonic() - self._started_monotonic,
                started_at=self._started_at,
                captured_at=now,
                last_job_at=self._last_job_at,
                last_poll_at=self._last_poll_at,
            )
        snapshot.problems = health_problems(
            snapshot,
            now=now,
            max_age_seconds=self.stale_after_seconds,
        )
        snapshot.healthy = not snapshot.problems
        return snapshot


def health_problems(
    snapshot: WorkerStatsSnapshot,
    *,
    now: datetime,
    max_age_seconds: float,
) -> list[str]:
    """Reasons the worker should be reported as degraded; empty when healthy."""

    problems: list[str] = []
    if not snapshot.running:
        problems.append("worker loop is not running")
    if snapshot.last_poll_at is None:
        problems.append("no successful queue poll yet")
    elif (now - snapshot.last_poll_at).total_seconds() > max_age_seconds:
        problems.append(f"last successful queue poll older than {max_age_seconds:.0f}s")
    if (now - snapshot.captured_at).total_seconds() > max_age_seconds:
        problems.append(f"stats snapshot older than {max_age_seconds:.0f}s")
    return problems


def write_stats_file(path: Path, snapshot: WorkerStatsSnapshot) -> None:
    """Atomically replace ``path`` with the JSON snapshot."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    tmp_path.write_text(json.dumps(snapshot.to_dict(), sort_keys=True), "utf-8")
    os.replace(tmp_path, path)


def read_stats_file(path: Path) -> WorkerStatsSnapshot:
    """Load a snapshot written by :func:`write_stats_file`; raises ValueError when malformed."""

    try:
        payload = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ValueError(f"Worker stats file is not valid JSON: {path}") from error
    if not isinstance(payload, dict):
        raise ValueError(f"Worker stats file must hold a JSON object: {path}")
    try:
        return WorkerStatsSnapshot.from_dict(payload)
    except (TypeError, ValueError) as error:
        raise ValueError(f"Worker stats file is malformed: {path}: {error}") from error


def render_health_lines(snapshot: WorkerStatsSnapshot) -> list[str]:
    """Human-readable health report for the CLI."""

    lines = [
        f"Worker: {snapshot.worker_id}",
        f"Status: {snapshot.status}",
        f"Running: {'yes' if snapshot.running else 'no'}",
        f"Uptime: {snapshot.uptime_seconds:.0f}s",
        f"Active jobs: {snapshot.active_jobs}",
        f"Processed: {snapshot.processed} succeeded={snapshot.succeeded} "
        f"failed={snapshot.failed} abandoned={snapshot.abandoned}",
        f"Success rate: {snapshot.success_rate:.1%}",
        f"Average job duration: {snapshot.average_job_seconds:.1f}s",
        f"Last job: {snapshot.last_job_at.isoformat() if snapshot.last_job_at else '-'}",
        f"Last poll: {snapshot.last_poll_at.isoformat() if snapshot.last_poll_at else '-'}",
        f"Captured: {snapshot.captured_at.isoformat()}",
    ]
    lines.extend(f"Problem: {problem}" for problem in snapshot.problems)
    return lines
