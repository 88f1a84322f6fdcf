"""Shared test fixtures."""

from __future__ import annotations

import os
import random
import sys
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from course_queue.config import ExecutionSettings
from course_queue.queue.backoff import BackoffPolicy
from course_queue.queue.manager import QueueManager
from course_queue.queue.store import JobStore

SRC_DIR = Path(__file__).resolve().parents[1] / "src"
DEMO_ANALYZER_ARGS = ("-m", "course_queue.execution.demo_analyzer")


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 10, 1, 12, 0, tzinfo=UTC)

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(tmp_path: Path, clock: FakeClock) -> Iterator[JobStore]:
    job_store = JobStore(tmp_path / "queue.db", clock=clock)
    job_store.init_schema()
    yield job_store
    job_store.close()


@pytest.fixture()
def queue(store: JobStore) -> QueueManager:
    return QueueManager(
        store,
        backoff=BackoffPolicy(rng=random.Random(7)),
        lease_seconds=60,
    )


@pytest.fixture()
def analyzer_env() -> dict[str, str]:
    """Process environment that lets a child interpreter import course_queue from src/."""

    env = dict(os.environ)
    existing = env.get("PYTHONPATH")
    env["PYTHONPATH"] = str(SRC_DIR) if not existing else f"{SRC_DIR}{os.pathsep}{existing}"
    return env


@pytest.fixture()
def demo_settings() -> Callable[..., ExecutionSettings]:
    """Factory for local execution settings that launch the demo analyzer."""

    def _build(*extra_args: str, timeout_seconds: float | None = None) -> ExecutionSettings:
        return ExecutionSettings(
            environment="local",
            analyzer_command=(sys.executable, *DEMO_ANALYZER_ARGS, *extra_args),
            local_timeout_seconds=timeout_seconds,
        )

    return _build


@pytest.fixture()
def subject_dir(tmp_path: Path) -> Path:
    """Small source tree to analyze."""

    subject = tmp_path / "subject"
    (subject / "pkg").mkdir(parents=True)
    (subject / "pkg" / "__init__.py").write_text("", "utf-8")
    (subject / "pkg" / "core.py").write_text("def run():\n    return 1\n", "utf-8")
    (subject / "README.md").write_text("# Demo subject\n", "utf-8")
    return subject
