"""Runtime configuration for the job queue and the analysis worker."""

from __future__ import annotations

import os
import shlex
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class ExecutionEnvironment(str, Enum):
    """Where the Analyzer runs; chosen explicitly when a worker is built."""

    ISOLATED = "isolated"
    LOCAL = "local"

    @classmethod
    def parse(cls, value: str) -> ExecutionEnvironment:
        normalized = value.strip().lower()
        aliases = {
            "production": cls.ISOLATED,
            "prod": cls.ISOLATED,
            "development": cls.LOCAL,
            "dev": cls.LOCAL,
        }
        if normalized in aliases:
            return aliases[normalized]
        try:
            return cls(normalized)
        except ValueError as error:
            allowed = ", ".join(item.value for item in cls)
            raise ValueError(f"Unknown execution environment {value!r}; expected {allowed}") from error


@dataclass(slots=True)
class QueueSettings:
    """Lease, retry and storage settings."""

    lease_seconds: float = 300.0
    max_attempts: int = 5
    backoff_base_seconds: float = 5.0
    backoff_factor: float = 2.0
    backoff_max_seconds: float = 600.0
    backoff_jitter: float = 0.2
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class WorkerSettings:
    """Poll loop and per-job supervision settings."""

    poll_interval_seconds: float = 5.0
    heartbeat_interval_seconds: float = 60.0
    max_concurrent_jobs: int = 1
    graceful_shutdown_seconds: float = 30.0
    store_error_backoff_max_seconds: float = 60.0
    workspace_root: Path = field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "course-queue-workspaces",
    )
    worker_id_prefix: str = "worker"
    stats_path: Path | None = None
    health_stale_after_seconds: float = 3_600.0


@dataclass(slots=True)
class ExecutionSettings:
    """How the Analyzer is launched."""

    environment: str = ExecutionEnvironment.LOCAL.value
    analyzer_command: tuple[str, ...] = ("course-analyzer",)
    allowed_roots: tuple[Path, ...] = ()
    credential_env_var: str = "COURSE_QUEUE_ANALYZER_TOKEN"
    isolated_home: Path = Path("/home/worker")
    isolated_timeout_seconds: float | None = 3_600.0
    local_timeout_seconds: float | None = None


@dataclass(slots=True)
class ProgressSettings:
    """Progress parsing settings."""

    keywords_path: Path | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".course_queue.db")
    queue: QueueSettings = field(default_factory=QueueSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    progress: ProgressSettings = field(default_factory=ProgressSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        worker_defaults = WorkerSettings()
        keywords_path = os.getenv("COURSE_QUEUE_PROGRESS_KEYWORDS_PATH", "").strip()
        workspace_root = os.getenv("COURSE_QUEUE_WORKSPACE_ROOT", "").strip()
        stats_path = os.getenv("COURSE_QUEUE_WORKER_STATS_PATH", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("COURSE_QUEUE_DB_PATH", ".course_queue.db")),
            queue=QueueSettings(
                lease_seconds=float(os.getenv("COURSE_QUEUE_LEASE_SECONDS", "300")),
                max_attempts=int(os.getenv("COURSE_QUEUE_MAX_ATTEMPTS", "5")),
                backoff_base_seconds=float(os.getenv("COURSE_QUEUE_BACKOFF_BASE_SECONDS", "5")),
                backoff_factor=float(os.getenv("COURSE_QUEUE_BACKOFF_FACTOR", "2")),
                backoff_max_seconds=float(os.getenv("COURSE_QUEUE_BACKOFF_MAX_SECONDS", "600")),
                backoff_jitter=float(os.getenv("COURSE_QUEUE_BACKOFF_JITTER", "0.2")),
                sqlite_busy_timeout_ms=int(
                    os.getenv("COURSE_QUEUE_SQLITE_BUSY_TIMEOUT_MS", "5000"),
                ),
            ),
            worker=WorkerSettings(
                poll_interval_seconds=float(os.getenv("COURSE_QUEUE_POLL_INTERVAL_SECONDS", "5")),
                heartbeat_interval_seconds=float(
                    os.getenv("COURSE_QUEUE_HEARTBEAT_INTERVAL_SECONDS", "60"),
                ),
                max_concurrent_jobs=int(os.getenv("COURSE_QUEUE_MAX_CONCURRENT_JOBS", "1")),
                graceful_shutdown_seconds=float(
                    os.getenv("COURSE_QUEUE_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
                store_error_backoff_max_seconds=float(
                    os.getenv("COURSE_QUEUE_STORE_ERROR_BACKOFF_MAX_SECONDS", "60"),
                ),
                workspace_root=Path(workspace_root) if workspace_root else worker_defaults.workspace_root,
                worker_id_prefix=os.getenv("COURSE_QUEUE_WORKER_ID_PREFIX", "worker"),
                stats_path=Path(stats_path) if stats_path else None,
                health_stale_after_seconds=float(
                    os.getenv("COURSE_QUEUE_HEALTH_STALE_AFTER_SECONDS", "3600"),
                ),
            ),
            execution=ExecutionSettings(
                environment=os.getenv("COURSE_QUEUE_EXECUTION_ENV", ExecutionEnvironment.LOCAL.value),
                analyzer_command=tuple(
                    shlex.split(os.getenv("COURSE_QUEUE_ANALYZER_COMMAND", "course-analyzer")),
                ),
                allowed_roots=_env_paths("COURSE_QUEUE_ANALYZER_ALLOWED_ROOTS"),
                credential_env_var=os.getenv(
                    "COURSE_QUEUE_CREDENTIAL_ENV_VAR",
                    "COURSE_QUEUE_ANALYZER_TOKEN",
                ),
                isolated_home=Path(os.getenv("COURSE_QUEUE_ISOLATED_HOME", "/home/worker")),
                isolated_timeout_seconds=_env_optional_seconds(
                    "COURSE_QUEUE_ISOLATED_TIMEOUT_SECONDS",
                    default=3_600.0,
                ),
                local_timeout_seconds=_env_optional_seconds(
                    "COURSE_QUEUE_LOCAL_TIMEOUT_SECONDS",
                    default=None,
                ),
            ),
            progress=ProgressSettings(
                keywords_path=Path(keywords_path) if keywords_path else None,
            ),
        )

    @property
    def execution_environment(self) -> ExecutionEnvironment:
        return ExecutionEnvironment.parse(self.execution.environment)

    def validate(self) -> None:
        """Raise configuration error for inconsistent values."""

        if self.queue.lease_seconds <= 0:
            raise ValueError("COURSE_QUEUE_LEASE_SECONDS must be > 0.")
        if self.queue.max_attempts < 1:
            raise ValueError("COURSE_QUEUE_MAX_ATTEMPTS must be >= 1.")
        if self.queue.backoff_base_seconds <= 0:
            raise ValueError("COURSE_QUEUE_BACKOFF_BASE_SECONDS must be > 0.")
        if self.queue.backoff_max_seconds < self.queue.backoff_base_seconds:
            raise ValueError(
                "COURSE_QUEUE_BACKOFF_MAX_SECONDS must be >= COURSE_QUEUE_BACKOFF_BASE_SECONDS.",
            )
        if not 0 <= self.queue.backoff_jitter < 1:
            raise ValueError("COURSE_QUEUE_BACKOFF_JITTER must be in [0, 1).")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("COURSE_QUEUE_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.heartbeat_interval_seconds <= 0:
            raise ValueError("COURSE_QUEUE_HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if self.worker.heartbeat_interval_seconds >= self.queue.lease_seconds:
            raise ValueError(
                "COURSE_QUEUE_HEARTBEAT_INTERVAL_SECONDS must be shorter than "
                "COURSE_QUEUE_LEASE_SECONDS.",
            )
        if self.worker.max_concurrent_jobs < 1:
            raise ValueError("COURSE_QUEUE_MAX_CONCURRENT_JOBS must be >= 1.")
        if self.worker.health_stale_after_seconds <= 0:
            raise ValueError("COURSE_QUEUE_HEALTH_STALE_AFTER_SECONDS must be > 0.")
        if not self.execution.analyzer_command:
            raise ValueError("COURSE_QUEUE_ANALYZER_COMMAND must not be empty.")
        ExecutionEnvironment.parse(self.execution.environment)
        if self.progress.keywords_path is not None and not self.progress.keywords_path.is_file():
            raise ValueError(
                f"COURSE_QUEUE_PROGRESS_KEYWORDS_PATH does not exist: {self.progress.keywords_path}",
            )


def _env_paths(name: str) -> tuple[Path, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return ()
    return tuple(Path(part.strip()) for part in raw.split(os.pathsep) if part.strip())


def _env_optional_seconds(name: str, *, default: float | None) -> float | None:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"", "0", "none", "off"}:
        return None
    seconds = float(normalized)
    if seconds < 0:
        raise ValueError(f"{name} must be >= 0, got {value!r}")
    return seconds
