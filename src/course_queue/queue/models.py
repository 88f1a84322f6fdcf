"""Domain models for the job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    CLAIMED = "claimed"
    RUNNING = "running"
    COMPLETED = "completed"
    DEAD = "dead"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def holds_lease(self) -> bool:
        return self in LEASED_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.DEAD, JobStatus.CANCELED})
LEASED_STATUSES = frozenset({JobStatus.CLAIMED, JobStatus.RUNNING})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.CLAIMED, JobStatus.RUNNING})


class FailureClass(str, Enum):
    """Normalized failure reasons stored alongside the error summary."""

    VALIDATION = "validation"
    TIMEOUT = "timeout"
    AUTH = "auth"
    SPAWN_FAILED = "spawn_failed"
    NONZERO_EXIT = "nonzero_exit"
    WORKSPACE = "workspace"
    LEASE_EXPIRED = "lease_expired"
    INTERNAL = "internal"


DEFAULT_TOTAL_STEPS = 6


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a job."""

    subject_ref: str
    owner_ref: str = "anonymous"
    profile: str = "default"
    dedupe_key: str | None = None
    max_attempts: int = 5
    total_steps: int = DEFAULT_TOTAL_STEPS
    run_at: datetime | None = None
    job_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job snapshot."""

    job_id: str
    owner_ref: str
    subject_ref: str
    profile: str
    status: JobStatus
    attempts: int
    max_attempts: int
    run_at: datetime
    lease_owner: str | None
    lease_until: datetime | None
    dedupe_key: str | None
    current_step: int
    total_steps: int
    progress_message: str | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None
    result: dict[str, Any] | None
    error_message: str | None
    failure_class: FailureClass | None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass(slots=True)
class LogEntryView:
    """One append-only progress/audit line for a job."""

    job_id: str
    sequence: int
    timestamp: datetime
    text: str


@dataclass(slots=True)
class OutputDocumentWrite:
    """Collected document to persist on successful completion."""

    kind: str
    index: int
    title: str
    content: str
    slug: str

    @property
    def size_bytes(self) -> int:
        return len(self.content.encode("utf-8"))


@dataclass(slots=True)
class OutputDocumentView:
    """Stored output document."""

    job_id: str
    kind: str
    index: int
    title: str
    content: str
    size_bytes: int
    slug: str
    created_at: datetime


@dataclass(slots=True)
class JobDetails:
    """Job snapshot together with its output documents."""

    job: JobView
    documents: list[OutputDocumentView] = field(default_factory=list)


@dataclass(slots=True)
class FailOutcome:
    """What fail() did with the job."""

    applied: bool
    status: JobStatus | None
    run_at: datetime | None = None
    delay_seconds: float | None = None


@dataclass(slots=True)
class ReclaimSummary:
    """Result of one lease-expiry sweep."""

    requeued: list[str] = field(default_factory=list)
    dead: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.requeued) + len(self.dead)
