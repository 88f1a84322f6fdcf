"""Time and identifier sources shared by the queue and the worker."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Protocol
from uuid import uuid4


class Clock(Protocol):
    """Source of the current time, injectable for tests."""

    def now(self) -> datetime:
        """Return the current timezone-aware UTC timestamp."""


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return utc_now()


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def new_job_id() -> str:
    return str(uuid4())


def new_worker_id(prefix: str = "worker") -> str:
    return f"{prefix}-{uuid4().hex[:12]}"
