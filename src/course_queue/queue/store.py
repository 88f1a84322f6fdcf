"""Persistent job store with conditional-update primitives."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from course_queue.clock import Clock, SystemClock, new_job_id
from course_queue.errors import DuplicateActiveJob
from course_queue.queue.models import (
    ACTIVE_STATUSES,
    LEASED_STATUSES,
    FailureClass,
    JobCreate,
    JobStatus,
    JobView,
    LogEntryView,
    OutputDocumentView,
    OutputDocumentWrite,
)
from course_queue.storage.alembic_runner import upgrade_head
from course_queue.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
)
from course_queue.storage.sqlmodel_models import Job, JobLogEntry, OutputDocument

logger = logging.getLogger(__name__)

_UPDATABLE_COLUMNS = frozenset(
    {
        "status",
        "attempts",
        "run_at",
        "lease_owner",
        "lease_until",
        "current_step",
        "total_steps",
        "progress_message",
        "completed_at",
        "result_json",
        "error_message",
        "failure_class",
    },
)


class JobStore:
    """Job table facade backed by SQLModel + SQLite.

    Every state change goes through :meth:`conditional_update`, which only
    applies when the row still matches the caller's expectations. The row write
    and its log entry (and documents, on completion) share one transaction.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        clock: Clock | None = None,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.clock = clock or SystemClock()
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def insert_job(self, payload: JobCreate) -> JobView:
        """Insert a pending job, enforcing dedupe-key uniqueness among active jobs."""

        now = self.clock.now()
        job_id = payload.job_id or new_job_id()
        if payload.dedupe_key is not None:
            existing = self.find_active_by_dedupe_key(payload.dedupe_key)
            if existing is not None:
                raise DuplicateActiveJob(payload.dedupe_key, existing.job_id)

        with Session(self.engine) as session:
            row = Job(
                job_id=job_id,
                owner_ref=payload.owner_ref,
                subject_ref=payload.subject_ref,
                profile=payload.profile,
                status=JobStatus.PENDING.value,
                attempts=0,
                max_attempts=payload.max_attempts,
                run_at=to_db_datetime(payload.run_at or now),
                dedupe_key=payload.dedupe_key,
                current_step=0,
                total_steps=payload.total_steps,
                progress_message=None,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError as error:
                session.rollback()
                if payload.dedupe_key is None:
                    raise
                existing = self.find_active_by_dedupe_key(payload.dedupe_key)
                raise DuplicateActiveJob(
                    payload.dedupe_key,
                    existing.job_id if existing is not None else None,
                ) from error
            self._append_log(
                session=session,
                job_id=job_id,
                text=f"enqueued subject={payload.subject_ref} profile={payload.profile}",
                now=now,
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(Job, job_id)
            return _to_job_view(row) if row is not None else None

    def find_active_by_dedupe_key(self, dedupe_key: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Job)
                .where(
                    Job.dedupe_key == dedupe_key,
                    col(Job.status).in_([status.value for status in ACTIVE_STATUSES]),
                )
                .limit(1),
            ).one_or_none()
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        owner_ref: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by status/owner."""

        with Session(self.engine) as session:
            statement = select(Job).order_by(col(Job.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            if owner_ref is not None:
                statement = statement.where(Job.owner_ref == owner_ref)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def list_claim_candidates(self, *, now: datetime, limit: int = 10) -> list[JobView]:
        """Pending-and-due or lease-expired jobs, oldest run_at first."""

        db_now = to_db_datetime(now)
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(
                    or_(
                        (col(Job.status) == JobStatus.PENDING.value) & (col(Job.run_at) <= db_now),
                        col(Job.status).in_([status.value for status in LEASED_STATUSES])
                        & (col(Job.lease_until) <= db_now)
                        & (col(Job.attempts) < col(Job.max_attempts)),
                    ),
                )
                .order_by(col(Job.run_at).asc(), col(Job.job_id).asc())
                .limit(limit),
            ).all()
        return [_to_job_view(row) for row in rows]

    def list_expired_leases(self, *, now: datetime) -> list[JobView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(
                    col(Job.status).in_([status.value for status in LEASED_STATUSES]),
                    col(Job.lease_until) <= to_db_datetime(now),
                )
                .order_by(col(Job.lease_until).asc(), col(Job.job_id).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def conditional_update(
        self,
        job_id: str,
        *,
        expected: Mapping[str, Any],
        values: Mapping[str, Any],
        log_text: str | None = None,
        documents: list[OutputDocumentWrite] | None = None,
    ) -> bool:
        """Compare-and-swap one job row.

        ``expected`` maps column names to the values the row must still hold
        (``None`` means SQL NULL); ``values`` are written only when every
        expectation matches. Returns False when another actor got there first.
        """

        unknown = set(values) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported job columns for update: {sorted(unknown)}")

        now = self.clock.now()
        conditions = [col(Job.job_id) == job_id]
        for name, value in expected.items():
            column = col(getattr(Job, name))
            conditions.append(column.is_(None) if value is None else column == _db_value(value))

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(*conditions)
                .values(
                    **{name: _db_value(value) for name, value in values.items()},
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            if log_text is not None:
                self._append_log(session=session, job_id=job_id, text=log_text, now=now)
            for document in documents or []:
                session.add(
                    OutputDocument(
                        job_id=job_id,
                        kind=document.kind,
                        doc_index=document.index,
                        slug=document.slug,
                        title=document.title,
                        content=document.content,
                        size_bytes=document.size_bytes,
                        created_at=to_db_datetime(now),
                    ),
                )
            session.commit()
            return True

    def list_logs(
        self,
        job_id: str,
        *,
        after_sequence: int = 0,
        limit: int = 500,
    ) -> list[LogEntryView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobLogEntry)
                .where(
                    JobLogEntry.job_id == job_id,
                    col(JobLogEntry.sequence) > after_sequence,
                )
                .order_by(col(JobLogEntry.sequence).asc())
                .limit(limit),
            ).all()
        return [
            LogEntryView(
                job_id=row.job_id,
                sequence=row.sequence,
                timestamp=to_utc_aware_datetime(row.created_at),
                text=row.text,
            )
            for row in rows
        ]

    def list_documents(self, job_id: str) -> list[OutputDocumentView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(OutputDocument)
                .where(OutputDocument.job_id == job_id)
                .order_by(col(OutputDocument.kind).asc(), col(OutputDocument.doc_index).asc()),
            ).all()
        return [
            OutputDocumentView(
                job_id=row.job_id,
                kind=row.kind,
                index=row.doc_index,
                title=row.title,
                content=row.content,
                size_bytes=row.size_bytes,
                slug=row.slug,
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]

    def count_by_status(self) -> dict[JobStatus, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job.status, func.count()).group_by(Job.status),
            ).all()
        counts = dict.fromkeys(JobStatus, 0)
        for status, count in rows:
            counts[JobStatus(status)] = int(count)
        return counts

    def _append_log(self, *, session: Session, job_id: str, text: str, now: datetime) -> None:
        # Runs after the row write in the same transaction, so the SQLite write
        # lock is already held and max(sequence) cannot race.
        last = session.exec(
            select(func.max(JobLogEntry.sequence)).where(JobLogEntry.job_id == job_id),
        ).one()
        session.add(
            JobLogEntry(
                job_id=job_id,
                sequence=(last or 0) + 1,
                created_at=to_db_datetime(now),
                text=text,
            ),
        )


def _db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_db_datetime(value)
    if isinstance(value, JobStatus | FailureClass):
        return value.value
    return value


def _to_job_view(row: Job) -> JobView:
    result: dict[str, Any] | None = None
    if row.result_json:
        parsed = json.loads(row.result_json)
        if isinstance(parsed, dict):
            result = parsed
    return JobView(
        job_id=row.job_id,
        owner_ref=row.owner_ref,
        subject_ref=row.subject_ref,
        profile=row.profile,
        status=JobStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        run_at=to_utc_aware_datetime(row.run_at),
        lease_owner=row.lease_owner,
        lease_until=optional_utc(row.lease_until),
        dedupe_key=row.dedupe_key,
        current_step=row.current_step,
        total_steps=row.total_steps,
        progress_message=row.progress_message,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        completed_at=optional_utc(row.completed_at),
        result=result,
        error_message=row.error_message,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
    )
