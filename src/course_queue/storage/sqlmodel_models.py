"""SQLModel ORM tables for the job store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel

ACTIVE_STATUS_SQL = "status IN ('pending', 'claimed', 'running')"


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_claim_scan", "status", "run_at", "job_id"),
        Index("idx_jobs_lease", "status", "lease_until"),
        Index(
            "uq_jobs_active_dedupe_key",
            "dedupe_key",
            unique=True,
            sqlite_where=text(f"dedupe_key IS NOT NULL AND {ACTIVE_STATUS_SQL}"),
        ),
    )

    job_id: str = Field(primary_key=True)
    owner_ref: str = Field(index=True)
    subject_ref: str
    profile: str = Field(default="default")
    status: str = Field(index=True)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=5)
    run_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    lease_owner: str | None = Field(default=None, index=True)
    lease_until: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    dedupe_key: str | None = Field(default=None)
    current_step: int = Field(default=0)
    total_steps: int = Field(default=6)
    progress_message: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    failure_class: str | None = Field(default=None, index=True)


class JobLogEntry(SQLModel, table=True):
    __tablename__ = "job_logs"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("job_id", "sequence", name="uq_job_logs_job_sequence"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    sequence: int
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    text: str = Field(sa_column=Column(Text, nullable=False))


class OutputDocument(SQLModel, table=True):
    __tablename__ = "output_documents"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "job_id",
            "kind",
            "doc_index",
            name="uq_output_documents_job_kind_index",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    kind: str = Field(index=True)
    doc_index: int
    slug: str
    title: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    size_bytes: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
