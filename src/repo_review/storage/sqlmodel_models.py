"""SQLModel ORM tables for review pipeline storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class Subject(SQLModel, table=True):
    __tablename__ = "subjects"  # type: ignore[bad-override]

    subject_id: str = Field(primary_key=True)
    repo_url: str
    repo_owner: str = Field(index=True)
    repo_name: str = Field(index=True)
    branch: str = Field(default="main")
    status: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ReviewJob(SQLModel, table=True):
    __tablename__ = "review_jobs"  # type: ignore[bad-override]

    job_id: str = Field(primary_key=True)
    subject_id: str = Field(index=True)
    status: str = Field(index=True)
    progress: int = Field(default=0)
    total_units: int = Field(default=0)
    processed_units: int = Field(default=0)
    attempts_made: int = Field(default=0)
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueEntry(SQLModel, table=True):
    __tablename__ = "queue_entries"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_queue_entries_ready", "state", "priority", "run_after"),)

    job_id: str = Field(primary_key=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = Field(default=10, index=True)
    state: str = Field(index=True)
    attempts_made: int = Field(default=0)
    max_attempts: int = Field(default=3)
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    lease_token: str | None = Field(default=None, index=True)
    lease_expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    worker_id: str | None = Field(default=None, index=True)
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class QueueEvent(SQLModel, table=True):
    __tablename__ = "queue_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_queue_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("queue_entries.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    state_from: str | None = None
    state_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Analyzer(SQLModel, table=True):
    __tablename__ = "analyzers"  # type: ignore[bad-override]

    analyzer_id: str = Field(primary_key=True)
    category: str = Field(index=True)
    display_name: str
    model: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ReviewResult(SQLModel, table=True):
    __tablename__ = "review_results"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("review_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
    )
    subject_id: str = Field(index=True)
    overall_score: int
    total_issues: int
    total_tokens: int
    estimated_cost_usd: float
    results_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ReviewFinding(SQLModel, table=True):
    __tablename__ = "review_findings"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_review_findings_job_severity", "job_id", "severity"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("review_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    subject_id: str = Field(index=True)
    analyzer_id: str = Field(
        sa_column=Column(
            ForeignKey("analyzers.analyzer_id"),
            nullable=False,
            index=True,
        ),
    )
    file_path: str
    line_number: int | None = None
    severity: str = Field(index=True)
    category: str = Field(index=True)
    title: str
    description: str = Field(sa_column=Column(Text, nullable=False))
    suggestion: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
