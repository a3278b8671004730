"""Persistence facade for subjects, jobs, reports, findings and the analyzer catalog."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlmodel import Session, col, select

from repo_review.pipeline.errors import InvalidTransitionError
from repo_review.pipeline.models import (
    AnalyzerCatalogEntry,
    FindingRow,
    JobStatus,
    JobUpdate,
    JobView,
    QueueState,
    StoredReport,
    SubjectStatus,
    SubjectView,
)
from repo_review.storage.alembic_runner import upgrade_head
from repo_review.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from repo_review.storage.sqlmodel_models import (
    Analyzer,
    QueueEntry,
    ReviewFinding,
    ReviewJob,
    ReviewResult,
    Subject,
)

logger = logging.getLogger(__name__)

JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED},
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class ReviewRepository:
    """Review data persistence backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Subjects

    def add_subject(
        self,
        *,
        repo_url: str,
        repo_owner: str,
        repo_name: str,
        branch: str = "main",
        subject_id: str | None = None,
    ) -> SubjectView:
        """Register a repository for review."""

        now = utc_now()
        with Session(self.engine) as session:
            row = Subject(
                subject_id=subject_id or str(uuid4()),
                repo_url=repo_url,
                repo_owner=repo_owner,
                repo_name=repo_name,
                branch=branch,
                status=SubjectStatus.PENDING.value,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_subject_view(row)

    def get_subject(self, subject_id: str) -> SubjectView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Subject).where(Subject.subject_id == subject_id),
            ).one_or_none()
        return _to_subject_view(row) if row is not None else None

    def list_subjects(self, *, limit: int = 50) -> list[SubjectView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Subject).order_by(col(Subject.created_at).desc()).limit(limit),
            ).all()
        return [_to_subject_view(row) for row in rows]

    def set_subject_status(self, subject_id: str, status: SubjectStatus) -> None:
        """Update subject status; missing subjects are ignored."""

        with Session(self.engine) as session:
            row = session.exec(
                select(Subject).where(Subject.subject_id == subject_id),
            ).one_or_none()
            if row is None:
                return
            row.status = status.value
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()

    # Jobs

    def create_job(self, *, job_id: str, subject_id: str) -> JobView:
        """Create a queued job record, or return the existing one."""

        now = utc_now()
        with Session(self.engine) as session:
            existing = session.exec(
                select(ReviewJob).where(ReviewJob.job_id == job_id),
            ).one_or_none()
            if existing is not None:
                return _to_job_view(existing)
            row = ReviewJob(
                job_id=job_id,
                subject_id=subject_id,
                status=JobStatus.QUEUED.value,
                progress=0,
                total_units=0,
                processed_units=0,
                attempts_made=0,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ReviewJob).where(ReviewJob.job_id == job_id),
            ).one_or_none()
        return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        with Session(self.engine) as session:
            statement = select(ReviewJob).order_by(col(ReviewJob.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(ReviewJob.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def update_job(self, job_id: str, update: JobUpdate) -> JobView:
        """Apply a partial update while enforcing job record invariants.

        Status only moves forward, progress never decreases and is kept in
        0..100, and processed units never exceed total units.
        """

        with Session(self.engine) as session:
            row = session.exec(
                select(ReviewJob).where(ReviewJob.job_id == job_id),
            ).one_or_none()
            if row is None:
                raise RuntimeError(f"Job not found: {job_id}")

            current = JobStatus(row.status)
            if update.status is not None and update.status not in JOB_TRANSITIONS[current]:
                raise InvalidTransitionError(
                    f"Invalid job status transition for {job_id}: "
                    f"{current.value} -> {update.status.value}",
                )

            total = update.total_units if update.total_units is not None else row.total_units
            processed = (
                update.processed_units
                if update.processed_units is not None
                else row.processed_units
            )
            if total < 0 or processed < 0:
                raise ValueError("Unit counters must be >= 0")
            if processed > total:
                raise ValueError(
                    f"processed_units ({processed}) exceeds total_units ({total}) for job {job_id}",
                )
            row.total_units = total
            row.processed_units = processed

            if update.progress is not None:
                row.progress = max(row.progress, max(0, min(100, update.progress)))
            if update.status is not None:
                row.status = update.status.value
            if update.attempts_made is not None:
                row.attempts_made = update.attempts_made
            if update.clear_error:
                row.error_message = None
            if update.error_message is not None:
                row.error_message = update.error_message
            if update.started_at is not None:
                row.started_at = to_db_datetime(update.started_at)
            if update.completed_at is not None:
                row.completed_at = to_db_datetime(update.completed_at)
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def fail_abandoned_job(self, job_id: str, error: str) -> bool:
        """Mark a non-terminal job failed after its queue entry was given up."""

        with Session(self.engine) as session:
            row = session.exec(
                select(ReviewJob).where(ReviewJob.job_id == job_id),
            ).one_or_none()
            if row is None or JobStatus(row.status) not in {
                JobStatus.QUEUED,
                JobStatus.PROCESSING,
            }:
                return False
            now = to_db_datetime(utc_now())
            row.status = JobStatus.FAILED.value
            row.error_message = error
            row.completed_at = now
            row.updated_at = now
            session.add(row)
            session.commit()
        self._set_subject_failed_for_job(job_id)
        return True

    def fail_jobs_with_failed_entries(self) -> int:
        """Fail open jobs whose queue entry was already given up; returns the count."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ReviewJob.job_id, QueueEntry.last_error)
                .join(QueueEntry, col(QueueEntry.job_id) == col(ReviewJob.job_id))
                .where(
                    col(QueueEntry.state) == QueueState.FAILED.value,
                    col(ReviewJob.status).in_(
                        [JobStatus.QUEUED.value, JobStatus.PROCESSING.value],
                    ),
                ),
            ).all()
        reconciled = 0
        for job_id, last_error in rows:
            if self.fail_abandoned_job(job_id, last_error or "queue entry failed"):
                reconciled += 1
        if reconciled:
            logger.warning("Failed %s jobs whose queue entries had already failed", reconciled)
        return reconciled

    def _set_subject_failed_for_job(self, job_id: str) -> None:
        job = self.get_job(job_id)
        if job is not None:
            self.set_subject_status(job.subject_id, SubjectStatus.FAILED)

    # Reports

    def insert_aggregate(
        self,
        *,
        job_id: str,
        subject_id: str,
        summary: dict[str, Any],
    ) -> StoredReport:
        """Write the aggregate report of a job; at most one per job."""

        with Session(self.engine) as session:
            row = ReviewResult(
                job_id=job_id,
                subject_id=subject_id,
                overall_score=int(summary["overall_score"]),
                total_issues=int(summary["total_issues"]),
                total_tokens=int(summary["total_tokens"]),
                estimated_cost_usd=float(summary["estimated_cost_usd"]),
                results_json=json.dumps(summary, ensure_ascii=False, sort_keys=True),
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_report(row)

    def get_aggregate(self, job_id: str) -> StoredReport | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ReviewResult).where(ReviewResult.job_id == job_id),
            ).one_or_none()
        return _to_report(row) if row is not None else None

    def delete_aggregate(self, job_id: str) -> None:
        """Drop a previously written report and its findings for a rerun."""

        with Session(self.engine) as session:
            session.exec(sa_delete(ReviewFinding).where(col(ReviewFinding.job_id) == job_id))
            session.exec(sa_delete(ReviewResult).where(col(ReviewResult.job_id) == job_id))
            session.commit()

    def insert_findings(self, rows: list[FindingRow]) -> int:
        """Insert one batch of findings in a single transaction."""

        if not rows:
            return 0
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            for item in rows:
                session.add(
                    ReviewFinding(
                        job_id=item.job_id,
                        subject_id=item.subject_id,
                        analyzer_id=item.analyzer_id,
                        file_path=item.file_path,
                        line_number=item.line_number,
                        severity=item.severity,
                        category=item.category,
                        title=item.title,
                        description=item.description,
                        suggestion=item.suggestion,
                        created_at=now,
                    ),
                )
            session.commit()
        return len(rows)

    def list_findings(
        self,
        job_id: str,
        *,
        severity: str | None = None,
        category: str | None = None,
        limit: int = 200,
    ) -> list[FindingRow]:
        with Session(self.engine) as session:
            statement = (
                select(ReviewFinding)
                .where(ReviewFinding.job_id == job_id)
                .order_by(col(ReviewFinding.file_path).asc(), col(ReviewFinding.id).asc())
                .limit(limit)
            )
            if severity is not None:
                statement = statement.where(ReviewFinding.severity == severity)
            if category is not None:
                statement = statement.where(ReviewFinding.category == category)
            rows = session.exec(statement).all()
        return [
            FindingRow(
                job_id=row.job_id,
                subject_id=row.subject_id,
                analyzer_id=row.analyzer_id,
                file_path=row.file_path,
                line_number=row.line_number,
                severity=row.severity,
                category=row.category,
                title=row.title,
                description=row.description,
                suggestion=row.suggestion,
            )
            for row in rows
        ]

    # Analyzer catalog

    def sync_analyzer_catalog(self, entries: list[AnalyzerCatalogEntry]) -> None:
        """Upsert analyzer catalog rows so findings can reference them."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            for entry in entries:
                row = session.exec(
                    select(Analyzer).where(Analyzer.analyzer_id == entry.analyzer_id),
                ).one_or_none()
                if row is None:
                    row = Analyzer(
                        analyzer_id=entry.analyzer_id,
                        category=entry.category,
                        display_name=entry.display_name,
                        model=entry.model,
                        created_at=now,
                        updated_at=now,
                    )
                else:
                    row.category = entry.category
                    row.display_name = entry.display_name
                    row.model = entry.model
                    row.updated_at = now
                session.add(row)
            session.commit()
        logger.debug("Analyzer catalog synced: %s", [entry.analyzer_id for entry in entries])

    def list_analyzers(self) -> list[AnalyzerCatalogEntry]:
        with Session(self.engine) as session:
            rows = session.exec(select(Analyzer).order_by(col(Analyzer.analyzer_id).asc())).all()
        return [
            AnalyzerCatalogEntry(
                analyzer_id=row.analyzer_id,
                category=row.category,
                display_name=row.display_name,
                model=row.model,
            )
            for row in rows
        ]


def _to_subject_view(row: Subject) -> SubjectView:
    return SubjectView(
        subject_id=row.subject_id,
        repo_url=row.repo_url,
        repo_owner=row.repo_owner,
        repo_name=row.repo_name,
        branch=row.branch,
        status=SubjectStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_job_view(row: ReviewJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        subject_id=row.subject_id,
        status=JobStatus(row.status),
        progress=row.progress,
        total_units=row.total_units,
        processed_units=row.processed_units,
        attempts_made=row.attempts_made,
        error_message=row.error_message,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_report(row: ReviewResult) -> StoredReport:
    parsed = json.loads(row.results_json)
    return StoredReport(
        job_id=row.job_id,
        subject_id=row.subject_id,
        overall_score=row.overall_score,
        total_issues=row.total_issues,
        total_tokens=row.total_tokens,
        estimated_cost_usd=row.estimated_cost_usd,
        results=parsed if isinstance(parsed, dict) else {},
        created_at=to_utc_aware_datetime(row.created_at),
    )
