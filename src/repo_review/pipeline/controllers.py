"""Controllers for review pipeline CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from uuid import uuid4

from repo_review.config import Settings
from repo_review.pipeline.models import EnqueueOptions, JobStatus, QueueState
from repo_review.pipeline.services import PipelineRuntime, open_runtime


@dataclass(slots=True)
class SubjectAddCommand:
    """CLI input for subject registration."""

    db_path: Path | None
    repo_url: str
    branch: str
    subject_id: str | None = None


@dataclass(slots=True)
class SubjectListCommand:
    """CLI input for subject listing."""

    db_path: Path | None
    limit: int


@dataclass(slots=True)
class JobEnqueueCommand:
    """CLI input for job enqueue."""

    db_path: Path | None
    subject_id: str
    job_id: str | None
    priority: int
    delay_seconds: float
    max_attempts: int


@dataclass(slots=True)
class JobStatusCommand:
    """CLI input for job status / inspection."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobFindingsCommand:
    """CLI input for persisted findings listing."""

    db_path: Path | None
    job_id: str
    severity: str | None
    category: str | None
    limit: int


@dataclass(slots=True)
class QueueStatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class QueueListCommand:
    """CLI input for queue entry listing."""

    db_path: Path | None
    state: str | None
    limit: int


@dataclass(slots=True)
class QueueCleanCommand:
    """CLI input for retention cleanup."""

    db_path: Path | None
    completed_days: int | None
    failed_days: int | None


@dataclass(slots=True)
class QueueRemoveCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int = 1
    concurrency: int | None = None
    backend: str | None = None


class ReviewCliController:
    """Coordinates subject, job, queue and worker CLI operations."""

    def add_subject(self, command: SubjectAddCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            subject = runtime.service.register_subject(
                repo_url=command.repo_url,
                branch=command.branch,
                subject_id=command.subject_id,
            )
        return [
            "Subject registered: "
            f"subject_id={subject.subject_id} repo={subject.repo_owner}/{subject.repo_name} "
            f"branch={subject.branch}",
        ]

    def list_subjects(self, command: SubjectListCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            subjects = runtime.repository.list_subjects(limit=command.limit)
        lines = [f"Subjects: {len(subjects)}"]
        for subject in subjects:
            lines.append(
                f"  {subject.subject_id} {subject.repo_owner}/{subject.repo_name} "
                f"branch={subject.branch} status={subject.status.value} url={subject.repo_url}",
            )
        return lines

    def enqueue_job(self, command: JobEnqueueCommand) -> list[str]:
        job_id = command.job_id or str(uuid4())
        with _runtime(command.db_path) as runtime:
            job = runtime.service.enqueue_job(
                job_id,
                command.subject_id,
                EnqueueOptions(
                    priority=command.priority,
                    delay_seconds=command.delay_seconds,
                    max_attempts=command.max_attempts,
                ),
            )
        return [
            f"Job enqueued: job_id={job.job_id} subject_id={job.subject_id} "
            f"status={job.status.value}",
        ]

    def job_status(self, command: JobStatusCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            report = runtime.service.get_job_status(command.job_id)
        if report is None:
            return [f"Job not found: {command.job_id}"]

        job = report.job
        entry = report.queue_entry
        return [
            f"Job: {job.job_id}",
            f"Subject: {job.subject_id}",
            f"Status: {job.status.value}",
            f"Progress: {job.progress}% ({job.processed_units}/{job.total_units} files)",
            f"Attempts: {job.attempts_made}",
            f"Error: {job.error_message or '-'}",
            f"Started: {job.started_at.isoformat() if job.started_at else '-'}",
            f"Completed: {job.completed_at.isoformat() if job.completed_at else '-'}",
            (
                f"Queue: state={entry.state.value} attempt={entry.attempts_made}/"
                f"{entry.max_attempts} run_after={entry.run_after.isoformat()}"
                if entry is not None
                else "Queue: -"
            ),
        ]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        status = JobStatus(command.status.strip().lower()) if command.status else None
        with _runtime(command.db_path) as runtime:
            jobs = runtime.repository.list_jobs(status=status, limit=command.limit)
        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} subject={job.subject_id} status={job.status.value} "
                f"progress={job.progress}% files={job.processed_units}/{job.total_units}",
            )
        return lines

    def inspect_job(self, command: JobStatusCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            job = runtime.repository.get_job(command.job_id)
            report = runtime.repository.get_aggregate(command.job_id)
            events = runtime.queue.events(command.job_id)
        if job is None:
            return [f"Job not found: {command.job_id}"]

        lines = [
            f"Job: {job.job_id}",
            f"Status: {job.status.value}",
            f"Progress: {job.progress}%",
            f"Error: {job.error_message or '-'}",
        ]
        if report is None:
            lines.append("Report: -")
        else:
            lines.extend(
                [
                    f"Report: score={report.overall_score} issues={report.total_issues} "
                    f"tokens={report.total_tokens} cost=${report.estimated_cost_usd:.6f}",
                    "Issues by severity: "
                    + json.dumps(report.results.get("issues_by_severity", {}), sort_keys=True),
                ],
            )
            for item in report.results.get("files", []):
                lines.append(
                    f"  {item['path']} ({item['language']}) score={item['overall_score']} "
                    f"issues={item['total_issues']}",
                )
        lines.append(f"Events: {len(events)}")
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.state_from.value if event.state_from else '-'} -> "
                f"{event.state_to.value if event.state_to else '-'}",
            )
        return lines

    def list_findings(self, command: JobFindingsCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            findings = runtime.repository.list_findings(
                command.job_id,
                severity=command.severity,
                category=command.category,
                limit=command.limit,
            )
        lines = [f"Findings: {len(findings)}"]
        for finding in findings:
            location = (
                f"{finding.file_path}:{finding.line_number}"
                if finding.line_number is not None
                else finding.file_path
            )
            lines.append(f"  [{finding.severity}] {finding.category} {location} {finding.title}")
        return lines

    def queue_stats(self, command: QueueStatsCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            stats = runtime.service.get_queue_stats()
        return [
            "Queue stats: "
            f"waiting={stats.waiting} active={stats.active} completed={stats.completed} "
            f"failed={stats.failed} delayed={stats.delayed} total={stats.total}",
        ]

    def list_queue(self, command: QueueListCommand) -> list[str]:
        state = QueueState(command.state.strip().lower()) if command.state else None
        with _runtime(command.db_path) as runtime:
            entries = runtime.queue.list_entries(state=state, limit=command.limit)
        lines = [f"Queue entries: {len(entries)}"]
        for entry in entries:
            lines.append(
                f"  {entry.job_id} state={entry.state.value} priority={entry.priority} "
                f"attempt={entry.attempts_made}/{entry.max_attempts} "
                f"run_after={entry.run_after.isoformat()} error={entry.last_error or '-'}",
            )
        return lines

    def clean_queue(self, command: QueueCleanCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            result = runtime.queue.clean(
                completed_older_than=(
                    timedelta(days=command.completed_days)
                    if command.completed_days is not None
                    else None
                ),
                failed_older_than=(
                    timedelta(days=command.failed_days) if command.failed_days is not None else None
                ),
            )
        return [
            "Queue cleaned: "
            f"completed_removed={result.completed_removed} failed_removed={result.failed_removed}",
        ]

    def remove_from_queue(self, command: QueueRemoveCommand) -> list[str]:
        with _runtime(command.db_path) as runtime:
            try:
                removed = runtime.queue.remove(command.job_id)
            except RuntimeError as error:
                return [f"Queue entry not removed: {error}"]
        if not removed:
            return [f"Queue entry not found: {command.job_id}"]
        return [f"Queue entry removed: {command.job_id}"]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.backend is not None:
            settings.analyzer.backend = command.backend
        with open_runtime(settings) as runtime:
            concurrency = command.concurrency or settings.worker.concurrency
            if command.once:
                summary = runtime.build_worker().run_once()
            elif concurrency == 1:
                summary = runtime.build_worker().run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            else:
                summary = runtime.build_pool(concurrency=concurrency).run(
                    max_jobs_per_worker=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"lease_lost={summary.lease_lost} idle_polls={summary.idle_polls}",
        ]


@contextmanager
def _runtime(db_path: Path | None) -> Iterator[PipelineRuntime]:
    settings = Settings.from_env(db_path=db_path)
    with open_runtime(settings) as runtime:
        yield runtime
