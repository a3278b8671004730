"""CLI entrypoint for repo-review."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click
from rich.logging import RichHandler

from repo_review import __version__
from repo_review.pipeline.controllers import (
    JobEnqueueCommand,
    JobFindingsCommand,
    JobListCommand,
    JobStatusCommand,
    QueueCleanCommand,
    QueueListCommand,
    QueueRemoveCommand,
    QueueStatsCommand,
    ReviewCliController,
    SubjectAddCommand,
    SubjectListCommand,
    WorkerRunCommand,
)
from repo_review.pipeline.errors import ReviewPipelineError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ReviewCliController()

CommandT = TypeVar("CommandT")

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="repo-review")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Log level for pipeline output.",
)
def repo_review(log_level: str) -> None:
    """Repository review queue and worker CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )


@repo_review.group()
def subjects() -> None:
    """Repository subject commands."""


@subjects.command("add")
@DB_PATH_OPTION
@click.option("--repo-url", required=True, help="Repository URL, for example a GitHub URL.")
@click.option("--branch", default="main", show_default=True, help="Branch to review.")
@click.option("--subject-id", default=None, help="Optional explicit subject id.")
def subjects_add(
    db_path: Path | None,
    repo_url: str,
    branch: str,
    subject_id: str | None,
) -> None:
    """Register a repository for review."""

    _emit_lines(
        _run(
            CONTROLLER.add_subject,
            SubjectAddCommand(
                db_path=db_path,
                repo_url=repo_url,
                branch=branch,
                subject_id=subject_id,
            ),
        ),
    )


@subjects.command("list")
@DB_PATH_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of subjects to print.",
)
def subjects_list(db_path: Path | None, limit: int) -> None:
    """List registered subjects, newest first."""

    _emit_lines(_run(CONTROLLER.list_subjects, SubjectListCommand(db_path=db_path, limit=limit)))


@repo_review.group()
def jobs() -> None:
    """Review job commands."""


@jobs.command("enqueue")
@DB_PATH_OPTION
@click.option("--subject-id", required=True, help="Subject to review.")
@click.option("--job-id", default=None, help="Optional explicit job id (default: random UUID).")
@click.option(
    "--priority",
    type=click.IntRange(min=0, max=1000),
    default=10,
    show_default=True,
    help="Lower number means higher priority.",
)
@click.option(
    "--delay-seconds",
    type=click.FloatRange(min=0),
    default=0.0,
    show_default=True,
    help="Keep the job delayed for this many seconds.",
)
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1, max=10),
    default=3,
    show_default=True,
    help="Max execution attempts including first run.",
)
def jobs_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    subject_id: str,
    job_id: str | None,
    priority: int,
    delay_seconds: float,
    max_attempts: int,
) -> None:
    """Enqueue a review job for a subject."""

    _emit_lines(
        _run(
            CONTROLLER.enqueue_job,
            JobEnqueueCommand(
                db_path=db_path,
                subject_id=subject_id,
                job_id=job_id,
                priority=priority,
                delay_seconds=delay_seconds,
                max_attempts=max_attempts,
            ),
        ),
    )


@jobs.command("status")
@DB_PATH_OPTION
@click.argument("job_id")
def jobs_status(db_path: Path | None, job_id: str) -> None:
    """Show job status, progress and queue state."""

    _emit_lines(_run(CONTROLLER.job_status, JobStatusCommand(db_path=db_path, job_id=job_id)))


@jobs.command("list")
@DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice(["queued", "processing", "completed", "failed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List jobs, newest first."""

    _emit_lines(
        _run(CONTROLLER.list_jobs, JobListCommand(db_path=db_path, status=status, limit=limit)),
    )


@jobs.command("inspect")
@DB_PATH_OPTION
@click.argument("job_id")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Show job report summary and queue events."""

    _emit_lines(_run(CONTROLLER.inspect_job, JobStatusCommand(db_path=db_path, job_id=job_id)))


@jobs.command("findings")
@DB_PATH_OPTION
@click.argument("job_id")
@click.option(
    "--severity",
    type=click.Choice(["high", "medium", "low"], case_sensitive=False),
    default=None,
    help="Optional severity filter.",
)
@click.option(
    "--category",
    type=click.Choice(["bug", "security", "performance", "style"], case_sensitive=False),
    default=None,
    help="Optional category filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=10000),
    default=200,
    show_default=True,
    help="Max number of findings to print.",
)
def jobs_findings(
    db_path: Path | None,
    job_id: str,
    severity: str | None,
    category: str | None,
    limit: int,
) -> None:
    """List persisted findings of a job."""

    _emit_lines(
        _run(
            CONTROLLER.list_findings,
            JobFindingsCommand(
                db_path=db_path,
                job_id=job_id,
                severity=severity.lower() if severity is not None else None,
                category=category.lower() if category is not None else None,
                limit=limit,
            ),
        ),
    )


@repo_review.group()
def queue() -> None:
    """Durable queue commands."""


@queue.command("stats")
@DB_PATH_OPTION
def queue_stats(db_path: Path | None) -> None:
    """Show queue counters."""

    _emit_lines(_run(CONTROLLER.queue_stats, QueueStatsCommand(db_path=db_path)))


@queue.command("list")
@DB_PATH_OPTION
@click.option(
    "--state",
    type=click.Choice(["waiting", "active", "completed", "failed"], case_sensitive=False),
    default=None,
    help="Optional state filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of entries to print.",
)
def queue_list(db_path: Path | None, state: str | None, limit: int) -> None:
    """List queue entries."""

    _emit_lines(
        _run(CONTROLLER.list_queue, QueueListCommand(db_path=db_path, state=state, limit=limit)),
    )


@queue.command("clean")
@DB_PATH_OPTION
@click.option(
    "--completed-days",
    type=click.IntRange(min=0),
    default=None,
    help="Remove completed entries older than this (default from settings).",
)
@click.option(
    "--failed-days",
    type=click.IntRange(min=0),
    default=None,
    help="Remove failed entries older than this (default from settings).",
)
def queue_clean(db_path: Path | None, completed_days: int | None, failed_days: int | None) -> None:
    """Remove finished queue entries past their retention window."""

    _emit_lines(
        _run(
            CONTROLLER.clean_queue,
            QueueCleanCommand(
                db_path=db_path,
                completed_days=completed_days,
                failed_days=failed_days,
            ),
        ),
    )


@queue.command("remove")
@DB_PATH_OPTION
@click.argument("job_id")
def queue_remove(db_path: Path | None, job_id: str) -> None:
    """Remove one non-active queue entry."""

    _emit_lines(
        _run(CONTROLLER.remove_from_queue, QueueRemoveCommand(db_path=db_path, job_id=job_id)),
    )


@repo_review.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@DB_PATH_OPTION
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Process one job or loop until idle.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs (per worker) in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Exit after this many consecutive empty polls.",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1, max=64),
    default=None,
    help="Number of worker threads (default from settings).",
)
@click.option(
    "--backend",
    type=click.Choice(["openai", "echo"], case_sensitive=False),
    default=None,
    help="Analyzer backend override.",
)
def worker_run(  # noqa: PLR0913
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int,
    concurrency: int | None,
    backend: str | None,
) -> None:
    """Run review workers."""

    _emit_lines(
        _run(
            CONTROLLER.run_worker,
            WorkerRunCommand(
                db_path=db_path,
                once=once,
                max_jobs=max_jobs,
                max_idle_polls=max_idle_polls,
                concurrency=concurrency,
                backend=backend.lower() if backend is not None else None,
            ),
        ),
    )


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except (ValueError, ReviewPipelineError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    repo_review()
