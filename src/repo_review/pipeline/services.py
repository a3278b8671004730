"""Use-case services and runtime wiring for the review pipeline."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from urllib.parse import urlparse

from repo_review.config import Settings
from repo_review.pipeline.analyzers import (
    build_analyzers,
    build_profiles,
    catalog_entries,
    validate_profiles,
)
from repo_review.pipeline.backend import AnalyzerBackend, EchoBackend, OpenAIChatBackend
from repo_review.pipeline.errors import ConfigurationError, SubjectNotFoundError
from repo_review.pipeline.models import (
    EnqueueOptions,
    JobView,
    QueueEntryView,
    QueueStats,
    SubjectView,
)
from repo_review.pipeline.orchestrator import ReviewOrchestrator
from repo_review.pipeline.progress import LoggingProgressListener, ProgressListener
from repo_review.pipeline.queue import JobQueue
from repo_review.pipeline.worker import ReviewWorker, WorkerPool
from repo_review.pipeline.workspace import (
    Cloner,
    FileEnumerator,
    FilesystemEnumerator,
    GitCloner,
)
from repo_review.storage.repository import ReviewRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RepoCoordinates:
    """Owner and name parsed from a GitHub-style repository URL."""

    owner: str
    name: str


def parse_repo_url(repo_url: str) -> RepoCoordinates:
    """Extract owner/name from `https://host/owner/name(.git)`.

    The owner is the second to last path segment and the name the last one.
    """

    parsed = urlparse(repo_url.strip())
    if parsed.scheme not in {"http", "https", "ssh", "git", "file"} or not parsed.path:
        raise ValueError(f"Unsupported repository URL: {repo_url!r}")
    path = parsed.path.rstrip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    segments = [segment for segment in path.split("/") if segment]
    if len(segments) < 2:  # noqa: PLR2004
        raise ValueError(f"Repository URL must contain owner and name: {repo_url!r}")
    return RepoCoordinates(owner=segments[-2], name=segments[-1])


@dataclass(slots=True)
class JobStatusReport:
    """Job record together with its queue entry."""

    job: JobView
    queue_entry: QueueEntryView | None


class ReviewService:
    """Exposed API: register subjects, enqueue jobs, read status."""

    def __init__(self, *, queue: JobQueue, repository: ReviewRepository) -> None:
        self.queue = queue
        self.repository = repository

    def register_subject(
        self,
        *,
        repo_url: str,
        branch: str = "main",
        subject_id: str | None = None,
    ) -> SubjectView:
        coordinates = parse_repo_url(repo_url)
        subject = self.repository.add_subject(
            repo_url=repo_url.strip(),
            repo_owner=coordinates.owner,
            repo_name=coordinates.name,
            branch=branch,
            subject_id=subject_id,
        )
        logger.info(
            "Registered subject %s: %s/%s@%s",
            subject.subject_id,
            subject.repo_owner,
            subject.repo_name,
            subject.branch,
        )
        return subject

    def enqueue_job(
        self,
        job_id: str,
        subject_id: str,
        options: EnqueueOptions | None = None,
    ) -> JobView:
        """Create the job record and put it on the queue.

        Enqueueing the same job id again updates its waiting queue entry and
        never creates a second record.
        """

        if self.repository.get_subject(subject_id) is None:
            raise SubjectNotFoundError(subject_id)
        job = self.repository.create_job(job_id=job_id, subject_id=subject_id)
        entry = self.queue.enqueue(job_id, {"subject_id": subject_id}, options)
        logger.info(
            "Enqueued job %s for subject %s (priority=%s, max_attempts=%s)",
            job_id,
            subject_id,
            entry.priority,
            entry.max_attempts,
        )
        return job

    def get_queue_stats(self) -> QueueStats:
        return self.queue.stats()

    def get_job_status(self, job_id: str) -> JobStatusReport | None:
        job = self.repository.get_job(job_id)
        if job is None:
            return None
        return JobStatusReport(job=job, queue_entry=self.queue.get(job_id))


@dataclass(slots=True)
class PipelineRuntime:
    """Opened stores plus the analyzer wiring built from settings."""

    settings: Settings
    queue: JobQueue
    repository: ReviewRepository
    orchestrator: ReviewOrchestrator
    service: ReviewService

    def build_worker(  # noqa: PLR0913
        self,
        *,
        worker_id: str | None = None,
        cloner: Cloner | None = None,
        enumerator: FileEnumerator | None = None,
        listeners: Sequence[ProgressListener] | None = None,
        poll_interval_seconds: float | None = None,
    ) -> ReviewWorker:
        worker_settings = self.settings.worker
        discovery = self.settings.discovery
        return ReviewWorker(
            queue=self.queue,
            repository=self.repository,
            orchestrator=self.orchestrator,
            cloner=cloner
            or GitCloner(
                git_binary=discovery.git_binary,
                timeout_seconds=discovery.clone_timeout_seconds,
                workspace_root=discovery.workspace_root,
            ),
            enumerator=enumerator or FilesystemEnumerator(max_file_bytes=discovery.max_file_bytes),
            worker_id=worker_id or worker_settings.worker_id,
            listeners=listeners if listeners is not None else [LoggingProgressListener()],
            poll_interval_seconds=(
                poll_interval_seconds
                if poll_interval_seconds is not None
                else worker_settings.poll_interval_seconds
            ),
            file_concurrency=worker_settings.file_concurrency,
            graceful_shutdown_seconds=worker_settings.graceful_shutdown_seconds,
        )

    def build_pool(self, *, concurrency: int | None = None) -> WorkerPool:
        count = concurrency or self.settings.worker.concurrency
        base_id = self.settings.worker.worker_id
        return WorkerPool(
            [
                self.build_worker(worker_id=base_id if count == 1 else f"{base_id}-{index}")
                for index in range(1, count + 1)
            ],
        )


def build_backend(settings: Settings) -> AnalyzerBackend:
    analyzer = settings.analyzer
    if analyzer.backend == "echo":
        return EchoBackend()
    if analyzer.backend == "openai":
        if not analyzer.api_key:
            logger.warning("Analyzer API key is empty; backend calls will be rejected")
        return OpenAIChatBackend(
            base_url=analyzer.api_base_url,
            api_key=analyzer.api_key,
            timeout_seconds=analyzer.timeout_seconds,
        )
    raise ConfigurationError(f"Unsupported analyzer backend: {analyzer.backend!r}")


@contextmanager
def open_runtime(
    settings: Settings,
    *,
    backend: AnalyzerBackend | None = None,
) -> Iterator[PipelineRuntime]:
    """Open queue and repository, apply migrations and sync the analyzer catalog."""

    settings.validate()
    profiles = build_profiles(model=settings.analyzer.model)
    validate_profiles(profiles)

    repository = ReviewRepository(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    queue = JobQueue(
        settings.db_path,
        settings=settings.queue,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        on_exhausted=repository.fail_abandoned_job,
    )
    try:
        repository.init_schema()
        repository.fail_jobs_with_failed_entries()
        repository.sync_analyzer_catalog(catalog_entries(profiles))
        orchestrator = ReviewOrchestrator(
            build_analyzers(
                backend or build_backend(settings),
                profiles=profiles,
                timeout_seconds=settings.analyzer.timeout_seconds,
                temperature=settings.analyzer.temperature,
                json_response_format=settings.analyzer.json_response_format,
            ),
        )
        yield PipelineRuntime(
            settings=settings,
            queue=queue,
            repository=repository,
            orchestrator=orchestrator,
            service=ReviewService(queue=queue, repository=repository),
        )
    finally:
        queue.close()
        repository.close()
