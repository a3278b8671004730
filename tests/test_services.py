from __future__ import annotations

from pathlib import Path

import allure
import pytest

from fakes import DirectoryCloner
from repo_review.config import AnalyzerSettings, Settings
from repo_review.pipeline.backend import EchoBackend, OpenAIChatBackend
from repo_review.pipeline.errors import ConfigurationError, SubjectNotFoundError
from repo_review.pipeline.models import (
    EnqueueOptions,
    JobStatus,
    JobUpdate,
    QueueState,
    SubjectStatus,
)
from repo_review.pipeline.progress import RecordingProgressListener
from repo_review.pipeline.queue import JobQueue
from repo_review.pipeline.services import (
    ReviewService,
    build_backend,
    open_runtime,
    parse_repo_url,
)
from repo_review.storage.repository import ReviewRepository

pytestmark = [
    allure.epic("Review Pipeline"),
    allure.feature("Service API"),
]


@pytest.mark.parametrize(
    ("url", "owner", "name"),
    [
        ("https://github.com/acme/widgets", "acme", "widgets"),
        ("https://github.com/acme/widgets.git", "acme", "widgets"),
        ("https://github.com/acme/widgets/", "acme", "widgets"),
        ("ssh://git@github.com/acme/widgets.git", "acme", "widgets"),
        ("https://gitlab.example.com/group/sub/tools", "sub", "tools"),
    ],
)
def test_parse_repo_url(url: str, owner: str, name: str) -> None:
    coordinates = parse_repo_url(url)

    assert (coordinates.owner, coordinates.name) == (owner, name)


@pytest.mark.parametrize(
    "url",
    ["github.com/acme/widgets", "https://github.com/acme", "ftp://host/a/b", ""],
)
def test_parse_repo_url_rejects_unusable_urls(url: str) -> None:
    with pytest.raises(ValueError):
        parse_repo_url(url)


def test_enqueue_for_unknown_subject_is_rejected(
    repository: ReviewRepository,
    queue: JobQueue,
) -> None:
    service = ReviewService(queue=queue, repository=repository)

    with pytest.raises(SubjectNotFoundError, match="ghost"):
        service.enqueue_job("job-1", "ghost")

    assert repository.get_job("job-1") is None
    assert queue.get("job-1") is None


def test_enqueue_twice_keeps_one_record_and_updates_priority(
    repository: ReviewRepository,
    queue: JobQueue,
) -> None:
    service = ReviewService(queue=queue, repository=repository)
    subject = service.register_subject(repo_url="https://github.com/acme/widgets", branch="dev")

    first = service.enqueue_job("job-1", subject.subject_id)
    second = service.enqueue_job(
        "job-1",
        subject.subject_id,
        EnqueueOptions(priority=1, max_attempts=5),
    )

    assert first.job_id == second.job_id == "job-1"
    assert first.status == JobStatus.QUEUED
    assert len(repository.list_jobs()) == 1
    entry = queue.get("job-1")
    assert entry is not None
    assert (entry.priority, entry.max_attempts) == (1, 5)
    assert entry.payload == {"subject_id": subject.subject_id}
    assert service.get_queue_stats().waiting == 1


def test_job_status_joins_record_and_queue_entry(
    repository: ReviewRepository,
    queue: JobQueue,
) -> None:
    service = ReviewService(queue=queue, repository=repository)
    subject = service.register_subject(repo_url="https://github.com/acme/widgets")
    service.enqueue_job("job-1", subject.subject_id)

    report = service.get_job_status("job-1")

    assert report is not None
    assert report.job.subject_id == subject.subject_id
    assert report.queue_entry is not None
    assert report.queue_entry.state == QueueState.WAITING
    assert service.get_job_status("missing") is None


def test_build_backend_selects_implementation() -> None:
    echo = build_backend(Settings(analyzer=AnalyzerSettings(backend="echo")))
    assert isinstance(echo, EchoBackend)
    assert isinstance(build_backend(Settings()), OpenAIChatBackend)
    with pytest.raises(ConfigurationError):
        build_backend(Settings(analyzer=AnalyzerSettings(backend="other")))


def test_open_runtime_rejects_invalid_settings(tmp_path: Path) -> None:
    settings = Settings(db_path=tmp_path / "bad.db", analyzer=AnalyzerSettings(backend="nope"))

    with pytest.raises(ValueError, match="Unsupported"):
        with open_runtime(settings):
            pass


def test_runtime_reviews_repository_end_to_end(tmp_path: Path) -> None:
    settings = Settings(db_path=tmp_path / "e2e.db", analyzer=AnalyzerSettings(backend="echo"))
    files = {
        "src/app.py": "def run(x):\n    return eval(x)  # TODO tighten\n",
        "web/index.js": "const password = 'hunter2';\n",
        "README.md": "docs only\n",
    }
    listener = RecordingProgressListener()

    with open_runtime(settings) as runtime:
        subject = runtime.service.register_subject(repo_url="https://github.com/acme/widgets")
        runtime.service.enqueue_job("job-e2e", subject.subject_id)
        worker = runtime.build_worker(
            worker_id="e2e",
            cloner=DirectoryCloner(tmp_path / "clones", files),
            listeners=[listener],
            poll_interval_seconds=0.0,
        )

        summary = worker.run_loop(max_idle_polls=1, install_signal_handlers=False)

        assert (summary.processed, summary.succeeded) == (1, 1)
        status = runtime.service.get_job_status("job-e2e")
        assert status is not None
        assert status.job.status == JobStatus.COMPLETED
        assert (status.job.processed_units, status.job.total_units) == (2, 2)
        assert status.queue_entry is not None
        assert status.queue_entry.state == QueueState.COMPLETED
        report = runtime.repository.get_aggregate("job-e2e")
        assert report is not None
        assert report.results["total_files"] == 2
        # two markers in app.py and one in index.js, reported by each of four analyzers
        assert report.total_issues == 12
        findings = runtime.repository.list_findings("job-e2e")
        assert len(findings) == 12
        assert {row.category for row in findings} == {"bug", "performance", "style", "security"}
        analyzers = runtime.repository.list_analyzers()
        assert [entry.analyzer_id for entry in analyzers] == [
            "bug_detection",
            "performance",
            "security",
            "style",
        ]
        assert listener.updates[-1].progress == 100


def test_runtime_accepts_backend_override(tmp_path: Path) -> None:
    settings = Settings(db_path=tmp_path / "override.db")
    backend = EchoBackend()

    with open_runtime(settings, backend=backend) as runtime:
        analyzers = runtime.orchestrator.analyzers

    assert all(analyzer.backend is backend for analyzer in analyzers)


def test_open_runtime_fails_jobs_left_open_after_their_entry_failed(tmp_path: Path) -> None:
    settings = Settings(db_path=tmp_path / "stale.db", analyzer=AnalyzerSettings(backend="echo"))

    with open_runtime(settings) as runtime:
        subject = runtime.service.register_subject(repo_url="https://github.com/acme/widgets")
        runtime.service.enqueue_job("job-stale", subject.subject_id, EnqueueOptions(max_attempts=1))
        lease = runtime.queue.lease(worker_id="crashed")
        assert lease is not None
        runtime.repository.update_job("job-stale", JobUpdate(status=JobStatus.PROCESSING))
        runtime.queue.fail_retry(lease.lease_token, "Clone failed (exit 128)", retryable=False)
        stale = runtime.repository.get_job("job-stale")
        assert stale is not None and stale.status == JobStatus.PROCESSING

    with open_runtime(settings) as runtime:
        job = runtime.repository.get_job("job-stale")
        reloaded = runtime.repository.get_subject(subject.subject_id)

    assert job is not None and job.status == JobStatus.FAILED
    assert job.error_message == "Clone failed (exit 128)"
    assert reloaded is not None and reloaded.status == SubjectStatus.FAILED
