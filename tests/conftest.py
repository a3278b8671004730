"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from repo_review.config import QueueSettings
from repo_review.pipeline.analyzers import DEFAULT_PROFILES, catalog_entries
from repo_review.pipeline.queue import JobQueue
from repo_review.storage.repository import ReviewRepository


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch) -> None:
    """Keep developer REPO_REVIEW_* variables out of tests."""
    for name in (
        "REPO_REVIEW_DB_PATH",
        "REPO_REVIEW_ANALYZER_BACKEND",
        "REPO_REVIEW_ANALYZER_API_KEY",
        "REPO_REVIEW_LLM_PRICING",
        "REPO_REVIEW_WORKER_CONCURRENCY",
        "OPENAI_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "review.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[ReviewRepository]:
    repo = ReviewRepository(db_path)
    repo.init_schema()
    repo.sync_analyzer_catalog(catalog_entries(DEFAULT_PROFILES))
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def queue(db_path: Path, repository: ReviewRepository) -> Iterator[JobQueue]:
    job_queue = JobQueue(
        db_path,
        settings=QueueSettings(retry_base_seconds=0.0, retry_max_seconds=0.0),
        on_exhausted=repository.fail_abandoned_job,
    )
    try:
        yield job_queue
    finally:
        job_queue.close()
