"""Runtime configuration for the review queue, workers and analyzers."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


@dataclass(slots=True)
class QueueSettings:
    """Durable queue policy."""

    lease_seconds: int = 300
    retry_base_seconds: float = 2.0
    retry_max_seconds: float = 300.0
    default_max_attempts: int = 3
    default_priority: int = 10
    infra_retry_attempts: int = 5
    infra_retry_max_wait_seconds: float = 2.0
    completed_retention_days: int = 7
    failed_retention_days: int = 30


@dataclass(slots=True)
class WorkerSettings:
    """Worker loop settings."""

    worker_id: str = field(default_factory=lambda: f"{socket.gethostname()}-{os.getpid()}")
    concurrency: int = 1
    poll_interval_seconds: float = 2.0
    file_concurrency: int = 1
    graceful_shutdown_seconds: int = 30


@dataclass(slots=True)
class AnalyzerSettings:
    """Analyzer backend settings."""

    backend: str = "openai"
    api_base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    timeout_seconds: float = 120.0
    temperature: float = 0.3
    json_response_format: bool = True


@dataclass(slots=True)
class DiscoverySettings:
    """Clone and file discovery settings."""

    max_file_bytes: int = 100 * 1024
    clone_timeout_seconds: float = 300.0
    workspace_root: Path | None = None
    git_binary: str = "git"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".repo_review.db")
    sqlite_busy_timeout_ms: int = 5_000
    queue: QueueSettings = field(default_factory=QueueSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    analyzer: AnalyzerSettings = field(default_factory=AnalyzerSettings)
    discovery: DiscoverySettings = field(default_factory=DiscoverySettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        workspace_root = os.getenv("REPO_REVIEW_WORKSPACE_ROOT", "").strip()
        worker_id = os.getenv("REPO_REVIEW_WORKER_ID", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("REPO_REVIEW_DB_PATH", ".repo_review.db")),
            sqlite_busy_timeout_ms=int(os.getenv("REPO_REVIEW_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            queue=QueueSettings(
                lease_seconds=int(os.getenv("REPO_REVIEW_QUEUE_LEASE_SECONDS", "300")),
                retry_base_seconds=float(
                    os.getenv("REPO_REVIEW_QUEUE_RETRY_BASE_SECONDS", "2.0"),
                ),
                retry_max_seconds=float(
                    os.getenv("REPO_REVIEW_QUEUE_RETRY_MAX_SECONDS", "300"),
                ),
                default_max_attempts=int(os.getenv("REPO_REVIEW_QUEUE_MAX_ATTEMPTS", "3")),
                default_priority=int(os.getenv("REPO_REVIEW_QUEUE_DEFAULT_PRIORITY", "10")),
                infra_retry_attempts=int(
                    os.getenv("REPO_REVIEW_QUEUE_INFRA_RETRY_ATTEMPTS", "5"),
                ),
                infra_retry_max_wait_seconds=float(
                    os.getenv("REPO_REVIEW_QUEUE_INFRA_RETRY_MAX_WAIT_SECONDS", "2.0"),
                ),
                completed_retention_days=int(
                    os.getenv("REPO_REVIEW_QUEUE_COMPLETED_RETENTION_DAYS", "7"),
                ),
                failed_retention_days=int(
                    os.getenv("REPO_REVIEW_QUEUE_FAILED_RETENTION_DAYS", "30"),
                ),
            ),
            worker=WorkerSettings(
                worker_id=worker_id or f"{socket.gethostname()}-{os.getpid()}",
                concurrency=int(os.getenv("REPO_REVIEW_WORKER_CONCURRENCY", "1")),
                poll_interval_seconds=float(
                    os.getenv("REPO_REVIEW_WORKER_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                file_concurrency=int(os.getenv("REPO_REVIEW_WORKER_FILE_CONCURRENCY", "1")),
                graceful_shutdown_seconds=int(
                    os.getenv("REPO_REVIEW_WORKER_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
            ),
            analyzer=AnalyzerSettings(
                backend=os.getenv("REPO_REVIEW_ANALYZER_BACKEND", "openai").strip().lower(),
                api_base_url=os.getenv(
                    "REPO_REVIEW_ANALYZER_API_BASE_URL",
                    "https://api.openai.com/v1",
                ),
                api_key=os.getenv("REPO_REVIEW_ANALYZER_API_KEY", os.getenv("OPENAI_API_KEY", "")),
                model=os.getenv("REPO_REVIEW_ANALYZER_MODEL", "gpt-4o-mini"),
                timeout_seconds=float(os.getenv("REPO_REVIEW_ANALYZER_TIMEOUT_SECONDS", "120")),
                temperature=float(os.getenv("REPO_REVIEW_ANALYZER_TEMPERATURE", "0.3")),
                json_response_format=_env_bool(
                    "REPO_REVIEW_ANALYZER_JSON_RESPONSE_FORMAT",
                    default=True,
                ),
            ),
            discovery=DiscoverySettings(
                max_file_bytes=int(os.getenv("REPO_REVIEW_MAX_FILE_BYTES", str(100 * 1024))),
                clone_timeout_seconds=float(
                    os.getenv("REPO_REVIEW_CLONE_TIMEOUT_SECONDS", "300"),
                ),
                workspace_root=Path(workspace_root) if workspace_root else None,
                git_binary=os.getenv("REPO_REVIEW_GIT_BINARY", "git"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("REPO_REVIEW_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.queue.lease_seconds <= 0:
            raise ValueError("REPO_REVIEW_QUEUE_LEASE_SECONDS must be > 0.")
        if self.queue.retry_base_seconds <= 0:
            raise ValueError("REPO_REVIEW_QUEUE_RETRY_BASE_SECONDS must be > 0.")
        if self.queue.retry_max_seconds < self.queue.retry_base_seconds:
            raise ValueError(
                "REPO_REVIEW_QUEUE_RETRY_MAX_SECONDS must be >= REPO_REVIEW_QUEUE_RETRY_BASE_SECONDS.",
            )
        if self.queue.default_max_attempts < 1:
            raise ValueError("REPO_REVIEW_QUEUE_MAX_ATTEMPTS must be >= 1.")
        if self.queue.infra_retry_attempts < 1:
            raise ValueError("REPO_REVIEW_QUEUE_INFRA_RETRY_ATTEMPTS must be >= 1.")
        if self.queue.completed_retention_days < 0 or self.queue.failed_retention_days < 0:
            raise ValueError("Queue retention days must be >= 0.")
        if self.worker.concurrency < 1:
            raise ValueError("REPO_REVIEW_WORKER_CONCURRENCY must be >= 1.")
        if self.worker.file_concurrency < 1:
            raise ValueError("REPO_REVIEW_WORKER_FILE_CONCURRENCY must be >= 1.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("REPO_REVIEW_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.analyzer.backend not in {"openai", "echo"}:
            raise ValueError(
                f"Unsupported REPO_REVIEW_ANALYZER_BACKEND: {self.analyzer.backend!r}. "
                "Expected 'openai' or 'echo'.",
            )
        if self.analyzer.timeout_seconds <= 0:
            raise ValueError("REPO_REVIEW_ANALYZER_TIMEOUT_SECONDS must be > 0.")
        if not 0.0 <= self.analyzer.temperature <= 2.0:
            raise ValueError("REPO_REVIEW_ANALYZER_TEMPERATURE must be within [0, 2].")
        if self.analyzer.backend == "openai":
            _validate_base_url(self.analyzer.api_base_url)
        if self.discovery.max_file_bytes <= 0:
            raise ValueError("REPO_REVIEW_MAX_FILE_BYTES must be > 0.")
        if self.discovery.clone_timeout_seconds <= 0:
            raise ValueError("REPO_REVIEW_CLONE_TIMEOUT_SECONDS must be > 0.")


def _validate_base_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid analyzer API base URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
