"""Domain models for the review queue, worker and analyzers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Caller-visible review job lifecycle."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueState(str, Enum):
    """Durable queue entry states."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class SubjectStatus(str, Enum):
    """Repository subject lifecycle, mirrored from the latest job."""

    PENDING = "pending"
    CLONING = "cloning"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


class Severity(str, Enum):
    """Analyzer finding severity."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Specialty(str, Enum):
    """Analyzer specialties; the value doubles as analyzer catalog id."""

    BUG_DETECTION = "bug_detection"
    SECURITY = "security"
    PERFORMANCE = "performance"
    STYLE = "style"


class Category(str, Enum):
    """Persisted finding category."""

    BUG = "bug"
    SECURITY = "security"
    PERFORMANCE = "performance"
    STYLE = "style"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TIMEOUT = "timeout"
    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    OUTPUT_INVALID_JSON = "output_invalid_json"

    @property
    def is_transient(self) -> bool:
        return self in {FailureClass.TIMEOUT, FailureClass.BACKEND_TRANSIENT}


@dataclass(slots=True)
class Finding:
    """One issue reported by an analyzer."""

    severity: Severity
    description: str
    recommendation: str = ""
    line: int | None = None
    specialty: Specialty | None = None


@dataclass(slots=True)
class AnalyzerOutcome:
    """Result of one analyzer call: success with findings or failure with error."""

    specialty: Specialty
    analyzer_name: str
    model: str
    findings: list[Finding] = field(default_factory=list)
    score: int | None = None
    summary: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    tokens_used: int = 0
    estimated_cost_usd: float = 0.0
    duration_ms: int = 0
    error: str | None = None
    failure_class: FailureClass | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(  # noqa: PLR0913
        cls,
        *,
        specialty: Specialty,
        analyzer_name: str,
        model: str,
        findings: list[Finding],
        score: int,
        summary: str,
        prompt_tokens: int,
        completion_tokens: int,
        estimated_cost_usd: float,
        duration_ms: int,
    ) -> AnalyzerOutcome:
        """Build a successful outcome; score is clamped into 0..100."""

        return cls(
            specialty=specialty,
            analyzer_name=analyzer_name,
            model=model,
            findings=findings,
            score=max(0, min(100, score)),
            summary=summary,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            tokens_used=prompt_tokens + completion_tokens,
            estimated_cost_usd=estimated_cost_usd,
            duration_ms=duration_ms,
        )

    @classmethod
    def failure(  # noqa: PLR0913
        cls,
        *,
        specialty: Specialty,
        analyzer_name: str,
        model: str,
        error: str,
        failure_class: FailureClass,
        duration_ms: int,
    ) -> AnalyzerOutcome:
        """Build a failed outcome; never carries findings or score."""

        return cls(
            specialty=specialty,
            analyzer_name=analyzer_name,
            model=model,
            error=error or "unknown analyzer failure",
            failure_class=failure_class,
            duration_ms=duration_ms,
        )


@dataclass(slots=True)
class PerFileReport:
    """Fan-in result for one source file."""

    path: str
    language: str
    outcomes: list[AnalyzerOutcome]
    overall_score: int
    issues_by_severity: dict[str, int]
    all_findings: list[Finding]
    total_tokens: int
    estimated_cost_usd: float
    duration_ms: int

    @property
    def succeeded_outcomes(self) -> list[AnalyzerOutcome]:
        return [outcome for outcome in self.outcomes if outcome.ok]

    @property
    def failed_outcomes(self) -> list[AnalyzerOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]

    @property
    def total_issues(self) -> int:
        return len(self.all_findings)


@dataclass(slots=True)
class AggregateReport:
    """Cross-file summary persisted once per completed job."""

    total_files: int
    total_issues: int
    overall_score: int
    issues_by_severity: dict[str, int]
    total_tokens: int
    estimated_cost_usd: float
    per_file_reports: list[PerFileReport]
    failed_analyses: int


@dataclass(slots=True)
class SubjectView:
    """Repository registered for review."""

    subject_id: str
    repo_url: str
    repo_owner: str
    repo_name: str
    branch: str
    status: SubjectStatus
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobView:
    """Caller-visible job record."""

    job_id: str
    subject_id: str
    status: JobStatus
    progress: int
    total_units: int
    processed_units: int
    attempts_made: int
    error_message: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime


@dataclass(slots=True)
class JobUpdate:
    """Partial job record update; None fields are left unchanged."""

    status: JobStatus | None = None
    progress: int | None = None
    total_units: int | None = None
    processed_units: int | None = None
    attempts_made: int | None = None
    error_message: str | None = None
    clear_error: bool = False
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class EnqueueOptions:
    """Per-job queue options."""

    priority: int = 10
    delay_seconds: float = 0.0
    max_attempts: int = 3


@dataclass(slots=True)
class QueueEntryView:
    """Readable queue entry for CLI and worker logic."""

    job_id: str
    payload: dict[str, Any]
    priority: int
    state: QueueState
    attempts_made: int
    max_attempts: int
    run_after: datetime
    lease_token: str | None
    lease_expires_at: datetime | None
    worker_id: str | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None


@dataclass(slots=True)
class QueueEventView:
    """Queue event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    state_from: QueueState | None
    state_to: QueueState | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class QueueStats:
    """Point-in-time queue counters; `waiting` excludes delayed entries."""

    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    total: int


@dataclass(slots=True)
class QueueCleanupResult:
    """Rows removed by retention cleanup."""

    completed_removed: int
    failed_removed: int


@dataclass(slots=True)
class Lease:
    """Exclusive, time-bounded claim on one queue entry."""

    job_id: str
    lease_token: str
    worker_id: str
    payload: dict[str, Any]
    attempts_made: int
    max_attempts: int
    lease_expires_at: datetime


@dataclass(slots=True)
class RetryDecision:
    """What the queue did with a failed attempt."""

    will_retry: bool
    attempts_made: int
    max_attempts: int
    delay_seconds: float | None = None
    run_after: datetime | None = None
    lease_lost: bool = False


@dataclass(slots=True)
class FindingRow:
    """Flattened finding ready for persistence."""

    job_id: str
    subject_id: str
    analyzer_id: str
    file_path: str
    line_number: int | None
    severity: str
    category: str
    title: str
    description: str
    suggestion: str | None


@dataclass(slots=True)
class StoredReport:
    """Persisted aggregate report of one completed job."""

    job_id: str
    subject_id: str
    overall_score: int
    total_issues: int
    total_tokens: int
    estimated_cost_usd: float
    results: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class AnalyzerCatalogEntry:
    """Persisted analyzer identity referenced by finding rows."""

    analyzer_id: str
    category: str
    display_name: str
    model: str
