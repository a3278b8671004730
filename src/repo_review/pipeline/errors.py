"""Exception hierarchy for the review pipeline."""

from __future__ import annotations

from repo_review.pipeline.models import FailureClass


class ReviewPipelineError(RuntimeError):
    """Base error; `retryable` tells the worker whether the queue may retry the job."""

    retryable: bool = False

    def __init__(self, message: str, *, retryable: bool | None = None) -> None:
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class ConfigurationError(ReviewPipelineError):
    """Invalid static configuration detected at startup."""


class SubjectNotFoundError(ReviewPipelineError):
    """The job references a subject that does not exist."""

    def __init__(self, subject_id: str) -> None:
        super().__init__(f"Subject not found: {subject_id}", retryable=False)
        self.subject_id = subject_id


class CloneError(ReviewPipelineError):
    """Repository clone failed."""

    def __init__(
        self,
        message: str,
        *,
        failure_class: FailureClass = FailureClass.BACKEND_NON_RETRYABLE,
    ) -> None:
        super().__init__(message, retryable=failure_class.is_transient)
        self.failure_class = failure_class


class AnalyzerBackendUnavailableError(ReviewPipelineError):
    """No analyzer call succeeded for a job that had files to analyze."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message, retryable=transient)


class ReportPersistenceError(ReviewPipelineError):
    """Aggregate report could not be written."""

    retryable = False


class JobAbortedError(ReviewPipelineError):
    """Job processing was cancelled before completion."""

    retryable = True


class LeaseLostError(ReviewPipelineError):
    """Lease expired or was taken over; the holder must stop writing."""


class InvalidTransitionError(ReviewPipelineError):
    """Pipeline stage transition outside the allowed table."""


class UnmappedSpecialtyError(ReviewPipelineError):
    """Analyzer specialty has no persisted category."""

    def __init__(self, specialty: object) -> None:
        super().__init__(f"No category mapped for analyzer specialty: {specialty!r}")
        self.specialty = specialty
