"""Job progress milestones and listener hooks."""

from __future__ import annotations

import logging
from typing import Protocol

from repo_review.pipeline.models import JobView

logger = logging.getLogger(__name__)

PROGRESS_METADATA_FETCHED = 10
PROGRESS_CLONED = 30
PROGRESS_ENUMERATED = 40
PROGRESS_ANALYSIS_SPAN = 50
PROGRESS_AGGREGATED = 95
PROGRESS_COMPLETED = 100


def analysis_progress(processed: int, total: int) -> int:
    """Progress after `processed` of `total` files: 40 + floor(processed / total * 50)."""

    if total <= 0:
        return PROGRESS_ENUMERATED + PROGRESS_ANALYSIS_SPAN
    if processed < 0 or processed > total:
        raise ValueError(f"processed ({processed}) must be within 0..{total}")
    return PROGRESS_ENUMERATED + (processed * PROGRESS_ANALYSIS_SPAN) // total


class ProgressListener(Protocol):
    """Receives the job record after every processed file and terminal transition."""

    def job_updated(self, job: JobView) -> None:
        """Handle one job record update."""


class LoggingProgressListener:
    """Logs job progress lines."""

    def job_updated(self, job: JobView) -> None:
        logger.info(
            "Job %s: %s %s%% (%s/%s files)",
            job.job_id,
            job.status.value,
            job.progress,
            job.processed_units,
            job.total_units,
        )


class RecordingProgressListener:
    """Keeps every update in memory; used by smoke runs and tests."""

    def __init__(self) -> None:
        self.updates: list[JobView] = []

    def job_updated(self, job: JobView) -> None:
        self.updates.append(job)
