"""Fan one source file out to every analyzer and join the outcomes."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import replace

from repo_review.pipeline.aggregation import build_file_report
from repo_review.pipeline.analyzers import Analyzer, category_for
from repo_review.pipeline.errors import ConfigurationError, JobAbortedError
from repo_review.pipeline.models import (
    AnalyzerOutcome,
    Category,
    FailureClass,
    PerFileReport,
    Specialty,
)

logger = logging.getLogger(__name__)

CANCEL_POLL_SECONDS = 0.05


class ReviewOrchestrator:
    """Runs all analyzers of one file concurrently and folds their outcomes."""

    def __init__(self, analyzers: list[Analyzer]) -> None:
        if not analyzers:
            raise ConfigurationError("Orchestrator needs at least one analyzer")
        specialties = [analyzer.specialty for analyzer in analyzers]
        if len(set(specialties)) != len(specialties):
            raise ConfigurationError("Orchestrator analyzers must have distinct specialties")
        for specialty in specialties:
            category_for(specialty)
        self.analyzers = analyzers

    @property
    def specialties(self) -> list[Specialty]:
        return [analyzer.specialty for analyzer in self.analyzers]

    def category_for(self, specialty: Specialty) -> Category:
        """Persisted category of a specialty; raises `UnmappedSpecialtyError`."""

        return category_for(specialty)

    async def analyze_file(
        self,
        content: str,
        language: str,
        *,
        path: str = "",
        cancel_event: threading.Event | None = None,
    ) -> PerFileReport:
        """Analyze one file with every analyzer and wait for all of them.

        One analyzer failing never affects the others. When `cancel_event` is
        set, in-flight analyzer tasks are cancelled and `JobAbortedError` is
        raised instead of a partial report.
        """

        started = time.monotonic()
        if cancel_event is not None and cancel_event.is_set():
            raise JobAbortedError(f"Job aborted before analyzing {path or 'file'}")

        tasks = [
            asyncio.create_task(
                analyzer.analyze(content, language),
                name=f"analyze:{analyzer.specialty.value}:{path}",
            )
            for analyzer in self.analyzers
        ]
        try:
            await self._wait_all(tasks, cancel_event=cancel_event, path=path)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        outcomes = [
            self._outcome_of(analyzer, task) for analyzer, task in zip(self.analyzers, tasks)
        ]
        tagged = [_tag_findings(outcome) for outcome in outcomes]
        report = build_file_report(
            path=path,
            language=language,
            outcomes=tagged,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        logger.info(
            "Analyzed %s: score=%s issues=%s failed_analyzers=%s",
            path or "<content>",
            report.overall_score,
            report.total_issues,
            len(report.failed_outcomes),
        )
        return report

    async def _wait_all(
        self,
        tasks: list[asyncio.Task[AnalyzerOutcome]],
        *,
        cancel_event: threading.Event | None,
        path: str,
    ) -> None:
        pending: set[asyncio.Task[AnalyzerOutcome]] = set(tasks)
        while pending:
            _, pending = await asyncio.wait(
                pending,
                timeout=CANCEL_POLL_SECONDS if cancel_event is not None else None,
            )
            if cancel_event is not None and cancel_event.is_set() and pending:
                raise JobAbortedError(f"Job aborted while analyzing {path or 'file'}")

    def _outcome_of(
        self,
        analyzer: Analyzer,
        task: asyncio.Task[AnalyzerOutcome],
    ) -> AnalyzerOutcome:
        error = task.exception()
        if error is None:
            return task.result()
        logger.error("Analyzer %s raised unexpectedly: %s", analyzer.specialty.value, error)
        return AnalyzerOutcome.failure(
            specialty=analyzer.specialty,
            analyzer_name=analyzer.name,
            model=analyzer.profile.model,
            error=f"{type(error).__name__}: {error}",
            failure_class=FailureClass.BACKEND_NON_RETRYABLE,
            duration_ms=0,
        )


def _tag_findings(outcome: AnalyzerOutcome) -> AnalyzerOutcome:
    if not outcome.ok:
        return outcome
    outcome.findings = [
        replace(finding, specialty=outcome.specialty) for finding in outcome.findings
    ]
    return outcome
