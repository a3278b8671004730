from __future__ import annotations

import asyncio
import threading

import allure
import pytest

from fakes import ScriptedBackend
from repo_review.pipeline.analyzers import DEFAULT_PROFILES, Analyzer, build_analyzers
from repo_review.pipeline.backend import BackendCallError, CompletionRequest, CompletionResult
from repo_review.pipeline.errors import ConfigurationError, JobAbortedError
from repo_review.pipeline.models import Specialty
from repo_review.pipeline.orchestrator import ReviewOrchestrator

pytestmark = [
    allure.epic("Review Pipeline"),
    allure.feature("Fan-out / Fan-in"),
]


class _BlockingBackend:
    def __init__(self) -> None:
        self.started = 0
        self.cancelled = 0

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        self.started += 1
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        return CompletionResult(content="{}")


def _answers() -> dict[Specialty, dict[str, object]]:
    return {
        Specialty.BUG_DETECTION: {
            "issues": [
                {"severity": "high", "line": 2, "description": "Division by zero"},
                {"severity": "low", "line": 5, "description": "Unused branch"},
            ],
            "summary": "Bugs",
            "score": 60,
        },
        Specialty.STYLE: {
            "issues": [{"severity": "low", "line": 1, "description": "Naming"}],
            "summary": "Style",
            "score": 90,
        },
        Specialty.PERFORMANCE: {"issues": [], "summary": "Fast", "score": 85},
        Specialty.SECURITY: {"issues": [], "summary": "Safe", "score": 70},
    }


def test_orchestrator_rejects_empty_or_duplicate_analyzers() -> None:
    backend = ScriptedBackend()
    with pytest.raises(ConfigurationError):
        ReviewOrchestrator([])
    analyzer = Analyzer(DEFAULT_PROFILES[0], backend)
    with pytest.raises(ConfigurationError, match="distinct"):
        ReviewOrchestrator([analyzer, analyzer])


@pytest.mark.asyncio
async def test_all_analyzers_succeed_and_findings_are_tagged() -> None:
    orchestrator = ReviewOrchestrator(build_analyzers(ScriptedBackend(answers=_answers())))

    report = await orchestrator.analyze_file("code", "Python", path="app/main.py")

    assert len(report.outcomes) == 4
    assert report.failed_outcomes == []
    assert report.overall_score == 76
    assert report.issues_by_severity == {"high": 1, "medium": 0, "low": 2}
    assert report.total_issues == 3
    assert report.total_tokens == 4 * 150
    assert {finding.specialty for finding in report.all_findings} == {
        Specialty.BUG_DETECTION,
        Specialty.STYLE,
    }


@pytest.mark.asyncio
async def test_failed_analyzers_are_isolated_and_excluded_from_score() -> None:
    backend = ScriptedBackend(answers=_answers())
    backend.fail(BackendCallError("HTTP 503: service unavailable"), specialty=Specialty.SECURITY)
    backend.fail(BackendCallError("HTTP 400: bad request"), specialty=Specialty.STYLE)
    orchestrator = ReviewOrchestrator(build_analyzers(backend))

    report = await orchestrator.analyze_file("code", "Python", path="app/main.py")

    assert len(report.outcomes) == 4
    assert {outcome.specialty for outcome in report.failed_outcomes} == {
        Specialty.SECURITY,
        Specialty.STYLE,
    }
    assert report.overall_score == 73
    assert report.total_issues == 2
    assert report.total_tokens == 2 * 150


@pytest.mark.asyncio
async def test_all_analyzers_failing_yields_zero_score() -> None:
    backend = ScriptedBackend()
    backend.fail(BackendCallError("HTTP 401: invalid api key"))
    orchestrator = ReviewOrchestrator(build_analyzers(backend))

    report = await orchestrator.analyze_file("code", "Python")

    assert len(report.failed_outcomes) == 4
    assert report.overall_score == 0
    assert report.all_findings == []


@pytest.mark.asyncio
async def test_analyzers_run_concurrently() -> None:
    backend = ScriptedBackend()
    in_flight = 0
    peak = 0

    class _Tracking:
        async def complete(self, request: CompletionRequest) -> CompletionResult:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return await backend.complete(request)

    orchestrator = ReviewOrchestrator(build_analyzers(_Tracking()))

    await orchestrator.analyze_file("code", "Python")

    assert peak == 4


@pytest.mark.asyncio
async def test_cancel_event_aborts_in_flight_analyzers() -> None:
    backend = _BlockingBackend()
    orchestrator = ReviewOrchestrator(build_analyzers(backend, timeout_seconds=60))
    cancel_event = threading.Event()

    async def _cancel_soon() -> None:
        await asyncio.sleep(0.1)
        cancel_event.set()

    canceller = asyncio.create_task(_cancel_soon())
    with pytest.raises(JobAbortedError):
        await orchestrator.analyze_file("code", "Python", cancel_event=cancel_event)
    await canceller

    assert backend.started == 4
    assert backend.cancelled == 4


@pytest.mark.asyncio
async def test_preset_cancel_event_skips_analysis() -> None:
    backend = ScriptedBackend()
    orchestrator = ReviewOrchestrator(build_analyzers(backend))
    cancel_event = threading.Event()
    cancel_event.set()

    with pytest.raises(JobAbortedError):
        await orchestrator.analyze_file("code", "Python", cancel_event=cancel_event)
    assert backend.calls == []
