from __future__ import annotations

import allure
import pytest

from repo_review.pipeline.aggregation import (
    aggregate,
    build_file_report,
    flatten_findings,
    report_to_summary,
    round_half_up,
)
from repo_review.pipeline.analyzers import category_for
from repo_review.pipeline.models import (
    AnalyzerOutcome,
    FailureClass,
    Finding,
    PerFileReport,
    Severity,
    Specialty,
)

pytestmark = [
    allure.epic("Review Pipeline"),
    allure.feature("Aggregation"),
]


def _success(
    specialty: Specialty,
    score: int,
    findings: list[Finding] | None = None,
) -> AnalyzerOutcome:
    return AnalyzerOutcome.success(
        specialty=specialty,
        analyzer_name=specialty.value,
        model="gpt-4o-mini",
        findings=findings or [],
        score=score,
        summary="",
        prompt_tokens=100,
        completion_tokens=20,
        estimated_cost_usd=0.001,
        duration_ms=5,
    )


def _failure(specialty: Specialty) -> AnalyzerOutcome:
    return AnalyzerOutcome.failure(
        specialty=specialty,
        analyzer_name=specialty.value,
        model="gpt-4o-mini",
        error="HTTP 503",
        failure_class=FailureClass.BACKEND_TRANSIENT,
        duration_ms=5,
    )


def _report(path: str, outcomes: list[AnalyzerOutcome]) -> PerFileReport:
    return build_file_report(path=path, language="Python", outcomes=outcomes, duration_ms=10)


@pytest.mark.parametrize(("value", "expected"), [(62.5, 63), (62.4, 62), (0.5, 1), (99.99, 100)])
def test_round_half_up(value: float, expected: int) -> None:
    assert round_half_up(value) == expected


def test_file_report_counts_only_successful_outcomes() -> None:
    finding = Finding(severity=Severity.HIGH, description="Bug", specialty=Specialty.BUG_DETECTION)
    report = _report(
        "a.py",
        [
            _success(Specialty.BUG_DETECTION, 50, [finding]),
            _success(Specialty.STYLE, 75),
            _failure(Specialty.SECURITY),
        ],
    )

    assert report.overall_score == 63
    assert report.issues_by_severity == {"high": 1, "medium": 0, "low": 0}
    assert report.total_tokens == 240
    assert report.estimated_cost_usd == pytest.approx(0.002)
    assert len(report.failed_outcomes) == 1


def test_aggregate_counts_fully_failed_files_as_zero() -> None:
    good = _report("a.py", [_success(Specialty.STYLE, 80)])
    broken = _report("b.py", [_failure(Specialty.STYLE)])

    result = aggregate([good, broken])

    assert result.total_files == 2
    assert broken.overall_score == 0
    assert result.overall_score == 40
    assert result.failed_analyses == 1


def test_aggregate_ignores_files_without_outcomes() -> None:
    good = _report("a.py", [_success(Specialty.STYLE, 80)])
    empty = _report("b.py", [])

    assert aggregate([good, empty]).overall_score == 80


def test_aggregate_of_no_files_is_empty() -> None:
    result = aggregate([])

    assert result.total_files == 0
    assert result.overall_score == 0
    assert result.issues_by_severity == {"high": 0, "medium": 0, "low": 0}


def test_summary_lists_files_and_analyzer_states() -> None:
    summary = report_to_summary(
        aggregate([_report("a.py", [_success(Specialty.STYLE, 80), _failure(Specialty.SECURITY)])]),
    )

    assert summary["total_files"] == 1
    analyzers = summary["files"][0]["analyzers"]
    assert [item["ok"] for item in analyzers] == [True, False]
    assert analyzers[1]["failure_class"] == "backend_transient"


def test_flatten_findings_maps_categories_and_titles() -> None:
    long_description = "First line of the problem\nMore detail"
    report = _report(
        "a.py",
        [
            _success(
                Specialty.BUG_DETECTION,
                40,
                [
                    Finding(
                        severity=Severity.MEDIUM,
                        description=long_description,
                        recommendation="Fix it",
                        line=4,
                        specialty=Specialty.BUG_DETECTION,
                    ),
                ],
            ),
        ],
    )

    rows = flatten_findings(
        job_id="job-1",
        subject_id="s-1",
        reports=[report],
        category_for=category_for,
    )

    assert len(rows) == 1
    row = rows[0]
    assert (row.analyzer_id, row.category, row.severity) == ("bug_detection", "bug", "medium")
    assert row.title == "First line of the problem"
    assert row.description == long_description
    assert row.suggestion == "Fix it"
    assert row.line_number == 4


def test_flatten_findings_reports_unmapped_specialty() -> None:
    untagged = Finding(severity=Severity.LOW, description="Orphan")
    report = _report("a.py", [_success(Specialty.STYLE, 90, [untagged])])
    anomalies: list[tuple[object, str]] = []

    rows = flatten_findings(
        job_id="job-1",
        subject_id="s-1",
        reports=[report],
        category_for=category_for,
        on_unmapped=lambda specialty, path: anomalies.append((specialty, path)),
    )

    assert rows == []
    assert anomalies == [(None, "a.py")]
