"""Per-file fan-in, cross-file aggregation and finding flattening."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterable
from typing import Any

from repo_review.pipeline.errors import UnmappedSpecialtyError
from repo_review.pipeline.models import (
    AggregateReport,
    AnalyzerOutcome,
    Finding,
    FindingRow,
    PerFileReport,
    Severity,
    Specialty,
)

logger = logging.getLogger(__name__)

FINDING_TITLE_MAX_CHARS = 120

UnmappedHook = Callable[[object, str], None]


def round_half_up(value: float) -> int:
    """Round to the nearest integer with .5 going up (62.5 -> 63)."""

    return int(math.floor(value + 0.5))


def empty_severity_counts() -> dict[str, int]:
    return {severity.value: 0 for severity in Severity}


def build_file_report(
    *,
    path: str,
    language: str,
    outcomes: list[AnalyzerOutcome],
    duration_ms: int,
) -> PerFileReport:
    """Fold analyzer outcomes of one file; only successful outcomes count."""

    succeeded = [outcome for outcome in outcomes if outcome.ok]
    counts = empty_severity_counts()
    findings: list[Finding] = []
    for outcome in succeeded:
        for finding in outcome.findings:
            counts[finding.severity.value] += 1
            findings.append(finding)

    scores = [outcome.score for outcome in succeeded if outcome.score is not None]
    overall = round_half_up(sum(scores) / len(scores)) if scores else 0
    return PerFileReport(
        path=path,
        language=language,
        outcomes=outcomes,
        overall_score=overall,
        issues_by_severity=counts,
        all_findings=findings,
        total_tokens=sum(outcome.tokens_used for outcome in succeeded),
        estimated_cost_usd=sum(outcome.estimated_cost_usd for outcome in succeeded),
        duration_ms=duration_ms,
    )


def aggregate(reports: list[PerFileReport]) -> AggregateReport:
    """Combine per-file reports into the job-level summary.

    The overall score is the mean over files that produced any outcome; a file
    whose analyzers all failed contributes its score of 0.
    """

    counts = empty_severity_counts()
    for report in reports:
        for severity, count in report.issues_by_severity.items():
            counts[severity] = counts.get(severity, 0) + count

    scored = [report.overall_score for report in reports if report.outcomes]
    return AggregateReport(
        total_files=len(reports),
        total_issues=sum(report.total_issues for report in reports),
        overall_score=round_half_up(sum(scored) / len(scored)) if scored else 0,
        issues_by_severity=counts,
        total_tokens=sum(report.total_tokens for report in reports),
        estimated_cost_usd=sum(report.estimated_cost_usd for report in reports),
        per_file_reports=reports,
        failed_analyses=sum(len(report.failed_outcomes) for report in reports),
    )


def report_to_summary(report: AggregateReport) -> dict[str, Any]:
    """JSON-ready representation of an aggregate report."""

    return {
        "total_files": report.total_files,
        "total_issues": report.total_issues,
        "overall_score": report.overall_score,
        "issues_by_severity": dict(report.issues_by_severity),
        "total_tokens": report.total_tokens,
        "estimated_cost_usd": round(report.estimated_cost_usd, 6),
        "failed_analyses": report.failed_analyses,
        "files": [
            {
                "path": file_report.path,
                "language": file_report.language,
                "overall_score": file_report.overall_score,
                "total_issues": file_report.total_issues,
                "issues_by_severity": dict(file_report.issues_by_severity),
                "total_tokens": file_report.total_tokens,
                "duration_ms": file_report.duration_ms,
                "analyzers": [_outcome_summary(outcome) for outcome in file_report.outcomes],
            }
            for file_report in report.per_file_reports
        ],
    }


def _outcome_summary(outcome: AnalyzerOutcome) -> dict[str, Any]:
    if not outcome.ok:
        return {
            "specialty": outcome.specialty.value,
            "ok": False,
            "error": outcome.error,
            "failure_class": outcome.failure_class.value if outcome.failure_class else None,
        }
    return {
        "specialty": outcome.specialty.value,
        "ok": True,
        "score": outcome.score,
        "summary": outcome.summary,
        "issues": len(outcome.findings),
        "tokens_used": outcome.tokens_used,
        "duration_ms": outcome.duration_ms,
    }


def flatten_findings(
    *,
    job_id: str,
    subject_id: str,
    reports: Iterable[PerFileReport],
    category_for: Callable[[Specialty], Any],
    on_unmapped: UnmappedHook | None = None,
) -> list[FindingRow]:
    """Turn per-file findings into persistence rows.

    Findings whose specialty has no category are skipped and reported through
    `on_unmapped`; they never get a silent default category.
    """

    rows: list[FindingRow] = []
    for report in reports:
        for finding in report.all_findings:
            specialty = finding.specialty
            try:
                if specialty is None:
                    raise UnmappedSpecialtyError(None)
                category = category_for(specialty)
            except UnmappedSpecialtyError:
                logger.error(
                    "Skipping finding in %s: unmapped analyzer specialty %r",
                    report.path,
                    specialty,
                )
                if on_unmapped is not None:
                    on_unmapped(specialty, report.path)
                continue
            rows.append(
                FindingRow(
                    job_id=job_id,
                    subject_id=subject_id,
                    analyzer_id=Specialty(specialty).value,
                    file_path=report.path,
                    line_number=finding.line,
                    severity=finding.severity.value,
                    category=category.value,
                    title=_finding_title(finding.description),
                    description=finding.description,
                    suggestion=finding.recommendation or None,
                ),
            )
    return rows


def _finding_title(description: str) -> str:
    first_line = description.strip().splitlines()[0] if description.strip() else ""
    if not first_line:
        return "Code issue found"
    if len(first_line) <= FINDING_TITLE_MAX_CHARS:
        return first_line
    return first_line[: FINDING_TITLE_MAX_CHARS - 3].rstrip() + "..."
