from __future__ import annotations

import asyncio
import json
from dataclasses import replace

import allure
import pytest

from fakes import ScriptedBackend
from repo_review.pipeline.analyzers import (
    DEFAULT_PROFILES,
    Analyzer,
    build_analyzers,
    build_user_prompt,
    category_for,
    normalize_severity,
    parse_analysis,
    validate_profiles,
)
from repo_review.pipeline.backend import BackendCallError, CompletionRequest, CompletionResult
from repo_review.pipeline.errors import ConfigurationError, UnmappedSpecialtyError
from repo_review.pipeline.models import Category, FailureClass, Severity, Specialty

pytestmark = [
    allure.epic("Review Pipeline"),
    allure.feature("Analyzers"),
]

SECURITY_PROFILE = next(p for p in DEFAULT_PROFILES if p.specialty == Specialty.SECURITY)


class _SlowBackend:
    async def complete(self, request: CompletionRequest) -> CompletionResult:
        await asyncio.sleep(5)
        return CompletionResult(content="{}")


def test_default_profiles_cover_four_specialties_in_order() -> None:
    assert [profile.specialty for profile in DEFAULT_PROFILES] == [
        Specialty.BUG_DETECTION,
        Specialty.PERFORMANCE,
        Specialty.STYLE,
        Specialty.SECURITY,
    ]
    validate_profiles(DEFAULT_PROFILES)


def test_category_mapping_is_total_and_detects_unknown_input() -> None:
    assert category_for(Specialty.BUG_DETECTION) == Category.BUG
    assert category_for("security") == Category.SECURITY

    with pytest.raises(UnmappedSpecialtyError):
        category_for("documentation")


def test_validate_profiles_rejects_duplicates_and_wrong_category() -> None:
    with pytest.raises(ConfigurationError, match="Duplicate"):
        validate_profiles([SECURITY_PROFILE, SECURITY_PROFILE])
    with pytest.raises(ConfigurationError, match="expected 'security'"):
        validate_profiles([replace(SECURITY_PROFILE, category=Category.STYLE)])
    with pytest.raises(ConfigurationError, match="At least one"):
        validate_profiles([])


def test_user_prompt_embeds_language_and_fenced_code() -> None:
    prompt = build_user_prompt("print('hi')", "Python")

    assert "Analyze the following Python code" in prompt
    assert "```Python\nprint('hi')\n```" in prompt
    assert '"score": <0-100>' in prompt


def test_parse_analysis_normalizes_fields() -> None:
    parsed = parse_analysis(
        json.dumps(
            {
                "issues": [
                    {"severity": "CRITICAL", "line": "7", "description": " Null access "},
                    {"severity": "weird", "line": -1, "description": ""},
                ],
                "summary": "Two problems",
                "score": 62.5,
            },
        ),
    )

    assert parsed.score == 63
    assert parsed.summary == "Two problems"
    assert [finding.severity for finding in parsed.findings] == [Severity.HIGH, Severity.MEDIUM]
    assert [finding.line for finding in parsed.findings] == [7, None]
    assert parsed.findings[0].description == "Null access"
    assert parsed.findings[1].description == "Code issue found"


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[]",
        json.dumps({"issues": []}),
        json.dumps({"issues": [], "score": "90"}),
        json.dumps({"issues": {}, "score": 90}),
    ],
)
def test_parse_analysis_rejects_malformed_answers(raw: str) -> None:
    with pytest.raises(ValueError):
        parse_analysis(raw)


def test_normalize_severity_aliases() -> None:
    assert normalize_severity("info") == Severity.LOW
    assert normalize_severity("High") == Severity.HIGH
    assert normalize_severity(None) == Severity.MEDIUM


@pytest.mark.asyncio
async def test_analyze_returns_success_with_tokens_and_cost() -> None:
    backend = ScriptedBackend(
        answers={
            Specialty.SECURITY: {
                "issues": [{"severity": "high", "line": 3, "description": "Hard-coded key"}],
                "summary": "One issue",
                "score": 140,
            },
        },
        prompt_tokens=600_000,
        completion_tokens=400_000,
    )
    analyzer = Analyzer(SECURITY_PROFILE, backend)

    outcome = await analyzer.analyze("API_KEY = 'x'", "Python")

    assert outcome.ok
    assert outcome.score == 100
    assert outcome.tokens_used == 1_000_000
    assert outcome.estimated_cost_usd == pytest.approx(0.375)
    assert outcome.findings[0].severity == Severity.HIGH
    request = backend.calls[0][1]
    assert request.temperature == 0.3
    assert request.json_response_format


@pytest.mark.asyncio
async def test_analyze_maps_backend_errors_to_failure_classes() -> None:
    backend = ScriptedBackend()
    backend.fail(BackendCallError("HTTP 429: rate limit reached", status_code=429))
    analyzer = Analyzer(SECURITY_PROFILE, backend)

    outcome = await analyzer.analyze("x = 1", "Python")

    assert not outcome.ok
    assert outcome.failure_class == FailureClass.BACKEND_TRANSIENT
    assert outcome.findings == []
    assert outcome.score is None


@pytest.mark.asyncio
async def test_analyze_reports_malformed_json_as_failure() -> None:
    backend = ScriptedBackend(answers={Specialty.SECURITY: "definitely not json"})
    analyzer = Analyzer(SECURITY_PROFILE, backend)

    outcome = await analyzer.analyze("x = 1", "Python")

    assert outcome.failure_class == FailureClass.OUTPUT_INVALID_JSON


@pytest.mark.asyncio
async def test_analyze_times_out() -> None:
    analyzer = Analyzer(SECURITY_PROFILE, _SlowBackend(), timeout_seconds=0.05)

    outcome = await analyzer.analyze("x = 1", "Python")

    assert outcome.failure_class == FailureClass.TIMEOUT
    assert outcome.error is not None and "timed out" in outcome.error


def test_build_analyzers_binds_every_profile() -> None:
    analyzers = build_analyzers(ScriptedBackend(), timeout_seconds=5)

    assert [analyzer.specialty for analyzer in analyzers] == [
        profile.specialty for profile in DEFAULT_PROFILES
    ]
    assert all(analyzer.timeout_seconds == 5 for analyzer in analyzers)
