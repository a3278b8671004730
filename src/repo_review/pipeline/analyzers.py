"""Analyzer profiles, prompts and the generic LLM-backed analyzer."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, replace
from typing import Any

import httpx

from repo_review.pipeline.aggregation import round_half_up
from repo_review.pipeline.backend.base import (
    AnalyzerBackend,
    BackendCallError,
    CompletionRequest,
)
from repo_review.pipeline.errors import ConfigurationError, UnmappedSpecialtyError
from repo_review.pipeline.failure_classifier import classify_failure, classify_timeout
from repo_review.pipeline.models import (
    AnalyzerCatalogEntry,
    AnalyzerOutcome,
    Category,
    FailureClass,
    Finding,
    Severity,
    Specialty,
)
from repo_review.pipeline.pricing import estimate_cost_usd

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"

SPECIALTY_CATEGORIES: dict[Specialty, Category] = {
    Specialty.BUG_DETECTION: Category.BUG,
    Specialty.SECURITY: Category.SECURITY,
    Specialty.PERFORMANCE: Category.PERFORMANCE,
    Specialty.STYLE: Category.STYLE,
}

_SEVERITY_ALIASES: dict[str, Severity] = {
    "high": Severity.HIGH,
    "critical": Severity.HIGH,
    "medium": Severity.MEDIUM,
    "low": Severity.LOW,
    "info": Severity.LOW,
}


@dataclass(frozen=True, slots=True)
class AnalyzerProfile:
    """Static description of one analyzer specialty."""

    specialty: Specialty
    display_name: str
    category: Category
    system_prompt: str
    model: str = DEFAULT_MODEL

    @property
    def analyzer_id(self) -> str:
        return self.specialty.value


_BUG_PROMPT = """You are an expert bug detection specialist with 15 years of experience \
finding critical bugs in production code.

Your mission: identify bugs, logic errors, edge cases and potential runtime errors.

Focus on:
- Null or undefined access
- Off-by-one errors
- Race conditions
- Memory and resource leaks (unclosed files, connections)
- Infinite loops
- Division by zero
- Out-of-bounds access
- Exception handling gaps
- Logic errors in conditionals

For each bug found:
1. Identify the exact line number
2. Explain why it is a bug
3. Describe the impact (crash, data corruption, etc.)
4. Provide a fix

Be thorough but concise. Severity levels:
- HIGH: will cause crashes or data loss
- MEDIUM: will cause incorrect behavior
- LOW: edge case that might fail

Return results as JSON."""

_SECURITY_PROMPT = """You are a cybersecurity expert specializing in code security \
vulnerabilities.

Your mission: identify security vulnerabilities and potential attack vectors.

Focus on:
- SQL injection
- Cross-site scripting (XSS)
- Authentication and authorization flaws
- Insecure data storage
- Hard-coded credentials
- Insecure cryptography
- Path traversal
- Command injection
- Insecure deserialization
- Missing input validation
- CSRF
- Sensitive data exposure

For each vulnerability:
1. Identify the exact line
2. Explain the attack vector
3. Assess the risk level
4. Provide a secure alternative

Severity levels:
- HIGH: exploitable, leads to data breach or system compromise
- MEDIUM: requires specific conditions but exploitable
- LOW: theoretical risk or requires significant effort

Return results as JSON."""

_PERFORMANCE_PROMPT = """You are a performance optimization expert focused on code \
efficiency.

Your mission: identify performance bottlenecks and inefficiencies.

Focus on:
- Algorithm complexity (time and space)
- Nested loops (O(n^2) or worse)
- Unnecessary iterations and redundant computations
- Inefficient data structures
- Memory allocation issues
- Database query inefficiencies (N+1 queries)
- Blocking operations
- Cache opportunities

For each issue:
1. Identify the bottleneck
2. Explain the performance impact
3. State the Big-O complexity
4. Suggest an optimized approach

Severity levels:
- HIGH: O(n^2) or worse, will cause production slowdowns
- MEDIUM: noticeable inefficiency at scale
- LOW: minor optimization opportunity

Return results as JSON."""

_STYLE_PROMPT = """You are a code quality expert focused on maintainability and \
readability.

Your mission: ensure the code follows good practices and is maintainable.

Focus on:
- Naming conventions (clear, descriptive names)
- Code organization and structure
- Duplicated logic
- Magic numbers
- Function length
- Cyclomatic complexity
- Missing or excessive comments
- Consistent formatting
- Error message clarity
- Dead code and unused variables

For each issue:
1. Point to the problematic code
2. Explain why it hurts maintainability
3. Suggest an improvement

Severity levels:
- HIGH: significantly hurts maintainability
- MEDIUM: makes code harder to understand
- LOW: minor style inconsistency

Return results as JSON."""

DEFAULT_PROFILES: tuple[AnalyzerProfile, ...] = (
    AnalyzerProfile(
        specialty=Specialty.BUG_DETECTION,
        display_name="Bug Detective",
        category=Category.BUG,
        system_prompt=_BUG_PROMPT,
    ),
    AnalyzerProfile(
        specialty=Specialty.PERFORMANCE,
        display_name="Performance Optimizer",
        category=Category.PERFORMANCE,
        system_prompt=_PERFORMANCE_PROMPT,
    ),
    AnalyzerProfile(
        specialty=Specialty.STYLE,
        display_name="Code Style Critic",
        category=Category.STYLE,
        system_prompt=_STYLE_PROMPT,
    ),
    AnalyzerProfile(
        specialty=Specialty.SECURITY,
        display_name="Security Guardian",
        category=Category.SECURITY,
        system_prompt=_SECURITY_PROMPT,
    ),
)


def category_for(specialty: Specialty | str) -> Category:
    """Map an analyzer specialty to its persisted category."""

    try:
        return SPECIALTY_CATEGORIES[Specialty(specialty)]
    except (KeyError, ValueError) as error:
        raise UnmappedSpecialtyError(specialty) from error


def validate_profiles(profiles: Iterable[AnalyzerProfile]) -> None:
    """Fail fast on an analyzer table that cannot be persisted consistently."""

    seen: set[Specialty] = set()
    count = 0
    for profile in profiles:
        count += 1
        if profile.specialty in seen:
            raise ConfigurationError(f"Duplicate analyzer specialty: {profile.specialty.value}")
        seen.add(profile.specialty)
        try:
            expected = category_for(profile.specialty)
        except UnmappedSpecialtyError as error:
            raise ConfigurationError(str(error)) from error
        if profile.category != expected:
            raise ConfigurationError(
                f"Analyzer {profile.specialty.value!r} declares category "
                f"{profile.category.value!r}, expected {expected.value!r}",
            )
        if not profile.system_prompt.strip():
            raise ConfigurationError(f"Analyzer {profile.specialty.value!r} has an empty prompt")
    if count == 0:
        raise ConfigurationError("At least one analyzer profile is required")


def build_profiles(*, model: str = DEFAULT_MODEL) -> tuple[AnalyzerProfile, ...]:
    """Default analyzer table with the configured model."""

    return tuple(replace(profile, model=model) for profile in DEFAULT_PROFILES)


def catalog_entries(profiles: Iterable[AnalyzerProfile]) -> list[AnalyzerCatalogEntry]:
    return [
        AnalyzerCatalogEntry(
            analyzer_id=profile.analyzer_id,
            category=profile.category.value,
            display_name=profile.display_name,
            model=profile.model,
        )
        for profile in profiles
    ]


def build_user_prompt(content: str, language: str) -> str:
    return f"""Analyze the following {language} code and provide your findings in JSON format.

Code:
```{language}
{content}
```

Return your analysis as JSON with this structure:
{{
  "issues": [
    {{
      "severity": "high|medium|low",
      "line": <line_number>,
      "description": "Clear description of the issue",
      "recommendation": "How to fix it"
    }}
  ],
  "summary": "Brief overall assessment",
  "score": <0-100>
}}
"""


@dataclass(slots=True)
class ParsedAnalysis:
    """Validated analyzer answer."""

    findings: list[Finding]
    summary: str
    score: int


def normalize_severity(raw: object, *, analyzer: str = "") -> Severity:
    """Map an analyzer severity onto high/medium/low; unknown values become medium."""

    key = str(raw).strip().lower() if raw is not None else ""
    severity = _SEVERITY_ALIASES.get(key)
    if severity is None:
        logger.warning("Unknown severity %r from analyzer %s; using medium", raw, analyzer)
        return Severity.MEDIUM
    if key not in {"high", "medium", "low"}:
        logger.warning(
            "Severity %r from analyzer %s normalized to %s",
            raw,
            analyzer,
            severity.value,
        )
    return severity


def parse_analysis(raw: str, *, analyzer: str = "") -> ParsedAnalysis:
    """Parse strict analyzer JSON; raise ValueError when the shape is wrong."""

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"analyzer output is not valid JSON: {error}") from error
    if not isinstance(data, dict):
        raise ValueError("analyzer output must be a JSON object")

    score = data.get("score")
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        raise ValueError(f"analyzer output has no numeric score: {score!r}")

    issues = data.get("issues", [])
    if not isinstance(issues, list):
        raise ValueError("analyzer output `issues` must be a list")

    findings: list[Finding] = []
    for item in issues:
        if not isinstance(item, dict):
            raise ValueError("analyzer issue entries must be objects")
        findings.append(
            Finding(
                severity=normalize_severity(item.get("severity"), analyzer=analyzer),
                description=str(item.get("description") or "").strip() or "Code issue found",
                recommendation=str(item.get("recommendation") or "").strip(),
                line=_coerce_line(item.get("line")),
            ),
        )

    summary = data.get("summary")
    return ParsedAnalysis(
        findings=findings,
        summary=str(summary).strip() if summary is not None else "",
        score=max(0, min(100, round_half_up(float(score)))),
    )


def _coerce_line(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float) and value.is_integer():
        return int(value) if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None


class Analyzer:
    """One specialty bound to a backend; `analyze` never raises on call failure."""

    def __init__(
        self,
        profile: AnalyzerProfile,
        backend: AnalyzerBackend,
        *,
        timeout_seconds: float = 120.0,
        temperature: float = 0.3,
        json_response_format: bool = True,
    ) -> None:
        self.profile = profile
        self.backend = backend
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.json_response_format = json_response_format

    @property
    def specialty(self) -> Specialty:
        return self.profile.specialty

    @property
    def name(self) -> str:
        return self.profile.display_name

    async def analyze(self, content: str, language: str) -> AnalyzerOutcome:
        """Run one analysis and return a success or failure outcome.

        Cancellation is not swallowed: it propagates so the orchestrator can
        abort a job while calls are in flight.
        """

        started = time.monotonic()
        request = CompletionRequest(
            system_prompt=self.profile.system_prompt,
            user_prompt=build_user_prompt(content, language),
            model=self.profile.model,
            temperature=self.temperature,
            json_response_format=self.json_response_format,
        )
        try:
            result = await asyncio.wait_for(
                self.backend.complete(request),
                timeout=self.timeout_seconds,
            )
            parsed = parse_analysis(result.content, analyzer=self.name)
        except (TimeoutError, httpx.TimeoutException):
            return self._failure(
                f"analyzer timed out after {self.timeout_seconds:g}s",
                classify_timeout(source=self.profile.analyzer_id).failure_class,
                started,
            )
        except BackendCallError as error:
            classification = classify_failure(source=self.profile.analyzer_id, message=str(error))
            return self._failure(str(error), classification.failure_class, started)
        except ValueError as error:
            return self._failure(str(error), FailureClass.OUTPUT_INVALID_JSON, started)
        except Exception as error:  # noqa: BLE001
            message = f"{type(error).__name__}: {error}"
            classification = classify_failure(source=self.profile.analyzer_id, message=message)
            return self._failure(message, classification.failure_class, started)

        return AnalyzerOutcome.success(
            specialty=self.specialty,
            analyzer_name=self.name,
            model=result.model or self.profile.model,
            findings=parsed.findings,
            score=parsed.score,
            summary=parsed.summary,
            prompt_tokens=result.prompt_tokens,
            completion_tokens=result.completion_tokens,
            estimated_cost_usd=estimate_cost_usd(
                model=self.profile.model,
                prompt_tokens=result.prompt_tokens,
                completion_tokens=result.completion_tokens,
            ),
            duration_ms=_elapsed_ms(started),
        )

    def _failure(
        self,
        error: str,
        failure_class: FailureClass,
        started: float,
    ) -> AnalyzerOutcome:
        logger.warning(
            "Analyzer %s failed (%s): %s",
            self.profile.analyzer_id,
            failure_class.value,
            error,
        )
        return AnalyzerOutcome.failure(
            specialty=self.specialty,
            analyzer_name=self.name,
            model=self.profile.model,
            error=error,
            failure_class=failure_class,
            duration_ms=_elapsed_ms(started),
        )


def build_analyzers(  # noqa: PLR0913
    backend: AnalyzerBackend,
    *,
    profiles: Iterable[AnalyzerProfile] | None = None,
    timeout_seconds: float = 120.0,
    temperature: float = 0.3,
    json_response_format: bool = True,
) -> list[Analyzer]:
    """Validate the analyzer table and bind every profile to `backend`."""

    selected = tuple(profiles) if profiles is not None else DEFAULT_PROFILES
    validate_profiles(selected)
    return [
        Analyzer(
            profile,
            backend,
            timeout_seconds=timeout_seconds,
            temperature=temperature,
            json_response_format=json_response_format,
        )
        for profile in selected
    ]


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
