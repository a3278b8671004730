"""Deterministic collaborators shared by pipeline tests."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

from repo_review.pipeline.analyzers import DEFAULT_PROFILES
from repo_review.pipeline.backend import CompletionRequest, CompletionResult
from repo_review.pipeline.models import Specialty, SubjectView
from repo_review.pipeline.workspace import ClonedWorkspace

DEFAULT_ANSWER: dict[str, object] = {"issues": [], "summary": "Looks fine", "score": 80}


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 19, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def specialty_of(request: CompletionRequest) -> Specialty:
    for profile in DEFAULT_PROFILES:
        if profile.system_prompt == request.system_prompt:
            return profile.specialty
    raise AssertionError("unknown analyzer system prompt")


class ScriptedBackend:
    """Answers per specialty and raises configured errors.

    A failure rule matches when its specialty (or any) and its marker (or any)
    both match the request.
    """

    def __init__(
        self,
        *,
        answers: dict[Specialty, dict[str, object] | str] | None = None,
        prompt_tokens: int = 100,
        completion_tokens: int = 50,
    ) -> None:
        self.answers = answers or {}
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.calls: list[tuple[Specialty, CompletionRequest]] = []
        self.before_call: Callable[[CompletionRequest], None] | None = None
        self._failures: list[tuple[Specialty | None, str | None, Exception]] = []

    def fail(
        self,
        error: Exception,
        *,
        specialty: Specialty | None = None,
        marker: str | None = None,
    ) -> None:
        self._failures.append((specialty, marker, error))

    def clear_failures(self) -> None:
        self._failures.clear()

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        specialty = specialty_of(request)
        self.calls.append((specialty, request))
        if self.before_call is not None:
            self.before_call(request)
        for rule_specialty, marker, error in self._failures:
            if rule_specialty is not None and rule_specialty != specialty:
                continue
            if marker is not None and marker not in request.user_prompt:
                continue
            raise error
        answer = self.answers.get(specialty, DEFAULT_ANSWER)
        return CompletionResult(
            content=answer if isinstance(answer, str) else json.dumps(answer),
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
            model=request.model,
        )


class DirectoryCloner:
    """Writes a fixed file tree instead of running git."""

    def __init__(
        self,
        root: Path,
        files: dict[str, str],
        *,
        error: Exception | None = None,
    ) -> None:
        self.root = root
        self.files = files
        self.error = error
        self.clone_calls = 0
        self.released: list[Path] = []

    def clone(self, subject: SubjectView) -> ClonedWorkspace:
        self.clone_calls += 1
        if self.error is not None:
            raise self.error
        target = self.root / f"{subject.repo_name}-{self.clone_calls}"
        for relative, content in self.files.items():
            path = target / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        target.mkdir(parents=True, exist_ok=True)
        return ClonedWorkspace(path=target, cleanup=lambda: self.released.append(target))
