"""Deterministic offline backend for smoke runs and tests."""

from __future__ import annotations

import json
import re

from repo_review.pipeline.backend.base import CompletionRequest, CompletionResult

_MARKERS: tuple[tuple[str, str, str], ...] = (
    ("TODO", "low", "Unresolved TODO marker"),
    ("FIXME", "medium", "Unresolved FIXME marker"),
    ("eval(", "high", "Dynamic code evaluation"),
    ("password", "medium", "Possible hard-coded credential"),
)


class EchoBackend:
    """Answers every analyzer with findings derived from simple text markers.

    Each marker found in the fenced code block becomes one issue; the score drops
    by ten per issue. Token counts are the word counts of prompt and answer.
    """

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        code = _extract_code(request.user_prompt)
        issues = []
        for line_number, line in enumerate(code.splitlines(), start=1):
            for marker, severity, description in _MARKERS:
                if marker in line:
                    issues.append(
                        {
                            "severity": severity,
                            "line": line_number,
                            "description": description,
                            "recommendation": f"Review usage of {marker!r}.",
                        },
                    )
        content = json.dumps(
            {
                "issues": issues,
                "summary": f"{len(issues)} marker(s) found",
                "score": max(0, 100 - 10 * len(issues)),
            },
        )
        return CompletionResult(
            content=content,
            prompt_tokens=len((request.system_prompt + request.user_prompt).split()),
            completion_tokens=len(content.split()),
            model=request.model,
        )


def _extract_code(prompt: str) -> str:
    match = re.search(r"```[^\n]*\n(.*?)```", prompt, flags=re.DOTALL)
    return match.group(1) if match else prompt
