"""Backend interface for analyzer completions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(slots=True)
class CompletionRequest:
    """One chat completion call made by an analyzer."""

    system_prompt: str
    user_prompt: str
    model: str
    temperature: float = 0.3
    json_response_format: bool = True


@dataclass(slots=True)
class CompletionResult:
    """Raw completion text plus token usage reported by the backend."""

    content: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model: str = ""


class BackendCallError(RuntimeError):
    """Backend call failed before producing a completion."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AnalyzerBackend(Protocol):
    """Protocol implemented by analyzer backends."""

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        """Run one completion and return its text and usage."""
