"""Analyzer backend implementations."""

from repo_review.pipeline.backend.base import (
    AnalyzerBackend,
    BackendCallError,
    CompletionRequest,
    CompletionResult,
)
from repo_review.pipeline.backend.echo_backend import EchoBackend
from repo_review.pipeline.backend.openai_chat import OpenAIChatBackend

__all__ = [
    "AnalyzerBackend",
    "BackendCallError",
    "CompletionRequest",
    "CompletionResult",
    "EchoBackend",
    "OpenAIChatBackend",
]
