"""OpenAI-compatible chat completions backend over httpx."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from repo_review.pipeline.backend.base import (
    BackendCallError,
    CompletionRequest,
    CompletionResult,
)

logger = logging.getLogger(__name__)


class OpenAIChatBackend:
    """Calls `/chat/completions` on OpenAI or any compatible endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        """Run one non-streaming completion.

        HTTP errors and unreadable responses raise `BackendCallError` carrying
        the response body, so the failure classifier can see the provider's
        error code.
        """

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
            headers=headers,
            transport=self._transport,
        ) as client:
            try:
                response = await client.post("/chat/completions", json=_build_payload(request))
            except httpx.TimeoutException:
                raise
            except httpx.HTTPError as error:
                raise BackendCallError(f"network error: {error}") from error

            if response.status_code >= 400:
                raise BackendCallError(
                    f"HTTP {response.status_code}: {response.text[:500]}",
                    status_code=response.status_code,
                )
            try:
                data = response.json()
            except ValueError as error:
                raise BackendCallError("backend returned a non-JSON response body") from error

        if not isinstance(data, dict):
            raise BackendCallError("backend response is not a JSON object")
        choices = data.get("choices") or []
        if not choices:
            raise BackendCallError("backend response has no choices")
        content = (choices[0].get("message") or {}).get("content") or ""
        usage = data.get("usage") or {}
        logger.debug(
            "Completion from %s: prompt_tokens=%s completion_tokens=%s",
            request.model,
            usage.get("prompt_tokens"),
            usage.get("completion_tokens"),
        )
        return CompletionResult(
            content=content,
            prompt_tokens=int(usage.get("prompt_tokens") or 0),
            completion_tokens=int(usage.get("completion_tokens") or 0),
            model=str(data.get("model") or request.model),
        )


def _build_payload(request: CompletionRequest) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": request.model,
        "messages": [
            {"role": "system", "content": request.system_prompt},
            {"role": "user", "content": request.user_prompt},
        ],
        "temperature": request.temperature,
    }
    if request.json_response_format:
        payload["response_format"] = {"type": "json_object"}
    return payload
