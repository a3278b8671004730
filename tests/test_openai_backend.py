from __future__ import annotations

import json

import allure
import httpx
import pytest

from repo_review.pipeline.backend import BackendCallError, CompletionRequest, OpenAIChatBackend

pytestmark = [
    allure.epic("Review Pipeline"),
    allure.feature("Analyzer Backends"),
]


def _request(*, json_format: bool = True) -> CompletionRequest:
    return CompletionRequest(
        system_prompt="You are a reviewer.",
        user_prompt="Review this.",
        model="gpt-4o-mini",
        json_response_format=json_format,
    )


def _backend(handler, *, api_key: str = "sk-test") -> OpenAIChatBackend:
    return OpenAIChatBackend(
        base_url="https://llm.example.com/v1/",
        api_key=api_key,
        timeout_seconds=5,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_complete_posts_chat_payload_and_reads_usage() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "model": "gpt-4o-mini-2024",
                "choices": [{"message": {"role": "assistant", "content": '{"score": 90}'}}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 7},
            },
        )

    result = await _backend(handler).complete(_request())

    assert result.content == '{"score": 90}'
    assert (result.prompt_tokens, result.completion_tokens) == (12, 7)
    assert result.model == "gpt-4o-mini-2024"
    request = seen[0]
    assert str(request.url) == "https://llm.example.com/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test"
    payload = json.loads(request.content)
    assert payload["temperature"] == 0.3
    assert payload["response_format"] == {"type": "json_object"}
    assert [message["role"] for message in payload["messages"]] == ["system", "user"]


@pytest.mark.asyncio
async def test_complete_omits_response_format_and_auth_when_disabled() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

    result = await _backend(handler, api_key="").complete(_request(json_format=False))

    assert result.content == "ok"
    assert result.prompt_tokens == 0
    assert result.model == "gpt-4o-mini"
    assert "Authorization" not in seen[0].headers
    assert "response_format" not in json.loads(seen[0].content)


@pytest.mark.asyncio
async def test_http_error_carries_status_and_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"code": "rate_limit_exceeded"}})

    with pytest.raises(BackendCallError, match="HTTP 429") as error:
        await _backend(handler).complete(_request())

    assert error.value.status_code == 429
    assert "rate_limit_exceeded" in str(error.value)


@pytest.mark.asyncio
async def test_network_error_is_wrapped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(BackendCallError, match="network error"):
        await _backend(handler).complete(_request())


@pytest.mark.asyncio
async def test_timeout_is_propagated_unwrapped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(httpx.TimeoutException):
        await _backend(handler).complete(_request())


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("body", "message"),
    [
        (b"<html>oops</html>", "non-JSON"),
        (b"[]", "not a JSON object"),
        (b'{"choices": []}', "no choices"),
    ],
)
async def test_unreadable_responses_raise(body: bytes, message: str) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body)

    with pytest.raises(BackendCallError, match=message):
        await _backend(handler).complete(_request())
