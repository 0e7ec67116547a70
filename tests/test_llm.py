import asyncio
import json

import httpx
import pytest

from services.llm import LLMClient, LLMError


def gemini_reply(text: str, total_tokens: int | None = 42) -> dict:
    body = {
        "candidates": [
            {
                "content": {
                    "role": "model",
                    "parts": [
                        {"text": "thinking about it", "thought": True},
                        {"text": text},
                    ],
                }
            }
        ]
    }
    if total_tokens is not None:
        body["usageMetadata"] = {"totalTokenCount": total_tokens}
    return body


def make_client(handler) -> LLMClient:
    return LLMClient(transport=httpx.MockTransport(handler))


def test_generate_response_returns_text_and_tokens() -> None:
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=gemini_reply("Recursion is self-reference."))

    text, tokens = asyncio.run(make_client(handler).generate_response("gemini-2.5-flash", "explain recursion"))

    assert text == "Recursion is self-reference."
    assert tokens == 42

    request = requests[0]
    assert request.url.path == "/v1beta/models/gemini-2.5-flash:generateContent"
    assert request.headers["x-goog-api-key"] == "test-gemini-key"
    body = json.loads(request.content)
    assert body["contents"][0]["parts"][0]["text"] == "explain recursion"
    assert "tools" not in body


def test_search_grounding_attaches_tools() -> None:
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json=gemini_reply("grounded"))

    asyncio.run(make_client(handler).generate_response("gemini-2.5-flash", "news?", enable_search_grounding=True))

    assert {"google_search": {}} in bodies[0]["tools"]


def test_token_estimate_without_usage_metadata() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=gemini_reply("x" * 40, total_tokens=None))

    _, tokens = asyncio.run(make_client(handler).generate_response("gemini-2.5-flash", "p" * 80))

    assert tokens == 30


def test_quota_error_message_is_recognisable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            json={"error": {"code": 429, "status": "RESOURCE_EXHAUSTED", "message": "Quota exceeded"}},
        )

    with pytest.raises(LLMError) as exc_info:
        asyncio.run(make_client(handler).generate_response("gemini-2.5-flash", "hi"))

    message = str(exc_info.value)
    assert "HTTP 429" in message
    assert "RESOURCE_EXHAUSTED" in message


def test_empty_candidates_raise() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"candidates": []})

    with pytest.raises(LLMError, match="no candidates"):
        asyncio.run(make_client(handler).generate_response("gemini-2.5-flash", "hi"))


def test_blank_text_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=gemini_reply("   "))

    with pytest.raises(LLMError, match="empty response"):
        asyncio.run(make_client(handler).generate_response("gemini-2.5-flash", "hi"))


def test_timeout_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(LLMError, match="timed out"):
        asyncio.run(make_client(handler).generate_response("gemini-2.5-flash", "hi"))
