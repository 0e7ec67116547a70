"""
LLM client for the Gemini API.

Provides a single async call that generates a reply, optionally with
Google Search grounding.
"""

import logging

import httpx

from utils.api import GEMINI_GENERATE_URL, get_gemini_headers

logger = logging.getLogger(__name__)


class LLMError(Exception):
    """The provider rejected the request or returned nothing usable."""


class LLMClient:
    """Async client for the Gemini generateContent endpoint."""

    def __init__(self, timeout: float = 60.0, transport: httpx.AsyncBaseTransport | None = None):
        """
        Initialize LLM client.

        Args:
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self.timeout = timeout
        self.transport = transport

    async def generate_response(
        self,
        model: str,
        prompt: str,
        enable_search_grounding: bool = False
    ) -> tuple[str, int]:
        """
        Generate a reply for a prompt.

        Args:
            model: Gemini model name.
            prompt: Full prompt text.
            enable_search_grounding: Attach the Google Search tool.

        Returns:
            Tuple of (candidate_text, tokens_used). tokens_used falls back to
            a length-based estimate when usage metadata is missing.

        Raises:
            LLMError: On HTTP errors, transport errors or empty candidates.
        """
        payload: dict = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}]
        }
        if enable_search_grounding:
            payload["tools"] = [
                {"google_search": {}},
                {"code_execution": {}}
            ]

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    GEMINI_GENERATE_URL.format(model=model),
                    headers=get_gemini_headers(),
                    json=payload
                )
        except httpx.TimeoutException as e:
            raise LLMError(f"{model}: request timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise LLMError(f"{model}: transport error: {e}") from e

        if response.status_code >= 400:
            raise LLMError(f"{model}: HTTP {response.status_code}: {_error_detail(response)}")

        data = response.json()
        candidates = data.get("candidates") or []
        if not candidates:
            raise LLMError(f"{model}: no candidates returned")

        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts if not part.get("thought"))
        if not text.strip():
            raise LLMError(f"{model}: empty response")

        usage = data.get("usageMetadata") or {}
        tokens_used = usage.get("totalTokenCount")
        if tokens_used is None:
            tokens_used = (len(prompt) + len(text)) // 4

        logger.info(f"[LLM] {model} generated response ({tokens_used} tokens): {text[:100]}...")
        return text, int(tokens_used)


def _error_detail(response: httpx.Response) -> str:
    """Pull status and message out of a Gemini error body."""
    try:
        error = response.json().get("error", {})
    except ValueError:
        return response.text[:200]
    status = error.get("status", "")
    message = error.get("message", "")
    return f"{status} {message}".strip() or response.text[:200]
