"""
Gemini API configuration.

Centralized constants and helper functions for Gemini API calls.
Used by the LLM client.
"""

from config.settings import settings

# Gemini REST endpoint; format with the model name
GEMINI_GENERATE_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"


def get_gemini_headers() -> dict:
    """
    Get headers for Gemini API requests.

    Returns:
        dict: Headers including the API key and content type.
    """
    return {
        "x-goog-api-key": settings.gemini_api_key,
        "Content-Type": "application/json"
    }
