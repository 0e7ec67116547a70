"""
Utility modules for the Bluesky reply bot.

Contains shared functionality used across services.
"""

from utils.api import GEMINI_GENERATE_URL, get_gemini_headers
from utils.text import (
    add_continuation_markers,
    count_graphemes,
    split_into_thread,
    split_text_into_chunks
)

__all__ = [
    "GEMINI_GENERATE_URL",
    "get_gemini_headers",
    "add_continuation_markers",
    "count_graphemes",
    "split_into_thread",
    "split_text_into_chunks"
]
