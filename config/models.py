"""
Model configuration for the reply bot.

Centralized model definitions and their free-tier quotas.
Models are tried in the order they are declared in GeminiModel.
"""

from dataclasses import dataclass
from enum import Enum


class GeminiModel(str, Enum):
    """Gemini model variants the worker may use, in preference order."""

    FLASH = "gemini-2.5-flash"
    FLASH_LITE = "gemini-2.5-flash-lite"


class GroundingFeature(str, Enum):
    """Generation features with their own shared daily quota."""

    GOOGLE_SEARCH = "google_search"


@dataclass(frozen=True)
class ModelLimits:
    """Static per-model quota."""

    rpm: int
    rpd: int
    tokens_per_day: int


MODEL_LIMITS: dict[GeminiModel, ModelLimits] = {
    GeminiModel.FLASH: ModelLimits(rpm=10, rpd=250, tokens_per_day=250_000),
    GeminiModel.FLASH_LITE: ModelLimits(rpm=15, rpd=1000, tokens_per_day=250_000),
}

# Shared across all models
GROUNDING_LIMITS: dict[GroundingFeature, int] = {
    GroundingFeature.GOOGLE_SEARCH: 500,
}

# Quota-like failures in a row before a model is parked until midnight
MAX_CONSECUTIVE_MINUTE_FAILURES = 3

# Post size budgets, in graphemes
MAX_POST_GRAPHEMES = 300
THREAD_CHUNK_GRAPHEMES = 280
