"""
Gemini quota tracker.

Keeps a local shadow of each model's per-minute, per-day and token quota
plus the shared grounding quota. Counters reset lazily on the first call
after a minute or day boundary; the day boundary is local midnight in the
configured quota timezone. Repeated quota-like errors park a model until
the next midnight.

State is persisted after every change so restarts neither reset quota early
nor lose the cooldown.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from zoneinfo import ZoneInfo

from config.models import (
    GROUNDING_LIMITS,
    MAX_CONSECUTIVE_MINUTE_FAILURES,
    MODEL_LIMITS,
    GeminiModel,
    GroundingFeature,
    ModelLimits
)
from config.settings import settings
from services.database import StorageError

logger = logging.getLogger(__name__)

RATE_LIMIT_INDICATORS = (
    "rate limit",
    "quota exceeded",
    "too many requests",
    "429",
    "resource exhausted",
    "resource_exhausted",
)


def is_rate_limit_error(err: BaseException | str | None) -> bool:
    """Check whether an error message looks like quota exhaustion."""
    if err is None:
        return False
    text = str(err).lower()
    return any(indicator in text for indicator in RATE_LIMIT_INDICATORS)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ModelQuotaState:
    """Mutable counters for one model."""

    model: GeminiModel
    limits: ModelLimits
    last_minute_reset: datetime
    last_day_reset: datetime
    requests_this_minute: int = 0
    requests_today: int = 0
    tokens_today: int = 0
    consecutive_minute_fails: int = 0
    wait_until_midnight: bool = False

    def to_row(self) -> dict[str, Any]:
        return {
            "model_name": self.model.value,
            "requests_this_minute": self.requests_this_minute,
            "requests_today": self.requests_today,
            "tokens_today": self.tokens_today,
            "last_minute_reset": self.last_minute_reset,
            "last_day_reset": self.last_day_reset,
            "consecutive_minute_fails": self.consecutive_minute_fails,
            "wait_until_midnight": self.wait_until_midnight,
        }


@dataclass
class GroundingState:
    """Shared daily counter for one grounding feature."""

    feature: GroundingFeature
    limit: int
    last_day_reset: datetime
    used_today: int = 0


class RateLimiter:
    """
    Per-model quota gate with persistent state.

    Every public method takes the same lock, applies pending resets and then
    checks or updates counters, so a check and the update that follows it
    can never interleave with another caller.
    """

    def __init__(
        self,
        db,
        clock: Callable[[], datetime] = utc_now,
        tz_name: str | None = None
    ):
        self.db = db
        self.clock = clock
        self.tz = ZoneInfo(tz_name or settings.quota_timezone)
        self._lock = asyncio.Lock()

        now = self.clock()
        midnight = self.midnight(now)
        self.models: dict[GeminiModel, ModelQuotaState] = {
            model: ModelQuotaState(
                model=model,
                limits=MODEL_LIMITS[model],
                last_minute_reset=now,
                last_day_reset=midnight
            )
            for model in GeminiModel
        }
        self.grounding: dict[GroundingFeature, GroundingState] = {
            feature: GroundingState(
                feature=feature,
                limit=GROUNDING_LIMITS[feature],
                last_day_reset=midnight
            )
            for feature in GroundingFeature
        }

    # ==================== Time helpers ====================

    def midnight(self, moment: datetime) -> datetime:
        """Start of the quota day containing moment."""
        local = moment.astimezone(self.tz)
        return datetime(local.year, local.month, local.day, tzinfo=self.tz)

    def next_midnight(self, moment: datetime) -> datetime:
        """Start of the quota day after the one containing moment."""
        local = moment.astimezone(self.tz)
        tomorrow = local.date() + timedelta(days=1)
        return datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=self.tz)

    # ==================== Persistence ====================

    async def load(self) -> None:
        """
        Restore counters from the database.

        Missing rows keep fresh counters. A failed load is logged and the
        limiter starts fresh.
        """
        try:
            model_rows = await self.db.get_rate_limiter_stats()
            grounding_rows = await self.db.get_grounding_usage()
        except StorageError as e:
            logger.error(f"[RATE_LIMIT] Failed to load stats from database, using defaults: {e}")
            return

        async with self._lock:
            for model, state in self.models.items():
                row = model_rows.get(model.value)
                if not row:
                    continue
                state.requests_this_minute = row["requests_this_minute"]
                state.requests_today = row["requests_today"]
                state.tokens_today = row["tokens_today"]
                state.last_minute_reset = row["last_minute_reset"]
                state.last_day_reset = row["last_day_reset"]
                state.consecutive_minute_fails = row["consecutive_minute_fails"]
                state.wait_until_midnight = row["wait_until_midnight"]

            for feature, state in self.grounding.items():
                row = grounding_rows.get(feature.value)
                if not row:
                    continue
                state.used_today = row["used_today"]
                state.last_day_reset = row["last_day_reset"]

        for state in self.models.values():
            logger.info(
                f"[RATE_LIMIT] Loaded {state.model.value}: "
                f"rpm={state.requests_this_minute} rpd={state.requests_today} "
                f"tokens={state.tokens_today} cooldown={state.wait_until_midnight}"
            )

    async def _save_models(self) -> None:
        try:
            await self.db.upsert_rate_limiter_stats([s.to_row() for s in self.models.values()])
        except StorageError as e:
            logger.error(f"[RATE_LIMIT] Failed to save model stats: {e}")
            raise

    async def _save_grounding(self, state: GroundingState) -> None:
        try:
            await self.db.upsert_grounding_usage(state.feature.value, state.used_today, state.last_day_reset)
        except StorageError as e:
            logger.error(f"[RATE_LIMIT] Failed to save grounding usage: {e}")
            raise

    # ==================== Resets ====================

    def _apply_resets(self) -> tuple[bool, list[GroundingState]]:
        """
        Apply minute/day resets that are due, in memory only. Caller holds the lock.

        Returns:
            Whether any model changed, and the grounding states that were reset.
        """
        now = self.clock()
        current_midnight = self.midnight(now)
        models_changed = False

        for state in self.models.values():
            if now - state.last_minute_reset >= timedelta(minutes=1):
                state.requests_this_minute = 0
                state.last_minute_reset = now
                if state.consecutive_minute_fails and not state.wait_until_midnight:
                    state.consecutive_minute_fails = 0
                models_changed = True

            if current_midnight > state.last_day_reset:
                state.requests_today = 0
                state.tokens_today = 0
                state.consecutive_minute_fails = 0
                state.wait_until_midnight = False
                state.last_day_reset = current_midnight
                models_changed = True
                logger.info(f"[RATE_LIMIT] Reset daily limits for {state.model.value}")

        grounding_reset = []
        for state in self.grounding.values():
            if current_midnight > state.last_day_reset:
                state.used_today = 0
                state.last_day_reset = current_midnight
                grounding_reset.append(state)
                logger.info(f"[RATE_LIMIT] Reset daily grounding quota for {state.feature.value}")

        return models_changed, grounding_reset

    async def _reset_if_needed(self) -> None:
        """Apply due resets and persist them. Caller holds the lock."""
        models_changed, grounding_reset = self._apply_resets()
        for state in grounding_reset:
            await self._save_grounding(state)
        if models_changed:
            await self._save_models()

    # ==================== Checks ====================

    @staticmethod
    def _resolve_model(model: GeminiModel | str) -> GeminiModel | None:
        try:
            return GeminiModel(model)
        except ValueError:
            return None

    def _check(self, state: ModelQuotaState) -> tuple[bool, str]:
        name = state.model.value
        limits = state.limits

        if state.wait_until_midnight:
            until = self.next_midnight(self.clock()).isoformat()
            return False, f"model {name} waiting until midnight ({until})"

        if state.requests_this_minute >= limits.rpm:
            return False, f"model {name} RPM limit reached ({state.requests_this_minute}/{limits.rpm})"

        if state.requests_today >= limits.rpd:
            return False, f"model {name} RPD limit reached ({state.requests_today}/{limits.rpd})"

        if state.tokens_today >= limits.tokens_per_day:
            return False, f"model {name} token limit reached ({state.tokens_today}/{limits.tokens_per_day})"

        return True, ""

    async def can_use(self, model: GeminiModel | str) -> tuple[bool, str]:
        """
        Check whether a model may be called now.

        Returns:
            Tuple of (allowed, reason_if_not).
        """
        resolved = self._resolve_model(model)
        if resolved is None:
            return False, f"unknown model: {model}"

        async with self._lock:
            await self._reset_if_needed()
            return self._check(self.models[resolved])

    async def any_model_available(self) -> bool:
        """Check whether at least one model is currently usable."""
        async with self._lock:
            await self._reset_if_needed()
            return any(self._check(state)[0] for state in self.models.values())

    async def reserve(self, model: GeminiModel | str) -> tuple[bool, str]:
        """
        Check a model and, if allowed, count the request in the same step.

        Check and increment share one lock hold, so concurrent callers can
        never both take the last slot of a minute or day. The provider call
        that follows is counted whether or not it succeeds; report its tokens
        with record_usage(..., count_request=False).

        A failed save is logged and the reservation stands in memory.

        Returns:
            Tuple of (reserved, reason_if_not).
        """
        resolved = self._resolve_model(model)
        if resolved is None:
            return False, f"unknown model: {model}"

        async with self._lock:
            models_changed, grounding_reset = self._apply_resets()
            state = self.models[resolved]
            allowed, reason = self._check(state)
            if allowed:
                state.requests_this_minute += 1
                state.requests_today += 1

            try:
                for grounding in grounding_reset:
                    await self._save_grounding(grounding)
                if allowed or models_changed:
                    await self._save_models()
            except StorageError:
                logger.warning(f"[RATE_LIMIT] Keeping reservation for {resolved.value} in memory only")

            return allowed, reason

    async def can_use_grounding(self, feature: GroundingFeature | str) -> bool:
        """Check the shared daily counter for a grounding feature."""
        try:
            resolved = GroundingFeature(feature)
        except ValueError:
            return False

        async with self._lock:
            await self._reset_if_needed()
            state = self.grounding[resolved]
            return state.used_today < state.limit

    # ==================== Recording ====================

    async def record_usage(
        self,
        model: GeminiModel | str,
        tokens_used: int,
        count_request: bool = True
    ) -> None:
        """
        Count one successful request and its tokens; clears the failure streak.

        Pass count_request=False when the request was already taken by reserve().
        """
        resolved = self._resolve_model(model)
        if resolved is None:
            return

        async with self._lock:
            await self._reset_if_needed()
            state = self.models[resolved]
            if count_request:
                state.requests_this_minute += 1
                state.requests_today += 1
            state.tokens_today += tokens_used
            state.consecutive_minute_fails = 0
            await self._save_models()

    async def record_grounding(self, feature: GroundingFeature | str) -> None:
        """Count one use of a grounding feature."""
        try:
            resolved = GroundingFeature(feature)
        except ValueError:
            return

        async with self._lock:
            await self._reset_if_needed()
            state = self.grounding[resolved]
            state.used_today += 1
            await self._save_grounding(state)

    async def record_failure(self, model: GeminiModel | str, err: BaseException | str) -> bool:
        """
        Register a provider error for a model.

        Only quota-like errors count. Reaching MAX_CONSECUTIVE_MINUTE_FAILURES
        parks the model until the next midnight.

        Returns:
            True if the error was counted as a quota failure.
        """
        resolved = self._resolve_model(model)
        if resolved is None or not is_rate_limit_error(err):
            return False

        async with self._lock:
            await self._reset_if_needed()
            state = self.models[resolved]
            state.consecutive_minute_fails += 1
            logger.warning(
                f"[RATE_LIMIT] Rate limit error on {resolved.value} "
                f"(consecutive={state.consecutive_minute_fails}): {err}"
            )

            if state.consecutive_minute_fails >= MAX_CONSECUTIVE_MINUTE_FAILURES and not state.wait_until_midnight:
                state.wait_until_midnight = True
                until = self.next_midnight(self.clock()).isoformat()
                logger.warning(f"[RATE_LIMIT] Model {resolved.value} disabled until {until}")

            await self._save_models()
        return True

    # ==================== Status ====================

    def get_status(self) -> dict[str, Any]:
        """Snapshot of all counters for the status endpoint."""
        return {
            "models": {
                state.model.value: {
                    "requests_this_minute": state.requests_this_minute,
                    "rpm": state.limits.rpm,
                    "requests_today": state.requests_today,
                    "rpd": state.limits.rpd,
                    "tokens_today": state.tokens_today,
                    "tokens_per_day": state.limits.tokens_per_day,
                    "consecutive_minute_fails": state.consecutive_minute_fails,
                    "wait_until_midnight": state.wait_until_midnight,
                    "last_minute_reset": state.last_minute_reset.isoformat(),
                    "last_day_reset": state.last_day_reset.isoformat(),
                }
                for state in self.models.values()
            },
            "grounding": {
                state.feature.value: {
                    "used_today": state.used_today,
                    "limit": state.limit,
                }
                for state in self.grounding.values()
            },
        }
