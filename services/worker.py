"""
Response worker.

Claims one queued job per tick and asks Gemini for a reply. Models are tried
in preference order, skipping any the rate limiter blocks. Failures go back
to the queue until the retry ceiling, after which the job gets the fallback
apology so the author still receives an answer.
"""

import asyncio
import logging
from dataclasses import dataclass

from config.models import GeminiModel, GroundingFeature
from config.prompts import FALLBACK_RESPONSE, MENTION_REPLY_PROMPT
from config.settings import settings
from services.database import StorageError
from services.llm import LLMClient
from services.message_store import Job, JobStatus, MessageStore
from services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class GenerationError(Exception):
    """No model produced a response."""


@dataclass(frozen=True)
class Generation:
    text: str
    model: GeminiModel
    used_grounding: bool


class ResponseWorker:
    """Turns queued jobs into ready-to-send responses."""

    def __init__(
        self,
        store: MessageStore,
        llm: LLMClient,
        rate_limiter: RateLimiter,
        stop_event: asyncio.Event | None = None,
        max_retries: int | None = None
    ):
        self.store = store
        self.llm = llm
        self.rate_limiter = rate_limiter
        self.stop_event = stop_event or asyncio.Event()
        self.max_retries = max_retries or settings.max_retries

    async def run_once(self) -> Job | None:
        """
        One worker tick: claim a job and produce its response.

        Nothing is claimed while every model is blocked, so quota exhaustion
        does not use up job retries.

        Returns:
            The job that was processed, or None if there was nothing to do.
        """
        if self.stop_event.is_set():
            return None

        if not await self.rate_limiter.any_model_available():
            logger.info("[WORKER] All models rate limited, leaving queue untouched")
            return None

        job = await self.store.claim_next()
        if job is None:
            return None

        logger.info(f"[WORKER] Processing job {job.id} from @{job.author_handle}")

        try:
            generation = await self.generate(job.message_text)
        except GenerationError as e:
            await self.handle_failure(job, str(e))
            return job

        stored = await self.store.complete_with_response(
            job.id,
            generation.text,
            generation.model.value,
            generation.used_grounding
        )
        if not stored:
            return job
        logger.info(f"[WORKER] Job {job.id} ready ({generation.model.value})")
        return job

    async def handle_failure(self, job: Job, error_message: str) -> JobStatus | None:
        """Requeue a failed job, or install the fallback once retries run out."""
        status = await self.store.mark_failed(
            job.id,
            error_message,
            self.max_retries,
            fallback_response=FALLBACK_RESPONSE
        )
        if status is None:
            logger.warning(f"[WORKER] Job {job.id} was requeued while generating, failure dropped")
        elif status is JobStatus.READY:
            logger.warning(f"[WORKER] Job {job.id} hit max retries, fallback response set")
        else:
            logger.warning(f"[WORKER] Job {job.id} failed, back to {status.value}: {error_message}")
        return status

    async def generate(self, user_message: str) -> Generation:
        """
        Generate a reply with the first model that is available and answers.

        Raises:
            GenerationError: When every model was skipped or failed.
        """
        prompt = MENTION_REPLY_PROMPT.format(user_message=user_message)
        errors = []

        for model in GeminiModel:
            reserved, reason = await self.rate_limiter.reserve(model)
            if not reserved:
                logger.info(f"[WORKER] Model not available, trying next: {reason}")
                errors.append(reason)
                continue

            use_search = await self.rate_limiter.can_use_grounding(GroundingFeature.GOOGLE_SEARCH)
            logger.info(f"[WORKER] Attempting {model.value} (google_search={use_search})")

            try:
                text, tokens_used = await self.llm.generate_response(model.value, prompt, use_search)
            except Exception as e:
                logger.warning(f"[WORKER] {model.value} failed: {e}")
                errors.append(str(e))
                try:
                    await self.rate_limiter.record_failure(model, e)
                except StorageError as save_error:
                    logger.error(f"[WORKER] Could not persist failure for {model.value}: {save_error}")
                continue

            try:
                await self.rate_limiter.record_usage(model, tokens_used, count_request=False)
                if use_search:
                    await self.rate_limiter.record_grounding(GroundingFeature.GOOGLE_SEARCH)
            except StorageError as e:
                logger.error(f"[WORKER] Could not persist usage for {model.value}: {e}")

            return Generation(text=text.strip(), model=model, used_grounding=use_search)

        raise GenerationError(
            "all models exhausted or rate limited: " + "; ".join(errors)
        )
