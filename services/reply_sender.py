"""
Reply sender.

Posts ready responses back to Bluesky and archives the jobs. Responses that
do not fit one post are sent as a thread: every post replies to the one
before it while the thread root stays the original mention.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from config.models import MAX_POST_GRAPHEMES, THREAD_CHUNK_GRAPHEMES
from config.settings import settings
from services.bluesky import BlueskyClient, StrongRef
from services.database import StorageError
from services.message_store import Job, JobStatus, MessageStore
from utils.text import count_graphemes, split_into_thread

logger = logging.getLogger(__name__)


class ReplyInterrupted(Exception):
    """Shutdown was requested part-way through a thread."""


@dataclass
class SendOutcome:
    """Posts created for one job; first is what history records."""

    posts: list[StrongRef] = field(default_factory=list)

    @property
    def first(self) -> StrongRef | None:
        return self.posts[0] if self.posts else None


def attribution(model_name: str | None) -> str:
    """Suffix naming the model that wrote the reply."""
    return f"\n🤖 {model_name}" if model_name else ""


def compose_reply(
    response: str,
    model_name: str | None = None,
    max_graphemes: int = MAX_POST_GRAPHEMES,
    chunk_graphemes: int = THREAD_CHUNK_GRAPHEMES
) -> list[str]:
    """
    Lay a response out as one or more post texts.

    One post with attribution if it fits, else one bare post if that fits,
    else a marked thread with attribution on the last post when it still fits.
    """
    response = response.strip()
    suffix = attribution(model_name)

    if count_graphemes(response + suffix) <= max_graphemes:
        return [response + suffix]

    if count_graphemes(response) <= max_graphemes:
        return [response]

    posts = split_into_thread(response, chunk_graphemes)
    if suffix and count_graphemes(posts[-1] + suffix) <= max_graphemes:
        posts[-1] += suffix
    return posts


class ReplyDispatcher:
    """Sends ready responses and finalizes their jobs."""

    def __init__(
        self,
        store: MessageStore,
        bluesky: BlueskyClient,
        stop_event: asyncio.Event | None = None,
        batch_size: int | None = None,
        reply_delay: float | None = None
    ):
        self.store = store
        self.bluesky = bluesky
        self.stop_event = stop_event or asyncio.Event()
        self.batch_size = batch_size or settings.reply_batch_size
        self.reply_delay = settings.reply_delay_seconds if reply_delay is None else reply_delay

    async def run_once(self) -> int:
        """
        One sender tick: send up to batch_size ready replies.

        Returns:
            Number of jobs finalized.
        """
        if self.stop_event.is_set():
            return 0

        jobs = await self.store.fetch_ready(self.batch_size)
        if not jobs:
            return 0

        await self.bluesky.authenticate()

        finalized = 0
        for i, job in enumerate(jobs):
            if self.stop_event.is_set():
                logger.info("[SENDER] Cancelled during processing")
                break

            if i and await self._wait(self.reply_delay):
                logger.info("[SENDER] Cancelled during delay")
                break

            if await self.send_and_finalize(job):
                finalized += 1

        return finalized

    async def send_and_finalize(self, job: Job) -> bool:
        """Send one job's reply and archive it as completed or failed."""
        outcome = SendOutcome()
        try:
            await self.send_reply(job, outcome)
        except Exception as e:
            logger.error(f"[SENDER] Failed to send reply for job {job.id}: {e}")
            return await self._finalize(job, outcome, JobStatus.FAILED, str(e))

        logger.info(f"[SENDER] Sent reply for job {job.id} ({len(outcome.posts)} posts)")
        return await self._finalize(job, outcome, JobStatus.COMPLETED, None)

    async def send_reply(self, job: Job, outcome: SendOutcome) -> None:
        """
        Post the job's response, filling outcome as posts are created.

        Raises:
            ValueError: The job has no response.
            ReplyInterrupted: Stop was requested between thread posts.
            BlueskyError: A post could not be created.
        """
        if not job.llm_response:
            raise ValueError(f"no LLM response available for job {job.id}")

        texts = compose_reply(job.llm_response, job.model_name)
        root = StrongRef(uri=job.message_uri, cid=job.message_cid)
        parent = root

        for part, text in enumerate(texts, 1):
            if part > 1 and self.stop_event.is_set():
                raise ReplyInterrupted(f"stopped after {part - 1}/{len(texts)} posts")
            parent = await self.bluesky.create_post(text, root=root, parent=parent)
            outcome.posts.append(parent)

    async def _finalize(self, job: Job, outcome: SendOutcome, status: JobStatus, error: str | None) -> bool:
        first = outcome.first
        try:
            await self.store.finalize(
                job,
                reply_uri=first.uri if first else None,
                reply_cid=first.cid if first else None,
                status=status,
                error_message=error
            )
        except StorageError as e:
            logger.error(f"[SENDER] Failed to move job {job.id} to history: {e}")
            return False
        return True

    async def _wait(self, seconds: float) -> bool:
        """Sleep unless stopped first. Returns True when stopped."""
        if seconds <= 0:
            return self.stop_event.is_set()
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True
