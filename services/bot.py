"""
Bot orchestration.

Runs the four driver loops as APScheduler interval jobs on the asyncio
event loop and shuts them down in order: ingestion first, then the rest
with a bounded grace period for in-flight ticks.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from config.settings import settings
from services.bluesky import BlueskyClient
from services.ingestor import Ingestor
from services.llm import LLMClient
from services.message_store import MessageStore
from services.rate_limiter import RateLimiter
from services.reply_sender import ReplyDispatcher
from services.stale_handler import StaleJobReaper
from services.worker import ResponseWorker

logger = logging.getLogger(__name__)


class ReplyBot:
    """Owns the scheduler, the stop events and the driver loops."""

    def __init__(
        self,
        store: MessageStore,
        rate_limiter: RateLimiter,
        bluesky: BlueskyClient,
        llm: LLMClient,
        scheduler: AsyncIOScheduler | None = None
    ):
        self.scheduler = scheduler or AsyncIOScheduler()
        self.stop_event = asyncio.Event()
        self.ingest_stop_event = asyncio.Event()
        self._running: set[asyncio.Task] = set()

        self.ingestor = Ingestor(store, bluesky, stop_event=self.ingest_stop_event)
        self.worker = ResponseWorker(store, llm, rate_limiter, stop_event=self.stop_event)
        self.sender = ReplyDispatcher(store, bluesky, stop_event=self.stop_event)
        self.reaper = StaleJobReaper(store, stop_event=self.stop_event)

    @property
    def running(self) -> bool:
        return self.scheduler.running

    async def _tick(self, name: str, func: Callable[[], Awaitable]) -> None:
        """Run one loop tick; errors are logged and never escape."""
        task = asyncio.current_task()
        if task is not None:
            self._running.add(task)
        try:
            await func()
        except asyncio.CancelledError:
            logger.warning(f"[BOT] {name} tick cancelled")
            raise
        except Exception as e:
            logger.error(f"[BOT] {name} tick failed: {e}")
            logger.exception(e)
        finally:
            if task is not None:
                self._running.discard(task)

    def _add_loop(self, name: str, func: Callable[[], Awaitable], seconds: float) -> None:
        self.scheduler.add_job(
            self._tick,
            "interval",
            seconds=seconds,
            id=name,
            args=[name, func],
            max_instances=1,
            coalesce=True
        )
        logger.info(f"[BOT] Scheduled {name} every {seconds}s")

    def start(self) -> None:
        """Schedule all loops and start the scheduler."""
        logger.info("[BOT] Starting Bluesky reply bot...")
        self._add_loop("ingestor", self.ingestor.run_once, settings.ingestor_interval_seconds)
        self._add_loop("worker", self.worker.run_once, settings.worker_interval_seconds)
        self._add_loop("reply_sender", self.sender.run_once, settings.reply_sender_interval_seconds)
        self._add_loop("stale_handler", self.reaper.run_once, settings.stale_check_interval_seconds)
        self.scheduler.start()
        logger.info("[BOT] Bot started")

    async def stop(self, grace_seconds: float | None = None) -> bool:
        """
        Stop ingestion, then the other loops.

        In-flight ticks get grace_seconds to finish before they are cancelled.

        Returns:
            True if every tick finished within the grace period.
        """
        grace = settings.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        logger.info("[BOT] Shutting down bot...")

        logger.info("[BOT] Stopping ingestion...")
        self.ingest_stop_event.set()
        if self.scheduler.running and self.scheduler.get_job("ingestor"):
            self.scheduler.remove_job("ingestor")

        logger.info(f"[BOT] Waiting up to {grace}s for workers to complete")
        self.stop_event.set()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        pending = {task for task in self._running if not task.done()}
        if not pending:
            logger.info("[BOT] All workers completed gracefully")
            return True

        _, pending = await asyncio.wait(pending, timeout=grace)
        if pending:
            logger.warning(f"[BOT] Shutdown timeout reached, cancelling {len(pending)} ticks")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            return False

        logger.info("[BOT] All workers completed gracefully")
        return True
