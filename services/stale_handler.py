"""
Stale job handler.

Returns jobs whose worker died mid-generation to the queue, and archives
jobs that ended terminally failed without a response to send.
"""

import asyncio
import logging
from datetime import timedelta

from config.settings import settings
from services.database import StorageError
from services.message_store import JobStatus, MessageStore

logger = logging.getLogger(__name__)


class StaleJobReaper:
    """Periodic cleanup of stuck and dead jobs."""

    def __init__(
        self,
        store: MessageStore,
        stop_event: asyncio.Event | None = None,
        timeout: timedelta | None = None,
        batch_size: int = 50
    ):
        self.store = store
        self.stop_event = stop_event or asyncio.Event()
        self.timeout = timeout or timedelta(minutes=settings.stale_timeout_minutes)
        self.batch_size = batch_size

    async def run_once(self) -> dict:
        """
        One reaper tick.

        Returns:
            Counts of reset and archived jobs.
        """
        if self.stop_event.is_set():
            return {"reset": 0, "archived": 0}

        stale = await self.store.reap_stale(self.timeout)
        for job in stale:
            logger.warning(f"[STALE] Reset stale job {job.id} (retry_count={job.retry_count})")
        if stale:
            logger.info(f"[STALE] Reset {len(stale)} stale jobs")

        archived = 0
        for job in await self.store.fetch_failed(self.batch_size):
            if self.stop_event.is_set():
                break
            try:
                await self.store.finalize(job, None, None, JobStatus.FAILED, job.error_message)
                archived += 1
            except StorageError as e:
                logger.error(f"[STALE] Failed to archive failed job {job.id}: {e}")

        return {"reset": len(stale), "archived": archived}
