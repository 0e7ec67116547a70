"""
Job queue backed by the message_queue table.

Every mention becomes one job row. Claiming and finalizing rely on
PostgreSQL's single-statement atomicity and transactions, not on an
in-process lock, so several workers (or processes) may share the queue.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from services.database import DB_ERRORS, Database, StorageError

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    READY = "ready"
    COMPLETED = "completed"
    FAILED = "failed"


class EnqueueResult(str, Enum):
    INSERTED = "inserted"
    ALREADY_EXISTS = "already_exists"


@dataclass(frozen=True)
class Mention:
    """A mention as delivered by the feed, already cleaned of the bot handle."""

    uri: str
    cid: str
    author_did: str
    author_handle: str
    text: str


@dataclass
class Job:
    """One queued mention and its generation state."""

    id: int
    message_uri: str
    message_cid: str
    author_did: str
    author_handle: str
    message_text: str
    status: JobStatus
    llm_response: str | None = None
    model_name: str | None = None
    used_google_search_grounding: bool | None = None
    retry_count: int = 0
    error_message: str | None = None
    created_at: datetime | None = None
    processing_started_at: datetime | None = None

    @classmethod
    def from_record(cls, record: Any) -> "Job":
        data = dict(record)
        data["status"] = JobStatus(data["status"])
        return cls(**data)


JOB_COLUMNS = """
    id, message_uri, message_cid, author_did, author_handle, message_text,
    status, llm_response, model_name, used_google_search_grounding,
    retry_count, error_message, created_at, processing_started_at
"""


class MessageStore:
    """Queue operations over the message_queue / message_history tables."""

    def __init__(self, db: Database):
        self.db = db

    async def enqueue(self, mention: Mention) -> EnqueueResult:
        """
        Insert a mention as a queued job unless it is already known.

        A mention is known when the same (uri, cid) is in the queue, or the
        same uri was already answered and archived.

        Args:
            mention: Cleaned mention from the feed.

        Returns:
            INSERTED for a new job, ALREADY_EXISTS for a duplicate.
        """
        pool = self.db.require_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO message_queue (
                        message_uri, message_cid, author_did, author_handle, message_text
                    )
                    SELECT $1, $2, $3, $4, $5
                    WHERE NOT EXISTS (
                        SELECT 1 FROM message_history WHERE message_uri = $1
                    )
                    ON CONFLICT (message_uri, message_cid) DO NOTHING
                    RETURNING id
                    """,
                    mention.uri, mention.cid, mention.author_did,
                    mention.author_handle, mention.text
                )
        except DB_ERRORS as e:
            raise StorageError(f"failed to enqueue {mention.uri}: {e}") from e

        if row is None:
            return EnqueueResult.ALREADY_EXISTS

        logger.info(f"[QUEUE] Enqueued job {row['id']} from @{mention.author_handle}")
        return EnqueueResult.INSERTED

    async def claim_next(self) -> Job | None:
        """
        Atomically claim the oldest queued job.

        Select-and-update is one statement with FOR UPDATE SKIP LOCKED, so two
        concurrent callers never receive the same job.

        Returns:
            The claimed job (now processing), or None when the queue is empty.
        """
        pool = self.db.require_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE message_queue
                    SET status = 'processing', processing_started_at = NOW()
                    WHERE id = (
                        SELECT id FROM message_queue
                        WHERE status = 'queued'
                        ORDER BY created_at, id
                        LIMIT 1
                        FOR UPDATE SKIP LOCKED
                    )
                    RETURNING {JOB_COLUMNS}
                    """
                )
        except DB_ERRORS as e:
            raise StorageError(f"failed to claim next job: {e}") from e

        return Job.from_record(row) if row else None

    async def complete_with_response(
        self,
        job_id: int,
        response: str,
        model_name: str | None,
        used_grounding: bool | None
    ) -> bool:
        """
        Store a generated response and mark the job ready to send.

        Only a job still in processing is updated; one the stale handler
        already put back in the queue is left alone.

        Returns:
            True if the job was updated.
        """
        pool = self.db.require_pool()
        try:
            async with pool.acquire() as conn:
                result = await conn.execute(
                    """
                    UPDATE message_queue
                    SET status = 'ready', llm_response = $2, model_name = $3,
                        used_google_search_grounding = $4
                    WHERE id = $1 AND status = 'processing'
                    """,
                    job_id, response, model_name, used_grounding
                )
        except DB_ERRORS as e:
            raise StorageError(f"failed to store response for job {job_id}: {e}") from e

        if result == "UPDATE 0":
            logger.warning(f"[QUEUE] Job {job_id} is no longer processing, response dropped")
            return False
        return True

    async def mark_failed(
        self,
        job_id: int,
        error_message: str,
        max_retries: int,
        fallback_response: str | None = None
    ) -> JobStatus | None:
        """
        Record a generation failure.

        The retry count goes up by one. Below max_retries the job is queued
        again. Once the ceiling is reached the job becomes ready carrying the
        fallback response, or terminally failed when there is none. A job that
        is no longer processing is left unchanged.

        Returns:
            The status the job ended in, or None if it was not processing.
        """
        pool = self.db.require_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    UPDATE message_queue
                    SET retry_count = retry_count + 1,
                        error_message = $2,
                        processing_started_at = NULL,
                        status = CASE
                            WHEN retry_count + 1 < $3 THEN 'queued'
                            WHEN $4::text IS NOT NULL THEN 'ready'
                            ELSE 'failed'
                        END,
                        llm_response = CASE
                            WHEN retry_count + 1 >= $3 AND $4::text IS NOT NULL THEN $4::text
                            ELSE llm_response
                        END,
                        model_name = CASE
                            WHEN retry_count + 1 >= $3 AND $4::text IS NOT NULL THEN NULL
                            ELSE model_name
                        END
                    WHERE id = $1 AND status = 'processing'
                    RETURNING status, retry_count
                    """,
                    job_id, error_message, max_retries, fallback_response
                )
        except DB_ERRORS as e:
            raise StorageError(f"failed to mark job {job_id} failed: {e}") from e

        if row is None:
            logger.warning(f"[QUEUE] Job {job_id} is no longer processing, failure not recorded")
            return None

        status = JobStatus(row["status"])
        logger.info(f"[QUEUE] Job {job_id} failed (retry {row['retry_count']}/{max_retries}) -> {status.value}")
        return status

    async def fetch_ready(self, limit: int) -> list[Job]:
        """Return up to limit jobs with a response waiting to be sent, oldest first."""
        return await self._fetch_by_status(JobStatus.READY, limit)

    async def fetch_failed(self, limit: int) -> list[Job]:
        """Return up to limit terminally failed jobs that still sit in the queue."""
        return await self._fetch_by_status(JobStatus.FAILED, limit)

    async def _fetch_by_status(self, status: JobStatus, limit: int) -> list[Job]:
        pool = self.db.require_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {JOB_COLUMNS} FROM message_queue
                    WHERE status = $1
                    ORDER BY created_at, id
                    LIMIT $2
                    """,
                    status.value, limit
                )
        except DB_ERRORS as e:
            raise StorageError(f"failed to fetch {status.value} jobs: {e}") from e
        return [Job.from_record(row) for row in rows]

    async def finalize(
        self,
        job: Job,
        reply_uri: str | None,
        reply_cid: str | None,
        status: JobStatus,
        error_message: str | None = None
    ) -> None:
        """
        Archive a job into message_history and remove it from the queue.

        Both writes share one transaction; if either fails the queue row is
        left as it was and StorageError is raised.
        """
        pool = self.db.require_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        """
                        INSERT INTO message_history (
                            message_uri, message_cid, author_did, author_handle, message_text,
                            llm_response, reply_uri, reply_cid, status, retry_count,
                            error_message, used_google_search_grounding, model_name,
                            received_at, processing_started_at
                        )
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
                        """,
                        job.message_uri, job.message_cid, job.author_did, job.author_handle,
                        job.message_text, job.llm_response or "", reply_uri, reply_cid,
                        status.value, job.retry_count, error_message,
                        job.used_google_search_grounding, job.model_name,
                        job.created_at, job.processing_started_at
                    )
                    await conn.execute("DELETE FROM message_queue WHERE id = $1", job.id)
        except DB_ERRORS as e:
            raise StorageError(f"failed to finalize job {job.id}: {e}") from e

        logger.info(f"[QUEUE] Finalized job {job.id} as {status.value}")

    async def reap_stale(self, timeout: timedelta) -> list[Job]:
        """
        Return jobs stuck in processing for longer than timeout to the queue.

        Returns:
            The jobs that were reset.
        """
        pool = self.db.require_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    UPDATE message_queue
                    SET status = 'queued', processing_started_at = NULL
                    WHERE status = 'processing'
                      AND processing_started_at < NOW() - $1::interval
                    RETURNING {JOB_COLUMNS}
                    """,
                    timeout
                )
        except DB_ERRORS as e:
            raise StorageError(f"failed to reap stale jobs: {e}") from e
        return [Job.from_record(row) for row in rows]

    async def count_by_status(self) -> dict[str, int]:
        """Count active jobs per status."""
        pool = self.db.require_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    "SELECT status, COUNT(*) AS n FROM message_queue GROUP BY status"
                )
        except DB_ERRORS as e:
            raise StorageError(f"failed to count jobs: {e}") from e
        counts = {status.value: 0 for status in (JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.READY, JobStatus.FAILED)}
        for row in rows:
            counts[row["status"]] = row["n"]
        return counts
