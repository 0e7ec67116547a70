"""
Database service using asyncpg for PostgreSQL.

Owns the connection pool and schema. Also stores rate limiter state and
serves the health/metrics queries.
"""

import logging
from datetime import datetime
from typing import Any

import asyncpg

from config.settings import settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """A store operation failed."""


# Driver failures surfaced to callers as StorageError
DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


SCHEMA = [
    # Active job queue, one row per mention
    """
    CREATE TABLE IF NOT EXISTS message_queue (
        id BIGSERIAL PRIMARY KEY,
        message_uri TEXT NOT NULL,
        message_cid TEXT NOT NULL,
        author_did TEXT NOT NULL,
        author_handle TEXT NOT NULL,
        message_text TEXT NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'queued',
        llm_response TEXT,
        model_name VARCHAR(100),
        used_google_search_grounding BOOLEAN,
        retry_count INTEGER NOT NULL DEFAULT 0,
        error_message TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        processing_started_at TIMESTAMPTZ,
        UNIQUE (message_uri, message_cid)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_message_queue_status_created
    ON message_queue(status, created_at)
    """,
    # Append-only record of every finalized job
    """
    CREATE TABLE IF NOT EXISTS message_history (
        id BIGSERIAL PRIMARY KEY,
        message_uri TEXT NOT NULL,
        message_cid TEXT NOT NULL,
        author_did TEXT NOT NULL,
        author_handle TEXT NOT NULL,
        message_text TEXT NOT NULL,
        llm_response TEXT NOT NULL,
        reply_uri TEXT,
        reply_cid TEXT,
        status VARCHAR(20) NOT NULL,
        retry_count INTEGER,
        error_message TEXT,
        used_google_search_grounding BOOLEAN,
        model_name VARCHAR(100),
        received_at TIMESTAMPTZ NOT NULL,
        processing_started_at TIMESTAMPTZ,
        finalized_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_message_history_uri ON message_history(message_uri)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_message_history_finalized ON message_history(finalized_at DESC)
    """,
    # Per-model quota counters
    """
    CREATE TABLE IF NOT EXISTS rate_limiter_stats (
        model_name VARCHAR(100) PRIMARY KEY,
        requests_this_minute INTEGER NOT NULL DEFAULT 0,
        requests_today INTEGER NOT NULL DEFAULT 0,
        tokens_today INTEGER NOT NULL DEFAULT 0,
        last_minute_reset TIMESTAMPTZ NOT NULL,
        last_day_reset TIMESTAMPTZ NOT NULL,
        consecutive_minute_fails INTEGER NOT NULL DEFAULT 0,
        wait_until_midnight BOOLEAN NOT NULL DEFAULT FALSE,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    # Shared daily counters for grounding features
    """
    CREATE TABLE IF NOT EXISTS grounding_usage (
        feature VARCHAR(50) PRIMARY KEY,
        used_today INTEGER NOT NULL DEFAULT 0,
        last_day_reset TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
]


class Database:
    """Async PostgreSQL database client using asyncpg."""

    def __init__(self, dsn: str | None = None):
        """Initialize database client."""
        self.dsn = dsn or settings.database_url
        self.pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        """
        Connect to PostgreSQL and create tables if needed.

        Establishes connection pool and initializes schema.
        """
        logger.info("Connecting to database...")
        self.pool = await asyncpg.create_pool(self.dsn)

        async with self.pool.acquire() as conn:
            for statement in SCHEMA:
                await conn.execute(statement)

        logger.info("Database connected and tables created")

    async def close(self) -> None:
        """Close database connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Database connection closed")

    def require_pool(self) -> asyncpg.Pool:
        """Return the pool or fail if connect() was never called."""
        if not self.pool:
            raise StorageError("database not connected")
        return self.pool

    # ==================== Rate Limiter State ====================

    async def get_rate_limiter_stats(self) -> dict[str, dict[str, Any]]:
        """
        Load persisted quota counters for every model.

        Returns:
            Mapping of model name to its stored row.
        """
        pool = self.require_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT model_name, requests_this_minute, requests_today, tokens_today,
                           last_minute_reset, last_day_reset,
                           consecutive_minute_fails, wait_until_midnight
                    FROM rate_limiter_stats
                    """
                )
        except DB_ERRORS as e:
            raise StorageError(f"failed to load rate limiter stats: {e}") from e
        return {row["model_name"]: dict(row) for row in rows}

    async def upsert_rate_limiter_stats(self, stats: list[dict[str, Any]]) -> None:
        """
        Persist quota counters for the given models in one transaction.

        Args:
            stats: One dict per model with the rate_limiter_stats columns.
        """
        pool = self.require_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.executemany(
                        """
                        INSERT INTO rate_limiter_stats (
                            model_name, requests_this_minute, requests_today, tokens_today,
                            last_minute_reset, last_day_reset,
                            consecutive_minute_fails, wait_until_midnight, updated_at
                        )
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, NOW())
                        ON CONFLICT (model_name) DO UPDATE SET
                            requests_this_minute = EXCLUDED.requests_this_minute,
                            requests_today = EXCLUDED.requests_today,
                            tokens_today = EXCLUDED.tokens_today,
                            last_minute_reset = EXCLUDED.last_minute_reset,
                            last_day_reset = EXCLUDED.last_day_reset,
                            consecutive_minute_fails = EXCLUDED.consecutive_minute_fails,
                            wait_until_midnight = EXCLUDED.wait_until_midnight,
                            updated_at = NOW()
                        """,
                        [
                            (
                                s["model_name"],
                                s["requests_this_minute"],
                                s["requests_today"],
                                s["tokens_today"],
                                s["last_minute_reset"],
                                s["last_day_reset"],
                                s["consecutive_minute_fails"],
                                s["wait_until_midnight"],
                            )
                            for s in stats
                        ]
                    )
        except DB_ERRORS as e:
            raise StorageError(f"failed to save rate limiter stats: {e}") from e

    async def get_grounding_usage(self) -> dict[str, dict[str, Any]]:
        """Load shared grounding counters keyed by feature name."""
        pool = self.require_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    "SELECT feature, used_today, last_day_reset FROM grounding_usage"
                )
        except DB_ERRORS as e:
            raise StorageError(f"failed to load grounding usage: {e}") from e
        return {row["feature"]: dict(row) for row in rows}

    async def upsert_grounding_usage(self, feature: str, used_today: int, last_day_reset: datetime) -> None:
        """Persist one grounding counter."""
        pool = self.require_pool()
        try:
            async with pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO grounding_usage (feature, used_today, last_day_reset, updated_at)
                    VALUES ($1, $2, $3, NOW())
                    ON CONFLICT (feature) DO UPDATE SET
                        used_today = EXCLUDED.used_today,
                        last_day_reset = EXCLUDED.last_day_reset,
                        updated_at = NOW()
                    """,
                    feature, used_today, last_day_reset
                )
        except DB_ERRORS as e:
            raise StorageError(f"failed to save grounding usage: {e}") from e

    # ==================== Metrics Methods ====================

    async def ping(self) -> bool:
        """
        Check database connection health.

        Returns:
            True if database is reachable.
        """
        if not self.pool:
            return False

        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception as e:
            logger.error(f"Database ping failed: {e}")
            return False

    async def count_history(self, status: str | None = None, today_only: bool = False) -> int:
        """Count archived jobs, optionally by final status and for today only."""
        if not self.pool:
            return 0

        clauses = []
        args: list[Any] = []
        if status:
            args.append(status)
            clauses.append(f"status = ${len(args)}")
        if today_only:
            clauses.append("finalized_at >= CURRENT_DATE")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        async with self.pool.acquire() as conn:
            return await conn.fetchval(f"SELECT COUNT(*) FROM message_history {where}", *args)

    async def get_last_reply_time(self) -> str | None:
        """Get timestamp of the last successfully sent reply."""
        if not self.pool:
            return None

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT finalized_at FROM message_history
                WHERE status = 'completed'
                ORDER BY finalized_at DESC LIMIT 1
                """
            )
            if row:
                return row["finalized_at"].isoformat()
            return None
