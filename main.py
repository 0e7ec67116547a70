"""
Bluesky Reply Bot - Mention-triggered replies generated by Gemini.

FastAPI application with APScheduler driving the ingest, generate, send and
stale-job loops.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException

from config.settings import settings
from services.bluesky import BlueskyClient
from services.bot import ReplyBot
from services.database import Database, StorageError
from services.llm import LLMClient
from services.message_store import MessageStore
from services.rate_limiter import RateLimiter

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"

# Global instances
db = Database()
store = MessageStore(db)
rate_limiter: RateLimiter | None = None
bot: ReplyBot | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown."""
    global rate_limiter, bot

    # Startup
    logger.info("Starting application...")

    await db.connect()
    logger.info("Database connected")

    rate_limiter = RateLimiter(db)
    await rate_limiter.load()

    # Fail startup early on bad credentials or an unreachable PDS
    bluesky = BlueskyClient()
    session = await bluesky.authenticate()
    logger.info("=" * 50)
    logger.info(f"BLUESKY ACCOUNT: @{session.handle}")
    logger.info(f"BLUESKY DID: {session.did}")
    logger.info(f"BOT HANDLE: {settings.bot_handle}")
    logger.info("=" * 50)

    bot = ReplyBot(store, rate_limiter, bluesky, LLMClient())
    bot.start()

    yield

    # Shutdown
    logger.info("Shutting down application...")
    await bot.stop()
    await db.close()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Bluesky Reply Bot",
    description="Replies to Bluesky mentions with Gemini-generated answers",
    version=VERSION,
    lifespan=lifespan
)


@app.get("/health")
async def health_check():
    """Health check endpoint with detailed status."""
    db_ok = await db.ping()
    return {
        "status": "healthy" if db_ok else "degraded",
        "database": "connected" if db_ok else "disconnected",
        "scheduler_running": bot.running if bot else False,
        "version": VERSION
    }


@app.get("/metrics")
async def metrics():
    """Get queue and reply statistics."""
    try:
        queue = await store.count_by_status()
    except StorageError as e:
        logger.error(f"Error reading queue metrics: {e}")
        raise HTTPException(status_code=503, detail=str(e))

    return {
        "queue": queue,
        "replies_total": await db.count_history("completed"),
        "replies_today": await db.count_history("completed", today_only=True),
        "failed_total": await db.count_history("failed"),
        "failed_today": await db.count_history("failed", today_only=True),
        "last_reply_at": await db.get_last_reply_time()
    }


@app.get("/rate-limits")
async def rate_limits():
    """Get current Gemini quota usage per model and grounding feature."""
    if rate_limiter is None:
        raise HTTPException(status_code=503, detail="Rate limiter not initialized")

    return rate_limiter.get_status()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
