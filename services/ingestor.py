"""
Mention ingestor.

Polls Bluesky for unread mention notifications and turns each one into a
queued job. Duplicate mentions are ignored by the store.
"""

import asyncio
import logging
import re
from datetime import datetime, timezone

from config.settings import settings
from services.bluesky import BlueskyClient, Notification
from services.database import StorageError
from services.message_store import EnqueueResult, Mention, MessageStore

logger = logging.getLogger(__name__)


def clean_mention_text(text: str, bot_handle: str) -> str | None:
    """
    Strip the bot handle from a mention.

    The request is whatever follows the first mention of the bot
    ("hey @bot explain recursion" -> "explain recursion"). When nothing
    follows it ("explain recursion @bot"), the handle is removed and the
    rest is kept.

    Returns:
        The cleaned text, or None if the post does not mention the bot or
        holds nothing besides the handle.
    """
    if not bot_handle or bot_handle not in text:
        return None

    _, _, after = text.partition(bot_handle)
    cleaned = after.replace(bot_handle, " ")
    if not cleaned.strip():
        cleaned = text.replace(bot_handle, " ")

    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    return cleaned or None


class Ingestor:
    """Moves new mentions from the notification feed into the queue."""

    def __init__(
        self,
        store: MessageStore,
        bluesky: BlueskyClient,
        stop_event: asyncio.Event | None = None,
        bot_handle: str | None = None,
        page_size: int | None = None
    ):
        self.store = store
        self.bluesky = bluesky
        self.stop_event = stop_event or asyncio.Event()
        self.bot_handle = bot_handle or settings.bot_handle
        self.page_size = page_size or settings.notification_page_size

    def to_mention(self, notification: Notification) -> Mention | None:
        """Build a queue entry from a notification, or None to skip it."""
        text = clean_mention_text(notification.text, self.bot_handle)
        if text is None:
            return None
        return Mention(
            uri=notification.uri,
            cid=notification.cid,
            author_did=notification.author_did,
            author_handle=notification.author_handle,
            text=text
        )

    async def run_once(self) -> dict:
        """
        One ingestion tick.

        Notifications are marked seen only after every unread mention was
        stored, so a storage failure leaves them to be picked up next tick.

        Returns:
            Summary counts for the tick.
        """
        if self.stop_event.is_set():
            return {"found": 0, "enqueued": 0}

        polled_at = datetime.now(timezone.utc)
        await self.bluesky.authenticate()
        notifications = await self.bluesky.fetch_unread_mentions(self.page_size)

        if not notifications:
            return {"found": 0, "enqueued": 0}

        logger.info(f"[INGESTOR] Found {len(notifications)} unread mentions")

        enqueued = 0
        duplicates = 0
        skipped = 0
        storage_failed = False

        for notification in notifications:
            mention = self.to_mention(notification)
            if mention is None:
                skipped += 1
                continue

            try:
                result = await self.store.enqueue(mention)
            except StorageError as e:
                logger.error(f"[INGESTOR] Failed to enqueue {notification.uri}: {e}")
                storage_failed = True
                continue

            if result is EnqueueResult.INSERTED:
                enqueued += 1
            else:
                duplicates += 1

        if storage_failed:
            logger.warning("[INGESTOR] Leaving notifications unread after storage failure")
        else:
            await self.bluesky.mark_notifications_seen(polled_at)

        logger.info(
            f"[INGESTOR] enqueued={enqueued} | duplicates={duplicates} | skipped={skipped}"
        )
        return {
            "found": len(notifications),
            "enqueued": enqueued,
            "duplicates": duplicates,
            "skipped": skipped,
            "marked_seen": not storage_failed
        }
