"""
Bluesky client using httpx against the AT Protocol XRPC endpoints.

Handles app-password login, listing mention notifications, marking them
seen and creating reply posts.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from config.settings import settings

logger = logging.getLogger(__name__)


class BlueskyError(Exception):
    """An XRPC call failed."""


@dataclass(frozen=True)
class Session:
    did: str
    handle: str
    access_jwt: str


@dataclass(frozen=True)
class StrongRef:
    """URI + CID pair identifying one exact post."""

    uri: str
    cid: str

    def to_dict(self) -> dict[str, str]:
        return {"uri": self.uri, "cid": self.cid}


@dataclass(frozen=True)
class Notification:
    uri: str
    cid: str
    author_did: str
    author_handle: str
    reason: str
    text: str
    is_read: bool

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Notification":
        record = data.get("record") or {}
        author = data.get("author") or {}
        return cls(
            uri=data["uri"],
            cid=data["cid"],
            author_did=author.get("did", ""),
            author_handle=author.get("handle", ""),
            reason=data.get("reason", ""),
            text=record.get("text", "") if record.get("$type", "app.bsky.feed.post") == "app.bsky.feed.post" else "",
            is_read=bool(data.get("isRead", False)),
        )


def _timestamp(moment: datetime | None = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class BlueskyClient:
    """Bluesky XRPC client authenticated with an app password."""

    def __init__(
        self,
        host: str | None = None,
        identifier: str | None = None,
        password: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None
    ):
        """Initialize Bluesky client with credentials from settings unless given."""
        self.host = (host or settings.bluesky_host).rstrip("/")
        self.identifier = identifier or settings.bluesky_identifier
        self.password = password or settings.bluesky_password
        self.timeout = timeout
        self.transport = transport
        self.session: Session | None = None

    async def _xrpc(
        self,
        method: str,
        nsid: str,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
        auth: bool = True
    ) -> dict[str, Any]:
        headers = {}
        if auth:
            if not self.session:
                raise BlueskyError("Not authenticated")
            headers["Authorization"] = f"Bearer {self.session.access_jwt}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(
                    method,
                    f"{self.host}/xrpc/{nsid}",
                    headers=headers,
                    params=params,
                    json=body
                )
        except httpx.HTTPError as e:
            raise BlueskyError(f"{nsid}: transport error: {e}") from e

        if response.status_code >= 400:
            raise BlueskyError(f"{nsid}: HTTP {response.status_code}: {response.text[:200]}")

        if not response.content:
            return {}
        return response.json()

    async def authenticate(self) -> Session:
        """
        Create a session with the configured identifier and app password.

        Returns:
            The new session, also kept on the client.
        """
        data = await self._xrpc(
            "POST",
            "com.atproto.server.createSession",
            body={"identifier": self.identifier, "password": self.password},
            auth=False
        )
        self.session = Session(did=data["did"], handle=data["handle"], access_jwt=data["accessJwt"])
        logger.info(f"[BLUESKY] Authenticated as @{self.session.handle}")
        return self.session

    async def list_mention_notifications(
        self,
        cursor: str | None = None,
        limit: int = 10
    ) -> tuple[list[Notification], str | None]:
        """
        Fetch one page of mention notifications, newest first.

        Returns:
            Tuple of (notifications, next_cursor).
        """
        params: dict[str, Any] = {"limit": limit, "reasons": ["mention"]}
        if cursor:
            params["cursor"] = cursor

        data = await self._xrpc("GET", "app.bsky.notification.listNotifications", params=params)
        notifications = [Notification.from_api(n) for n in data.get("notifications", [])]
        return notifications, data.get("cursor")

    async def fetch_unread_mentions(self, page_size: int = 10) -> list[Notification]:
        """
        Page through mention notifications until a read one shows up.

        Notifications arrive newest first, so the first read notification
        marks where the previous poll left off.
        """
        unread: list[Notification] = []
        cursor = None

        while True:
            page, cursor = await self.list_mention_notifications(cursor, page_size)
            if not page:
                break

            reached_read = False
            for notification in page:
                if notification.is_read:
                    reached_read = True
                elif notification.reason == "mention":
                    unread.append(notification)

            if reached_read or not cursor:
                break

        return unread

    async def mark_notifications_seen(self, seen_at: datetime | None = None) -> None:
        """Mark every notification up to seen_at as read."""
        await self._xrpc(
            "POST",
            "app.bsky.notification.updateSeen",
            body={"seenAt": _timestamp(seen_at)}
        )

    async def create_post(self, text: str, root: StrongRef, parent: StrongRef) -> StrongRef:
        """
        Publish a reply post.

        Args:
            text: Post text (max 300 graphemes).
            root: First post of the conversation.
            parent: Post being replied to.

        Returns:
            Reference to the created post.
        """
        if not self.session:
            raise BlueskyError("Not authenticated")

        record = {
            "$type": "app.bsky.feed.post",
            "text": text,
            "createdAt": _timestamp(),
            "reply": {"root": root.to_dict(), "parent": parent.to_dict()}
        }
        data = await self._xrpc(
            "POST",
            "com.atproto.repo.createRecord",
            body={
                "repo": self.session.did,
                "collection": "app.bsky.feed.post",
                "record": record
            }
        )
        logger.info(f"[BLUESKY] Created post {data['uri']} in reply to {parent.uri}")
        return StrongRef(uri=data["uri"], cid=data["cid"])
