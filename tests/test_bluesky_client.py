import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest

from services.bluesky import BlueskyClient, BlueskyError, StrongRef

SESSION = {"did": "did:plc:bot", "handle": "bot.test", "accessJwt": "jwt-123"}


def api_notification(n: int, is_read: bool = False, reason: str = "mention") -> dict:
    return {
        "uri": f"at://did:plc:alice/app.bsky.feed.post/{n}",
        "cid": f"bafy-{n}",
        "author": {"did": "did:plc:alice", "handle": "alice.test"},
        "reason": reason,
        "record": {"$type": "app.bsky.feed.post", "text": f"@bot question {n}"},
        "isRead": is_read,
        "indexedAt": "2025-06-10T17:00:00.000Z",
    }


class FakePDS:
    """Routes XRPC calls to canned responses and records requests."""

    def __init__(self, pages=None):
        self.pages = list(pages or [])
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        nsid = request.url.path.rsplit("/", 1)[-1]
        if nsid == "com.atproto.server.createSession":
            return httpx.Response(200, json=SESSION)
        if nsid == "app.bsky.notification.listNotifications":
            return httpx.Response(200, json=self.pages.pop(0))
        if nsid == "app.bsky.notification.updateSeen":
            return httpx.Response(200)
        if nsid == "com.atproto.repo.createRecord":
            return httpx.Response(200, json={"uri": "at://did:plc:bot/app.bsky.feed.post/r1", "cid": "bafy-r1"})
        return httpx.Response(404, json={"error": "MethodNotImplemented"})

    def client(self) -> BlueskyClient:
        return BlueskyClient(
            host="https://pds.test/",
            identifier="bot.test",
            password="app-password",
            transport=httpx.MockTransport(self.handler),
        )


def test_authenticate_creates_session() -> None:
    pds = FakePDS()
    client = pds.client()

    session = asyncio.run(client.authenticate())

    assert session.did == "did:plc:bot"
    assert client.session is session
    request = pds.requests[0]
    assert str(request.url) == "https://pds.test/xrpc/com.atproto.server.createSession"
    assert json.loads(request.content) == {"identifier": "bot.test", "password": "app-password"}
    assert "authorization" not in request.headers


def test_fetch_unread_mentions_stops_at_first_read() -> None:
    pds = FakePDS(
        pages=[
            {"notifications": [api_notification(5), api_notification(4)], "cursor": "page-2"},
            {"notifications": [api_notification(3), api_notification(2, is_read=True)], "cursor": "page-3"},
        ]
    )
    client = pds.client()

    async def scenario():
        await client.authenticate()
        return await client.fetch_unread_mentions(page_size=2)

    unread = asyncio.run(scenario())

    assert [n.uri.rsplit("/", 1)[-1] for n in unread] == ["5", "4", "3"]
    assert unread[0].text == "@bot question 5"
    assert unread[0].author_handle == "alice.test"

    first_page, second_page = pds.requests[1:]
    assert first_page.url.params["limit"] == "2"
    assert first_page.url.params["reasons"] == "mention"
    assert "cursor" not in first_page.url.params
    assert second_page.url.params["cursor"] == "page-2"
    assert first_page.headers["authorization"] == "Bearer jwt-123"


def test_fetch_unread_mentions_ends_without_cursor() -> None:
    pds = FakePDS(pages=[{"notifications": [api_notification(1), api_notification(2, reason="reply")]}])
    client = pds.client()

    async def scenario():
        await client.authenticate()
        return await client.fetch_unread_mentions()

    unread = asyncio.run(scenario())

    assert [n.cid for n in unread] == ["bafy-1"]
    assert len(pds.requests) == 2


def test_mark_notifications_seen_sends_utc_timestamp() -> None:
    pds = FakePDS()
    client = pds.client()

    async def scenario():
        await client.authenticate()
        await client.mark_notifications_seen(datetime(2025, 6, 10, 17, 0, tzinfo=timezone.utc))

    asyncio.run(scenario())

    body = json.loads(pds.requests[-1].content)
    assert body == {"seenAt": "2025-06-10T17:00:00Z"}


def test_create_post_replies_in_thread() -> None:
    pds = FakePDS()
    client = pds.client()
    root = StrongRef(uri="at://did:plc:alice/app.bsky.feed.post/1", cid="bafy-1")
    parent = StrongRef(uri="at://did:plc:bot/app.bsky.feed.post/r0", cid="bafy-r0")

    async def scenario():
        await client.authenticate()
        return await client.create_post("hello (1/2)", root=root, parent=parent)

    ref = asyncio.run(scenario())

    assert ref == StrongRef(uri="at://did:plc:bot/app.bsky.feed.post/r1", cid="bafy-r1")
    body = json.loads(pds.requests[-1].content)
    assert body["repo"] == "did:plc:bot"
    assert body["collection"] == "app.bsky.feed.post"
    record = body["record"]
    assert record["text"] == "hello (1/2)"
    assert record["reply"] == {"root": root.to_dict(), "parent": parent.to_dict()}
    assert record["createdAt"].endswith("Z")


def test_create_post_requires_session() -> None:
    client = FakePDS().client()
    root = StrongRef(uri="at://x/1", cid="c")

    with pytest.raises(BlueskyError):
        asyncio.run(client.create_post("hi", root=root, parent=root))


def test_http_error_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "AuthenticationRequired"})

    client = BlueskyClient(host="https://pds.test", identifier="x", password="y", transport=httpx.MockTransport(handler))

    with pytest.raises(BlueskyError, match="HTTP 401"):
        asyncio.run(client.authenticate())


def test_transport_error_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = BlueskyClient(host="https://pds.test", identifier="x", password="y", transport=httpx.MockTransport(handler))

    with pytest.raises(BlueskyError, match="transport error"):
        asyncio.run(client.authenticate())
