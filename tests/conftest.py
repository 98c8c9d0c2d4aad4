import os

os.environ.setdefault("DISABLE_TELEMETRY", "true")

from datetime import datetime, timezone, timedelta
from email.utils import format_datetime
from xml.sax.saxutils import escape

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from fetcher import FeedFetcher
from models import DatabaseQueue


BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def rss_item(n: int, published: datetime = None) -> dict:
    return {
        "guid": f"item-{n}",
        "title": f"Item {n}",
        "link": f"https://example.com/items/{n}",
        "published": published or BASE_TIME + timedelta(hours=n),
    }


def rss_xml(items, title: str = "Test Feed") -> bytes:
    """Render a minimal RSS 2.0 document."""
    parts = []
    for item in items:
        parts.append("<item>")
        if item.get("guid"):
            parts.append(f"<guid isPermaLink=\"false\">{escape(item['guid'])}</guid>")
        if item.get("title"):
            parts.append(f"<title>{escape(item['title'])}</title>")
        if item.get("link"):
            parts.append(f"<link>{escape(item['link'])}</link>")
        if item.get("published"):
            parts.append(f"<pubDate>{format_datetime(item['published'])}</pubDate>")
        parts.append(f"<description>{escape(item.get('summary', 'Summary'))}</description>")
        parts.append("</item>")
    return (
        "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
        "<rss version=\"2.0\"><channel>"
        f"<title>{escape(title)}</title>"
        "<link>https://example.com/</link>"
        "<description>Test</description>"
        f"{''.join(parts)}"
        "</channel></rss>"
    ).encode("utf-8")


class FeedServer:
    """Local HTTP server standing in for a feed host.

    ``body``, ``status`` and ``etag`` can be changed between requests. When
    ``etag`` is set and the client sends a matching If-None-Match, the server
    answers 304.
    """

    def __init__(self):
        self.body = rss_xml([rss_item(1)])
        self.status = 200
        self.etag = None
        self.last_modified = None
        self.requests = []
        self.server = None

    async def handle(self, request: web.Request) -> web.Response:
        self.requests.append(dict(request.headers))
        headers = {}
        if self.etag:
            headers["ETag"] = self.etag
        if self.last_modified:
            headers["Last-Modified"] = self.last_modified
        if self.etag and request.headers.get("If-None-Match") == self.etag:
            return web.Response(status=304, headers=headers)
        return web.Response(
            status=self.status,
            body=self.body,
            headers=headers,
            content_type="application/rss+xml",
        )

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/feed.xml", self.handle)
        self.server = TestServer(app)
        await self.server.start_server()

    @property
    def url(self) -> str:
        return str(self.server.make_url("/feed.xml"))

    async def close(self) -> None:
        await self.server.close()


@pytest_asyncio.fixture
async def db(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "test.db"))
    await queue.start()
    try:
        yield queue
    finally:
        await queue.stop()


@pytest_asyncio.fixture
async def feed_server():
    server = FeedServer()
    await server.start()
    try:
        yield server
    finally:
        await server.close()


@pytest_asyncio.fixture
async def fetcher():
    instance = FeedFetcher()
    await instance.initialize()
    try:
        yield instance
    finally:
        await instance.close()
