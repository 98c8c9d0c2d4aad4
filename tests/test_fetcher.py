import pytest

from conftest import rss_item, rss_xml
from config import config
from errors import FetchParseError, FetchTransportError, InvalidURLError, UnexpectedStatusError
from fetcher import build_request_headers


def test_conditional_headers_only_when_present():
    headers = build_request_headers(None, "   ")
    assert headers == {"User-Agent": config.USER_AGENT}

    headers = build_request_headers('"abc"', "Wed, 21 Oct 2015 07:28:00 GMT")
    assert headers["If-None-Match"] == '"abc"'
    assert headers["If-Modified-Since"] == "Wed, 21 Oct 2015 07:28:00 GMT"


@pytest.mark.asyncio
async def test_fetch_parses_feed_and_returns_validators(fetcher, feed_server):
    feed_server.body = rss_xml([rss_item(1), rss_item(2)], title="Example Feed")
    feed_server.etag = '"v1"'
    feed_server.last_modified = "Mon, 01 Jan 2024 00:00:00 GMT"

    result = await fetcher.fetch(feed_server.url)

    assert result.status == 200
    assert not result.not_modified
    assert result.feed.title == "Example Feed"
    assert [e.guid for e in result.feed.entries] == ["item-1", "item-2"]
    assert result.etag == '"v1"'
    assert result.last_modified == "Mon, 01 Jan 2024 00:00:00 GMT"
    assert feed_server.requests[-1]["User-Agent"] == config.USER_AGENT
    assert "If-None-Match" not in feed_server.requests[-1]


@pytest.mark.asyncio
async def test_fetch_sends_validators_and_handles_304(fetcher, feed_server):
    feed_server.etag = '"v1"'

    result = await fetcher.fetch(feed_server.url, etag='"v1"', last_modified="Mon, 01 Jan 2024 00:00:00 GMT")

    assert result.not_modified
    assert result.status == 304
    assert result.feed is None
    assert result.etag == '"v1"'
    sent = feed_server.requests[-1]
    assert sent["If-None-Match"] == '"v1"'
    assert sent["If-Modified-Since"] == "Mon, 01 Jan 2024 00:00:00 GMT"


@pytest.mark.asyncio
async def test_fetch_unexpected_status(fetcher, feed_server):
    feed_server.status = 500

    with pytest.raises(UnexpectedStatusError) as exc_info:
        await fetcher.fetch(feed_server.url)

    assert exc_info.value.status == 500


@pytest.mark.asyncio
async def test_fetch_rejects_non_feed_document(fetcher, feed_server):
    feed_server.body = b"this is definitely not a feed"

    with pytest.raises(FetchParseError):
        await fetcher.fetch(feed_server.url)


@pytest.mark.asyncio
async def test_fetch_empty_body_has_no_feed(fetcher, feed_server):
    feed_server.body = b""

    result = await fetcher.fetch(feed_server.url)

    assert result.status == 200
    assert result.feed is None
    assert not result.not_modified


@pytest.mark.asyncio
async def test_fetch_transport_error_wraps_cause(fetcher):
    with pytest.raises(FetchTransportError) as exc_info:
        await fetcher.fetch("http://127.0.0.1:1/feed.xml")

    assert exc_info.value.__cause__ is not None


@pytest.mark.asyncio
async def test_fetch_rejects_invalid_url_before_any_request(fetcher, feed_server):
    with pytest.raises(InvalidURLError):
        await fetcher.fetch("http://")
    assert feed_server.requests == []
