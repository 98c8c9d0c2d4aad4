#!/usr/bin/env python3
"""
Conditional feed fetcher.

One GET per call, with If-None-Match / If-Modified-Since when cached
validators are available. Responses are classified into not-modified,
parsed feed, or one of the FetchError subclasses; the caller decides what
that means for scheduling.
"""

from asyncio import get_running_loop, wait_for, TimeoutError
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from typing import Any, Dict, List, Optional

import feedparser
from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from entries import ParsedFeed, feed_from_feedparser
from errors import FetchParseError, FetchTransportError, UnexpectedStatusError
from telemetry import annotate_span, trace_span
from utils import normalize_url

logger = get_logger("fetcher")

# HTTP status codes
HTTP_NOT_MODIFIED = 304


@dataclass
class FetchResult:
    """Outcome of one conditional GET.

    ``feed`` is None when the response was 304 or the body was empty.
    """
    status: int
    feed: Optional[ParsedFeed] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    not_modified: bool = False


def build_request_headers(etag: Optional[str] = None, last_modified: Optional[str] = None) -> Dict[str, str]:
    """Request headers for a conditional GET; blank validators are omitted."""
    headers = {'User-Agent': config.USER_AGENT}
    if etag and etag.strip():
        headers['If-None-Match'] = etag
    if last_modified and last_modified.strip():
        headers['If-Modified-Since'] = last_modified
    return headers


def _header(response, name: str) -> Optional[str]:
    value = (response.headers.get(name) or "").strip()
    return value or None


def _format_client_error(error: ClientError) -> str:
    """Describe aiohttp client errors with any available status/errno."""
    parts: List[str] = [error.__class__.__name__]
    status = getattr(error, 'status', None)
    if status is not None:
        parts.append(f"status={status}")
    os_error = getattr(error, 'os_error', None)
    if os_error is not None:
        errno = getattr(os_error, 'errno', None)
        strerror = getattr(os_error, 'strerror', None)
        if errno is not None:
            parts.append(f"errno={errno}")
        if strerror:
            parts.append(str(strerror))
    message = str(error)
    if message:
        parts.append(message)
    return " ".join(parts)


class FeedFetcher:
    """Performs conditional feed fetches over a shared aiohttp session.

    A session can be injected (tests, or callers that already own one);
    otherwise ``initialize()`` creates one and ``close()`` disposes of it.
    """

    def __init__(self, session: Optional[ClientSession] = None) -> None:
        self.executor = ThreadPoolExecutor(thread_name_prefix="feedparser")
        self.session = session
        self._owns_session = session is None

    async def initialize(self) -> None:
        if self.session is None:
            self.session = ClientSession(timeout=ClientTimeout(total=config.FEED_FETCH_TIMEOUT))
            self._owns_session = True
        logger.info("FeedFetcher initialized")

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in the thread pool executor."""
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, etag=None, last_modified=None: {
            "feed.url": url,
            "http.conditional": bool(etag or last_modified),
        },
    )
    async def fetch(self, url: str, etag: Optional[str] = None, last_modified: Optional[str] = None) -> FetchResult:
        """Fetch and parse a feed.

        Args:
            url: Feed URL; normalized before use
            etag: Cached ETag, sent as If-None-Match when non-blank
            last_modified: Cached Last-Modified, sent as If-Modified-Since when non-blank

        Returns:
            A FetchResult

        Raises:
            FeedURLError: If the URL is malformed
            FetchTransportError: On network, DNS, TLS or timeout failures
            UnexpectedStatusError: On any status other than 2xx or 304
            FetchParseError: If a 2xx body is not an RSS/Atom document
        """
        url = normalize_url(url)
        if self.session is None:
            await self.initialize()

        headers = build_request_headers(etag, last_modified)
        try:
            async with self.session.get(
                url,
                headers=headers,
                timeout=ClientTimeout(total=config.FEED_FETCH_TIMEOUT),
                max_redirects=config.MAX_REDIRECTS,
            ) as response:
                status = response.status
                annotate_span(http_status=status)
                new_etag = _header(response, 'ETag')
                new_last_modified = _header(response, 'Last-Modified')

                if status == HTTP_NOT_MODIFIED:
                    logger.debug(f"Feed {url} not modified since last fetch")
                    return FetchResult(
                        status=status,
                        etag=new_etag,
                        last_modified=new_last_modified,
                        not_modified=True,
                    )

                if not 200 <= status < 300:
                    raise UnexpectedStatusError(status, url)

                body = await response.read()
                response_headers = {k.lower(): v for k, v in response.headers.items()}
                response_headers['content-location'] = str(response.url)
        except TimeoutError as e:
            raise FetchTransportError(
                f"timed out fetching {url} after {config.FEED_FETCH_TIMEOUT}s"
            ) from e
        except ClientError as e:
            raise FetchTransportError(f"failed to fetch {url}: {_format_client_error(e)}") from e

        feed = await self._parse(url, body, response_headers)
        return FetchResult(
            status=status,
            feed=feed,
            etag=new_etag,
            last_modified=new_last_modified,
        )

    async def _parse(self, url: str, body: bytes, response_headers: Dict[str, str]) -> Optional[ParsedFeed]:
        """Parse a response body with feedparser in the executor.

        An empty body yields None. A document feedparser cannot identify as
        RSS or Atom raises FetchParseError; recoverable well-formedness
        problems in a recognized feed are only logged.
        """
        if not body or not body.strip():
            return None

        feedparser_options = {
            'sanitize_html': True,
            'resolve_relative_uris': True,
            'response_headers': response_headers,
        }
        try:
            parsed = await self.run_in_executor(lambda c: feedparser.parse(c, **feedparser_options), body)
        except (ValueError, TypeError, AttributeError) as e:
            raise FetchParseError(f"failed to parse feed {url}: {e}") from e

        if not parsed.get('version'):
            reason = parsed.get('bozo_exception') or "not an RSS or Atom document"
            raise FetchParseError(f"failed to parse feed {url}: {reason}")

        if parsed.get('bozo'):
            logger.warning(f"Feed parsing warning for {url}: {parsed.get('bozo_exception')}")

        feed = feed_from_feedparser(parsed)
        logger.debug(f"Feed {url} parsed as {feed.version} with {len(feed.entries)} entries")
        return feed

    async def close(self) -> None:
        """Close the HTTP session (if owned) and the parser thread pool."""
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None
        logger.debug("Shutting down thread pool executor...")
        try:
            await wait_for(
                get_running_loop().run_in_executor(None, lambda: self.executor.shutdown(wait=True)),
                timeout=30.0,
            )
        except TimeoutError:
            logger.warning("Thread pool executor shutdown timed out after 30 seconds")
            self.executor.shutdown(wait=False)
        logger.info("FeedFetcher closed")
