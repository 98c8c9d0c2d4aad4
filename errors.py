#!/usr/bin/env python3
"""Common error types shared across modules.

Kept in a leaf module so fetcher, store and refresher can raise and catch
the same classes without circular imports.
"""

from typing import Optional


class FeedError(Exception):
    """Base class for all feed engine errors."""


class FeedURLError(FeedError, ValueError):
    """A subscription URL could not be normalized."""


class EmptyURLError(FeedURLError):
    def __init__(self, message: str = "feed URL is empty"):
        super().__init__(message)


class InvalidURLError(FeedURLError):
    def __init__(self, url: str, reason: str = "missing scheme or host"):
        super().__init__(f"invalid feed URL {url!r}: {reason}")
        self.url = url


class FetchError(FeedError):
    """Any failure to obtain a usable feed document."""


class FetchTransportError(FetchError):
    """Network, DNS, TLS or timeout failure. The cause is chained."""


class UnexpectedStatusError(FetchError):
    """Server answered with a status other than 2xx or 304.

    Attributes:
        status: The HTTP status code.
    """

    def __init__(self, status: int, url: Optional[str] = None):
        message = f"unexpected status {status}"
        if url:
            message += f" from {url}"
        super().__init__(message)
        self.status = status
        self.url = url


class FetchParseError(FetchError):
    """Body was received but is not a recognizable RSS/Atom document."""


class FeedReturnedNoContentError(FetchError):
    def __init__(self, message: str = "feed returned no content"):
        super().__init__(message)


class StorageError(FeedError):
    """Database operation failed."""


class FeedNotFoundError(StorageError):
    def __init__(self, feed_id: int):
        super().__init__(f"feed {feed_id} not found")
        self.feed_id = feed_id


class ItemNotFoundError(StorageError):
    def __init__(self, item_id: int):
        super().__init__(f"item {item_id} not found")
        self.item_id = item_id


__all__ = [
    "FeedError",
    "FeedURLError",
    "EmptyURLError",
    "InvalidURLError",
    "FetchError",
    "FetchTransportError",
    "UnexpectedStatusError",
    "FetchParseError",
    "FeedReturnedNoContentError",
    "StorageError",
    "FeedNotFoundError",
    "ItemNotFoundError",
]
