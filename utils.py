#!/usr/bin/env python3
"""
Utility functions shared by the fetcher, store and refresher.

This module contains URL normalization for subscriptions, string truncation
for stored error messages, timestamp conversion helpers and duration
formatting for log output.
"""

from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from errors import EmptyURLError, InvalidURLError

_HOST_FORBIDDEN = set('<>"{}|\\^`/?#@')


def normalize_url(raw: str) -> str:
    """Validate and canonicalize a user-supplied feed URL.

    Surrounding whitespace is trimmed, ``https://`` is prepended when the
    string has no ``scheme://`` prefix and the scheme is lowercased, so the
    same feed typed two ways maps to one subscription.

    Args:
        raw: The URL as typed by the user

    Returns:
        The normalized URL string

    Raises:
        EmptyURLError: If the input is blank
        InvalidURLError: If the URL cannot be parsed, lacks a scheme or host,
            or its host contains characters not allowed in a hostname
    """
    url = (raw or "").strip()
    if not url:
        raise EmptyURLError()

    if "://" not in url:
        url = "https://" + url

    try:
        parts = urlsplit(url)
        # Accessing .port validates the netloc
        parts.port
    except ValueError as e:
        raise InvalidURLError(url, str(e)) from e

    if not parts.scheme or not parts.hostname:
        raise InvalidURLError(url)

    if any(ch.isspace() or ord(ch) < 0x20 or ch in _HOST_FORBIDDEN for ch in parts.hostname):
        raise InvalidURLError(url, f"invalid character in host {parts.hostname!r}")

    return urlunsplit((parts.scheme.lower(), parts.netloc, parts.path, parts.query, parts.fragment))


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated.

    Args:
        text: The text to potentially truncate
        max_length: Maximum allowed length (including suffix)
        suffix: Suffix to add when truncating

    Returns:
        The original text or truncated version with suffix
    """
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string (e.g. "1h 23m 45s")."""
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch(value: Optional[datetime]) -> Optional[int]:
    """Convert an aware (or naive UTC) datetime to integer Unix seconds."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def from_epoch(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def blank(value: Optional[str]) -> bool:
    """True for None or whitespace-only strings."""
    return value is None or not str(value).strip()
