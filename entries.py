#!/usr/bin/env python3
"""
Parsed feed model and item identity.

feedparser results are converted into small dataclasses right after parsing
so the store and refresher never touch FeedParserDict directly. GUID
derivation lives here as a pure function: the same logical item must map to
the same GUID on every fetch, or tombstones and dedup stop working.
"""

import calendar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from config import get_logger

logger = get_logger("entries")


@dataclass
class FeedEntry:
    """One item as served by the upstream feed."""
    guid: str = ""
    link: str = ""
    title: str = ""
    summary: str = ""
    content: str = ""
    published_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class ParsedFeed:
    """A successfully parsed RSS/Atom document."""
    title: str = ""
    link: str = ""
    version: str = ""
    entries: List[FeedEntry] = field(default_factory=list)


def _get_entry_value(entry, name: str) -> Any:
    """Safely fetch feedparser entry fields with attribute or dict access."""
    if entry is None:
        return None
    getter = getattr(entry, 'get', None)
    if callable(getter):
        return getter(name)
    return getattr(entry, name, None)


def _text(entry, name: str) -> str:
    value = _get_entry_value(entry, name)
    if value is None:
        return ""
    return str(value).strip()


def _struct_to_datetime(value) -> Optional[datetime]:
    """feedparser *_parsed fields are UTC time.struct_time tuples."""
    if not value:
        return None
    try:
        return datetime.fromtimestamp(calendar.timegm(tuple(value)[:9]), tz=timezone.utc)
    except (OverflowError, ValueError, OSError, TypeError):
        return None


def _updated_parsed(entry):
    # feedparser answers a missing updated_parsed with published_parsed and a DeprecationWarning
    if hasattr(entry, 'keys') and 'updated' not in entry:
        return None
    return _get_entry_value(entry, 'updated_parsed')


def _entry_content(entry) -> str:
    contents = _get_entry_value(entry, 'content') or []
    for item in contents:
        value = _get_entry_value(item, 'value')
        if value:
            return str(value)
    return ""


def entry_from_feedparser(entry) -> FeedEntry:
    return FeedEntry(
        guid=_text(entry, 'id'),
        link=_text(entry, 'link'),
        title=_text(entry, 'title'),
        summary=_text(entry, 'summary') or _text(entry, 'description'),
        content=_entry_content(entry),
        published_at=_struct_to_datetime(_get_entry_value(entry, 'published_parsed')),
        updated_at=_struct_to_datetime(_updated_parsed(entry)),
    )


def feed_from_feedparser(parsed) -> ParsedFeed:
    """Convert a feedparser result into a ParsedFeed."""
    channel = _get_entry_value(parsed, 'feed') or {}
    entries = [entry_from_feedparser(e) for e in (_get_entry_value(parsed, 'entries') or [])]
    return ParsedFeed(
        title=_text(channel, 'title'),
        link=_text(channel, 'link'),
        version=_text(parsed, 'version'),
        entries=entries,
    )


def format_rfc3339(value: datetime) -> str:
    """UTC timestamp as RFC 3339 with a Z suffix (fractional seconds only when present)."""
    value = value.astimezone(timezone.utc)
    if value.microsecond:
        return value.strftime('%Y-%m-%dT%H:%M:%S.%f').rstrip('0') + 'Z'
    return value.strftime('%Y-%m-%dT%H:%M:%SZ')


def _guid_from_id(entry: FeedEntry) -> str:
    return (entry.guid or "").strip()


def _guid_from_link(entry: FeedEntry) -> str:
    return (entry.link or "").strip()


def _guid_from_title(entry: FeedEntry) -> str:
    return (entry.title or "").strip()


def _guid_from_published(entry: FeedEntry) -> str:
    if entry.published_at is None:
        return ""
    return format_rfc3339(entry.published_at)


GUID_EXTRACTORS: List[Callable[[FeedEntry], str]] = [
    _guid_from_id,
    _guid_from_link,
    _guid_from_title,
    _guid_from_published,
]


def derive_guid(feed_id: int, index: int, entry: FeedEntry) -> str:
    """Return a stable identity for an entry.

    Tries the feed-supplied guid, then link, title and published time, and
    falls back to the entry's position in the document.
    """
    for extractor in GUID_EXTRACTORS:
        guid = extractor(entry)
        if guid:
            return guid
    logger.debug(f"Entry {index} of feed {feed_id} has no identity fields, using positional guid")
    return f"feed-{feed_id}-item-{index}"


def derive_published_at(entry: FeedEntry) -> Optional[datetime]:
    """Published time, else updated time, else None."""
    if entry.published_at is not None:
        return entry.published_at
    return entry.updated_at
