#!/usr/bin/env python3
"""
Refresh orchestration for a single feed.

``FeedRefresher.refresh`` looks up the feed, fetches it conditionally,
reconciles new items and always finishes by writing the four scheduling
fields (unchanged_count, next_refresh_at, last_checked_at, last_error) in
one update. The only exits that skip that write are the initial lookups,
when there is no feed row to update.

Refreshes are serialized by one asyncio.Lock shared by the background
scheduler and manual refreshes.
"""

from asyncio import Lock
from time import perf_counter
from typing import Optional

from backoff import next_refresh_at
from config import config, get_logger
from errors import FeedError, FeedReturnedNoContentError, FeedURLError, FetchError
from fetcher import FeedFetcher, FetchResult
from models import CacheMeta, DatabaseQueue, RefreshMeta
from telemetry import annotate_span, trace_span
from utils import truncate_string, utcnow, normalize_url

logger = get_logger("refresher")

NO_CONTENT_MESSAGE = "feed returned no content"


def _error_message(error: BaseException) -> str:
    return truncate_string(str(error) or error.__class__.__name__, config.MAX_ERROR_LENGTH, suffix="")


def _choose(preferred: Optional[str], fallback: Optional[str]) -> Optional[str]:
    if preferred and preferred.strip():
        return preferred
    return fallback


class FeedRefresher:
    """Runs refresh attempts and subscriptions against one database and fetcher."""

    def __init__(self, db: DatabaseQueue, fetcher: FeedFetcher, lock: Optional[Lock] = None):
        self.db = db
        self.fetcher = fetcher
        self.lock = lock or Lock()

    @trace_span(
        "refresh_feed",
        tracer_name="refresher",
        attr_from_args=lambda self, feed_id: {"feed.id": int(feed_id)},
    )
    async def refresh(self, feed_id: int) -> int:
        """Refresh one feed now, waiting for any refresh already in progress.

        Returns:
            The feed id

        Raises:
            FeedNotFoundError / StorageError: If the feed or its cache metadata
                cannot be loaded (nothing is written)
            FetchError: After recording the failure on the feed
            StorageError: If reconciliation fails (after recording it) or the
                final metadata write fails
        """
        async with self.lock:
            return await self._refresh(feed_id)

    async def _refresh(self, feed_id: int) -> int:
        try:
            feed_url = await self.db.execute('get_feed_url', feed_id=feed_id)
        except FeedError as e:
            logger.error(f"Refresh feed {feed_id}: lookup failed: {e}")
            raise

        try:
            cache: CacheMeta = await self.db.execute('get_cache_meta', feed_id=feed_id)
        except FeedError as e:
            logger.error(f"Refresh feed {feed_id} ({feed_url}): cache lookup failed: {e}")
            raise

        start = perf_counter()
        try:
            result: FetchResult = await self.fetcher.fetch(feed_url, cache.etag, cache.last_modified)
        except (FetchError, FeedURLError) as e:
            duration_ms = int((perf_counter() - start) * 1000)
            await self._record_failure(feed_id, e)
            logger.error(f"❌ Refresh feed {feed_id} ({feed_url}) fetch failed after {duration_ms}ms: {e}")
            raise
        duration_ms = int((perf_counter() - start) * 1000)
        checked_at = utcnow()

        meta = RefreshMeta(
            last_checked_at=checked_at,
            etag=_choose(result.etag, cache.etag),
            last_modified=_choose(result.last_modified, cache.last_modified),
        )

        if result.not_modified:
            meta.unchanged_count = cache.unchanged_count + 1
            meta.next_refresh_at = next_refresh_at(checked_at, meta.unchanged_count)
            await self.db.execute('save_refresh_meta', feed_id=feed_id, meta=meta)
            annotate_span(refresh_outcome="not_modified", refresh_streak=meta.unchanged_count)
            logger.info(
                "Refresh feed %d (%s): not modified (status=%d, streak=%d, %dms)",
                feed_id, feed_url, result.status, meta.unchanged_count, duration_ms,
            )
            return feed_id

        if result.feed is None:
            error = FeedReturnedNoContentError(NO_CONTENT_MESSAGE)
            await self._record_failure(feed_id, error, meta)
            logger.warning(f"⚠️ Refresh feed {feed_id} ({feed_url}) returned no content (status={result.status})")
            raise error

        feed_title = result.feed.title.strip() or feed_url
        try:
            updated_id = await self.db.execute('upsert_feed', url=feed_url, title=feed_title)
            inserted = await self.db.execute('upsert_items', feed_id=updated_id, entries=result.feed.entries)
            await self.db.execute('enforce_item_limit', feed_id=updated_id, max_items=config.MAX_ITEMS_PER_FEED)
        except FeedError as e:
            await self._record_failure(feed_id, e, meta)
            logger.error(f"❌ Refresh feed {feed_id} ({feed_url}) reconcile failed: {e}")
            raise

        meta.unchanged_count = cache.unchanged_count + 1 if inserted == 0 else 0
        meta.next_refresh_at = next_refresh_at(checked_at, meta.unchanged_count)
        await self.db.execute('save_refresh_meta', feed_id=updated_id, meta=meta)
        annotate_span(refresh_outcome="updated", refresh_new_items=inserted, refresh_streak=meta.unchanged_count)

        logger.info(
            "Refresh feed %d (%s) updated: title=%r items_in_feed=%d new=%d streak=%d status=%d %dms",
            updated_id, feed_url, feed_title, len(result.feed.entries), inserted,
            meta.unchanged_count, result.status, duration_ms,
        )
        return updated_id

    async def _record_failure(self, feed_id: int, error: BaseException, meta: Optional[RefreshMeta] = None) -> None:
        """Persist a failed attempt with the streak reset. Never raises."""
        meta = meta or RefreshMeta(last_checked_at=utcnow())
        meta.last_error = _error_message(error)
        annotate_span(refresh_outcome="failed", refresh_error=type(error).__name__)
        meta.unchanged_count = 0
        meta.next_refresh_at = next_refresh_at(meta.last_checked_at, 0)
        # Keep the stored validators so the next attempt is not answered with 304
        meta.etag = None
        meta.last_modified = None
        try:
            await self.db.execute('save_refresh_meta', feed_id=feed_id, meta=meta)
        except FeedError as save_error:
            logger.error(f"Refresh feed {feed_id}: failed to save refresh metadata: {save_error}")

    @trace_span(
        "subscribe_feed",
        tracer_name="refresher",
        attr_from_args=lambda self, raw_url: {"feed.url": raw_url},
    )
    async def subscribe(self, raw_url: str) -> int:
        """Subscribe to a feed URL and store its current items.

        Re-subscribing to a known URL updates that feed instead of adding a
        second row.

        Returns:
            The feed id

        Raises:
            FeedURLError: If the URL is blank or malformed (no request is made)
            FetchError: If the feed cannot be fetched or has no content
        """
        feed_url = normalize_url(raw_url)
        async with self.lock:
            result = await self.fetcher.fetch(feed_url)
            if result.not_modified or result.feed is None:
                raise FeedReturnedNoContentError(NO_CONTENT_MESSAGE)

            checked_at = utcnow()
            feed_title = result.feed.title.strip() or feed_url
            feed_id = await self.db.execute('upsert_feed', url=feed_url, title=feed_title)
            inserted = await self.db.execute('upsert_items', feed_id=feed_id, entries=result.feed.entries)
            await self.db.execute('enforce_item_limit', feed_id=feed_id, max_items=config.MAX_ITEMS_PER_FEED)

            meta = RefreshMeta(
                last_checked_at=checked_at,
                next_refresh_at=next_refresh_at(checked_at, 0),
                etag=result.etag,
                last_modified=result.last_modified,
                unchanged_count=0,
            )
            await self.db.execute('save_refresh_meta', feed_id=feed_id, meta=meta)

        logger.info(f"✅ Subscribed to {feed_url} as feed {feed_id} ({feed_title!r}, {inserted} items)")
        return feed_id
