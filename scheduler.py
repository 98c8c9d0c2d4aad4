#!/usr/bin/env python3
"""
Background refresh scheduler.

Two loops run side by side until ``stop()`` is called:

- the refresh loop ticks every REFRESH_LOOP_INTERVAL_SECONDS and refreshes
  at most REFRESH_BATCH_SIZE due feeds, one at a time
- the cleanup loop ticks every CLEANUP_INTERVAL_MINUTES and removes items
  read longer ago than READ_RETENTION_MINUTES, then expired tombstones

A failing feed or tick is logged and never ends either loop.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

from config import config, get_logger
from errors import FeedError
from models import DatabaseQueue
from refresher import FeedRefresher
from telemetry import trace_span
from utils import utcnow

logger = get_logger("scheduler")


class RefreshScheduler:
    """Drives periodic refreshes of due feeds and read-item cleanup."""

    def __init__(
        self,
        db: DatabaseQueue,
        refresher: FeedRefresher,
        loop_interval: Optional[float] = None,
        cleanup_interval: Optional[float] = None,
        batch_size: Optional[int] = None,
    ):
        self.db = db
        self.refresher = refresher
        self.loop_interval = loop_interval if loop_interval is not None else config.REFRESH_LOOP_INTERVAL_SECONDS
        self.cleanup_interval = (
            cleanup_interval if cleanup_interval is not None else config.CLEANUP_INTERVAL_MINUTES * 60
        )
        self.batch_size = batch_size or config.REFRESH_BATCH_SIZE
        self._stop_event = asyncio.Event()
        self.last_tick_at: Optional[datetime] = None
        self.last_cleanup_at: Optional[datetime] = None

    @trace_span("scheduler.refresh_due_feeds", tracer_name="scheduler")
    async def refresh_due_feeds(self, now: Optional[datetime] = None) -> int:
        """Refresh the feeds that are due, up to the batch size.

        Returns:
            Number of feeds refreshed successfully
        """
        now = now or utcnow()
        self.last_tick_at = now
        feed_ids = await self.db.execute('list_due_feeds', now=now, limit=self.batch_size)
        if not feed_ids:
            return 0

        logger.debug(f"Refreshing {len(feed_ids)} due feeds: {feed_ids}")
        refreshed = 0
        for feed_id in feed_ids:
            try:
                await self.refresher.refresh(feed_id)
                refreshed += 1
            except FeedError as e:
                # Already recorded on the feed where possible
                logger.warning(f"Feed {feed_id} refresh failed: {e}")
            except Exception:
                logger.exception(f"Unexpected error refreshing feed {feed_id}")
        return refreshed

    @trace_span("scheduler.cleanup", tracer_name="scheduler")
    async def run_cleanup(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Remove long-read items, then tombstones past their retention."""
        now = now or utcnow()
        self.last_cleanup_at = now
        items = await self.db.execute(
            'cleanup_read_items', retention_minutes=config.READ_RETENTION_MINUTES, now=now
        )
        tombstones = await self.db.execute(
            'prune_tombstones', retention_days=config.TOMBSTONE_RETENTION_DAYS, now=now
        )
        return {"items": items, "tombstones": tombstones}

    async def _wait(self, seconds: float) -> bool:
        """Sleep for ``seconds`` or until stopped. Returns True if stopped."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _refresh_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.refresh_due_feeds()
            except Exception as e:
                logger.error(f"💥 Refresh tick failed: {e}")
            if await self._wait(self.loop_interval):
                break

    async def _cleanup_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_cleanup()
            except Exception as e:
                logger.error(f"💥 Cleanup tick failed: {e}")
            if await self._wait(self.cleanup_interval):
                break

    async def run(self) -> None:
        """Run both loops until ``stop()`` is called."""
        self._stop_event.clear()
        logger.info(
            f"🚀 Refresh scheduler started (tick={self.loop_interval}s, batch={self.batch_size}, "
            f"cleanup every {self.cleanup_interval}s)"
        )
        await asyncio.gather(self._refresh_loop(), self._cleanup_loop())
        logger.info("📶 Refresh scheduler stopped")

    def stop(self) -> None:
        """Ask both loops to exit at their next wait. In-flight work finishes."""
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    async def get_status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Summarize feeds and scheduling state for status output."""
        now = now or utcnow()
        feeds = await self.db.execute('list_feeds')
        due = await self.db.execute('list_due_feeds', now=now, limit=max(len(feeds), 1))
        upcoming = [f.next_refresh_at for f in feeds if f.next_refresh_at and f.next_refresh_at > now]
        return {
            'current_time': now.isoformat(),
            'feed_count': len(feeds),
            'due_count': len(due),
            'erroring_count': sum(1 for f in feeds if f.last_error),
            'item_count': sum(f.item_count for f in feeds),
            'unread_count': sum(f.unread_count for f in feeds),
            'next_refresh_at': min(upcoming).isoformat() if upcoming else None,
            'last_tick_at': self.last_tick_at.isoformat() if self.last_tick_at else None,
        }
