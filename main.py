#!/usr/bin/env python3
"""
Pulse RSS command-line entry point.

``run`` starts the background refresh scheduler and keeps going until
interrupted. The other modes perform a single action against the database
(subscribe, refresh one feed, refresh whatever is due, list feeds, sweep or
clean up read items, show status) and exit.

All modes share one long-lived PulseOrchestrator, which owns the database
worker, the HTTP fetcher, the refresh lock and the scheduler.
"""

import asyncio
import argparse
import signal
import sys
from typing import List, Optional

from config import config, get_logger
from errors import FeedError, FeedURLError
from fetcher import FeedFetcher
from models import DatabaseQueue
from refresher import FeedRefresher
from scheduler import RefreshScheduler
from telemetry import init_telemetry, trace_span
from utils import format_duration, utcnow

logger = get_logger("orchestrator")


class PulseOrchestrator:
    """Builds and owns the long-lived engine objects."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)
        self.fetcher = FeedFetcher()
        self.lock = asyncio.Lock()
        self.refresher = FeedRefresher(self.db, self.fetcher, self.lock)
        self.scheduler = RefreshScheduler(self.db, self.refresher)

    async def start(self) -> None:
        await self.db.start()
        await self.fetcher.initialize()

    async def close(self) -> None:
        self.scheduler.stop()
        await self.fetcher.close()
        await self.db.stop()

    async def __aenter__(self) -> "PulseOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @trace_span("orchestrator.run", tracer_name="orchestrator")
    async def run_forever(self) -> None:
        """Run the scheduler until SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.scheduler.stop)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform; KeyboardInterrupt still ends the process
                pass
        await self.scheduler.run()

    async def subscribe(self, urls: List[str]) -> bool:
        """Subscribe to each URL; returns False if any of them failed."""
        ok = True
        for url in urls:
            try:
                feed_id = await self.refresher.subscribe(url)
                print(f"✅ {url} -> feed {feed_id}")
            except FeedURLError as e:
                logger.error(f"❌ Invalid feed URL {url!r}: {e}")
                ok = False
            except FeedError as e:
                logger.error(f"❌ Could not subscribe to {url}: {e}")
                ok = False
        return ok

    async def seed(self) -> bool:
        """Subscribe to every feed listed in feeds.yaml."""
        if not config.FEED_SOURCES:
            logger.warning(f"No feeds listed in {config.FEEDS_CONFIG_PATH}")
            return True
        logger.info(f"🌱 Seeding {len(config.FEED_SOURCES)} feeds from {config.FEEDS_CONFIG_PATH}")
        return await self.subscribe(list(config.FEED_SOURCES.values()))

    async def refresh(self, feed_id: int) -> bool:
        try:
            await self.refresher.refresh(feed_id)
        except FeedError as e:
            logger.error(f"❌ Refresh of feed {feed_id} failed: {e}")
            return False
        return True

    async def refresh_due(self) -> bool:
        refreshed = await self.scheduler.refresh_due_feeds()
        logger.info(f"Refreshed {refreshed} due feeds")
        return True

    async def print_feeds(self) -> None:
        feeds = await self.db.execute('list_feeds')
        if not feeds:
            print("No feeds subscribed")
            return
        now = utcnow()
        for feed in feeds:
            if feed.next_refresh_at:
                due_in = format_duration((feed.next_refresh_at - now).total_seconds())
            else:
                due_in = "now"
            print(f"{feed.id:>4}  {feed.title}  ({feed.unread_count}/{feed.item_count} unread)")
            print(f"      {feed.url}")
            print(f"      streak={feed.unchanged_count} next refresh in {due_in}")
            if feed.last_error:
                print(f"      ⚠️ {feed.last_error}")

    async def sweep(self, feed_id: int) -> bool:
        deleted = await self.db.execute('sweep_read_items', feed_id=feed_id)
        print(f"Swept {deleted} read items from feed {feed_id}")
        return True

    async def cleanup(self) -> bool:
        removed = await self.scheduler.run_cleanup()
        print(f"Removed {removed['items']} read items and {removed['tombstones']} expired tombstones")
        return True

    async def print_status(self) -> None:
        status = await self.scheduler.get_status()
        print("\n📊 Pulse RSS Status")
        print(f"⏰ {status['current_time']}")
        print(f"📰 Feeds: {status['feed_count']} ({status['due_count']} due, {status['erroring_count']} erroring)")
        print(f"📄 Items: {status['item_count']} ({status['unread_count']} unread)")
        print(f"⏭️ Next scheduled refresh: {status['next_refresh_at'] or 'n/a'}")
        print("\n⚙️ Configuration:")
        for key, value in config.get_config_summary().items():
            print(f"   {key}: {value}")


async def run_mode(args: argparse.Namespace) -> bool:
    async with PulseOrchestrator(args.database) as orchestrator:
        if args.mode == 'run':
            await orchestrator.run_forever()
            return True
        if args.mode == 'subscribe':
            return await orchestrator.subscribe(args.targets)
        if args.mode == 'seed':
            return await orchestrator.seed()
        if args.mode == 'refresh':
            ok = True
            for feed_id in args.feed_ids:
                ok = await orchestrator.refresh(feed_id) and ok
            return ok
        if args.mode == 'refresh-due':
            return await orchestrator.refresh_due()
        if args.mode == 'feeds':
            await orchestrator.print_feeds()
            return True
        if args.mode == 'sweep':
            for feed_id in args.feed_ids:
                await orchestrator.sweep(feed_id)
            return True
        if args.mode == 'cleanup':
            return await orchestrator.cleanup()
        if args.mode == 'status':
            await orchestrator.print_status()
            return True
    return False


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Pulse RSS feed refresh engine')
    parser.add_argument('--database', type=str, help=f'SQLite database path (default: {config.DATABASE_PATH})')
    sub = parser.add_subparsers(dest='mode', required=True)

    sub.add_parser('run', help='Run the background refresh scheduler')
    p = sub.add_parser('subscribe', help='Subscribe to one or more feed URLs')
    p.add_argument('targets', nargs='+', metavar='URL')
    sub.add_parser('seed', help='Subscribe to every feed listed in feeds.yaml')
    p = sub.add_parser('refresh', help='Refresh specific feeds now')
    p.add_argument('feed_ids', nargs='+', type=int, metavar='FEED_ID')
    sub.add_parser('refresh-due', help='Refresh one batch of due feeds and exit')
    sub.add_parser('feeds', help='List subscribed feeds')
    p = sub.add_parser('sweep', help='Delete read items from feeds')
    p.add_argument('feed_ids', nargs='+', type=int, metavar='FEED_ID')
    sub.add_parser('cleanup', help='Delete long-read items and expired tombstones')
    sub.add_parser('status', help='Show feed and scheduling status')
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    init_telemetry("pulse-rss")

    try:
        success = asyncio.run(run_mode(args))
        sys.exit(0 if success else 1)
    except KeyboardInterrupt:
        logger.info("👋 Pulse RSS shutting down")
    except FeedError as e:
        logger.error(f"💥 {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
