#!/usr/bin/env python3
"""
Notification Feed Update Orchestrator

Runs feed updates against the notification store:
1. Build the store (SQLite or Redis), the addon fetcher and the keyed queue
2. Submit every feed in the batch, one update per feed at a time
3. Report which feeds were updated and which failed

Supports a single run, a scheduled loop, and a few read-only commands for
inspecting what the store holds.
"""

import asyncio
import argparse
import json
import sys
import time
from typing import Any, Dict, List, Optional

from config import config, get_logger
from telemetry import init_telemetry, trace_span
from addon import AddonFetcher
from feed_queue import SingleFlightQueue
from models import NotificationStore
from redis_store import RedisNotificationStore
from updater import FeedUpdater, update_feeds
from utils import format_duration, format_timestamp

# Module-specific logger
logger = get_logger("orchestrator")
init_telemetry("notification-feeds-orchestrator")


def create_store():
    """Build the store selected by STORE_BACKEND."""
    if config.STORE_BACKEND == "redis":
        return RedisNotificationStore(config.REDIS_URL)
    return NotificationStore(config.DATABASE_PATH)


class FeedUpdateOrchestrator:
    """Owns the store, fetcher and queue for the lifetime of a command."""

    def __init__(self, store=None, fetcher=None, queue: Optional[SingleFlightQueue] = None) -> None:
        self.store = store or create_store()
        self.fetcher = fetcher or AddonFetcher()
        self.queue = queue
        self.updater = FeedUpdater(self.store, self.fetcher)

    async def __aenter__(self) -> "FeedUpdateOrchestrator":
        await self.store.start()
        if hasattr(self.fetcher, "initialize"):
            await self.fetcher.initialize()
        if self.queue is None:
            self.queue = SingleFlightQueue(config.QUEUE_CONCURRENCY)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self.queue is not None:
            await self.queue.close()
        if hasattr(self.fetcher, "close"):
            await self.fetcher.close()
        await self.store.stop()

    @trace_span("run_update", tracer_name="orchestrator", attr_from_args=lambda self, feed_ids=None: {"feed.count": len(feed_ids or [])})
    async def run_update(self, feed_ids: Optional[List[str]] = None) -> List[Optional[Dict[str, Any]]]:
        """Update the given feeds (or every configured feed) once."""
        feed_ids = feed_ids if feed_ids else list(config.FEED_IDS)
        if not feed_ids:
            logger.warning("⚠️ No feeds to update; add some to feeds.yaml or pass them as arguments")
            return []

        logger.info(f"📡 Updating {len(feed_ids)} feeds")
        start = time.time()
        results = await update_feeds(self.updater, [{"id": feed_id} for feed_id in feed_ids], self.queue)
        updated = sum(1 for r in results if r is not None)
        logger.info(f"✅ Updated {updated}/{len(feed_ids)} feeds in {format_duration(time.time() - start)}")
        return results

    async def run_scheduled(self, feed_ids: Optional[List[str]] = None, max_cycles: Optional[int] = None) -> None:
        """Update feeds every UPDATE_INTERVAL_MINUTES, purging expired records each cycle."""
        interval = config.UPDATE_INTERVAL_MINUTES * 60
        cycles = 0
        while max_cycles is None or cycles < max_cycles:
            config.reload_feed_sources()
            await self.run_update(feed_ids)
            expired = await self.store.expire_notifications()
            if expired:
                logger.info(f"🧹 Purged {expired} expired notifications")
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            logger.info(f"Sleeping for {format_duration(interval)} until next run")
            await asyncio.sleep(interval)

    async def check_status(self) -> Dict[str, Any]:
        """Collect last-updated times and index sizes for known feeds."""
        updates = await self.store.list_feed_updates()
        feed_ids = sorted(set(updates) | set(config.FEED_IDS))
        feeds = {}
        for feed_id in feed_ids:
            index = await self.store.get_index(feed_id)
            feeds[feed_id] = {"last_updated": updates.get(feed_id), "indexed": len(index)}
        return {"backend": config.STORE_BACKEND, "feeds": feeds}

    def print_status(self, status: Dict[str, Any]) -> None:
        print(f"📊 Notification store ({status['backend']})")
        now = time.time()
        for feed_id, info in status["feeds"].items():
            last = info["last_updated"]
            age = f"{format_duration(now - last)} ago" if last else "never"
            print(f"  {feed_id}: {info['indexed']} notifications, updated {format_timestamp(last)} ({age})")
        if not status["feeds"]:
            print("  (no feeds)")

    async def query(self, feed_ids: List[str], since: int, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return notifications of `feed_ids` published after `since`."""
        return await self.store.get_notifications_since(feed_ids, since, limit=limit)


async def _run(args) -> int:
    async with FeedUpdateOrchestrator() as orchestrator:
        if args.mode == "run":
            results = await orchestrator.run_update(args.feeds)
            return 0 if all(r is not None for r in results) else 1

        if args.mode == "scheduled":
            await orchestrator.run_scheduled(args.feeds)
            return 0

        if args.mode == "status":
            orchestrator.print_status(await orchestrator.check_status())
            return 0

        if args.mode == "query":
            if not args.feeds:
                logger.error("query needs at least one feed id")
                return 2
            notifs = await orchestrator.query(args.feeds, args.since, limit=args.limit)
            print(json.dumps(notifs, indent=2, sort_keys=True))
            return 0

        if args.mode == "expire":
            expired = await orchestrator.store.expire_notifications()
            logger.info(f"🧹 Purged {expired} expired notifications")
            return 0

    return 2


def main():
    """Main entry point with command line argument parsing."""
    parser = argparse.ArgumentParser(description='Notification Feed Updater')
    parser.add_argument('mode', choices=['run', 'scheduled', 'status', 'query', 'expire'],
                        help='Operation mode')
    parser.add_argument('feeds', nargs='*',
                        help='Feed ids (defaults to the feeds in feeds.yaml)')
    parser.add_argument('--since', type=int, default=0,
                        help='For query: only notifications published after this epoch timestamp')
    parser.add_argument('--limit', type=int, default=None,
                        help='For query: maximum number of notifications')

    args = parser.parse_args()
    logger.debug(f"Configuration: {config.get_config_summary()}")

    try:
        sys.exit(asyncio.run(_run(args)))
    except KeyboardInterrupt:
        logger.info("👋 Updater shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
