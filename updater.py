#!/usr/bin/env python3
"""
Feed updater.

Turns one feed into a committed set of notifications:

1. classify the feed id (intro, series or channel),
2. fetch the latest metadata from the addon, with a cache-break token,
3. map it to notification records and drop those past the retention window,
4. commit index pruning, index inserts, record writes and the feed's
   last-updated time as one atomic batch.

`update_feeds` runs a batch of feeds through a SingleFlightQueue keyed by
feed id, so a feed never has two updates racing on its index, and one failing
feed never stops the rest of the batch.
"""

from asyncio import gather
from time import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from config import config, get_logger
from errors import FeedUpdateError, MappingError
from feed_queue import SingleFlightQueue
from feeds import FeedKind, classify_feed, intro_notification, window_size_for
from models import NotificationBatch
from notifications import map_meta_to_notifs
from telemetry import trace_span
from utils import cache_break_token

# Module-specific logger
logger = get_logger("updater")


class FeedUpdater:
    """Processes single feed updates against a notification store.

    Args:
        store: A started NotificationStore or RedisNotificationStore.
        fetcher: Object with `async get(kind, feed_id, extra) -> meta`.
        mapper: Callable turning a meta object into notification records.
        clock: Returns the current time in epoch seconds.
    """

    def __init__(
        self,
        store,
        fetcher,
        mapper: Callable[[Dict[str, Any]], List[Dict[str, Any]]] = map_meta_to_notifs,
        clock: Callable[[], float] = time,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.mapper = mapper
        self.clock = clock

    @trace_span(
        "process_feed",
        tracer_name="updater",
        attr_from_args=lambda self, feed: {"feed.id": str(feed.get("id"))},
    )
    async def process_feed(self, feed: Dict[str, Any]) -> Dict[str, Any]:
        """Update one feed and return a summary of what was committed.

        Raises:
            UnsupportedFeedError: the feed id has no recognized shape.
            FetchError: the addon could not deliver metadata.
            MappingError: the metadata could not be mapped to notifications.
            CommitError: the store rejected the batch.
        Nothing is written unless the final commit succeeds.
        """
        feed_id = feed.get("id")
        kind = classify_feed(feed_id)
        now = int(self.clock())

        if kind == FeedKind.INTRO:
            return await self._seed_intro(feed_id, now)

        extra = {
            "windowSize": window_size_for(kind),
            "cacheBreak": cache_break_token(now, config.CACHE_BREAK_PERIOD),
        }
        meta = await self.fetcher.get(kind, feed_id, extra)

        cutoff = now - config.RETENTION_WINDOW
        try:
            candidates = self.mapper(meta)
            notifs = [n for n in candidates if int(n["published"]) > cutoff]
        except Exception as e:
            raise MappingError(f"Could not map metadata for {feed_id}: {e.__class__.__name__} {e}", feed_id=feed_id) from e
        skipped = len(candidates) - len(notifs)
        if skipped:
            logger.debug(f"Dropped {skipped} notifications older than the retention window for {feed_id}")

        batch = NotificationBatch(feed_id)
        batch.prune_index(feed_id, cutoff)
        batch.index_insert_many(feed_id, [(n["_id"], n["published"]) for n in notifs])
        for notif in notifs:
            # Rewriting refreshes the expiry even though `published` is unchanged
            batch.write_record_with_expiry(notif["_id"], {**notif, "feed_id": feed_id}, config.RETENTION_WINDOW)
        batch.set_feed_updated(feed_id, now)
        await self.store.commit(batch)

        logger.info(f"Updated {kind} feed {feed_id}: {len(notifs)} notifications in window")
        return {"feed_id": feed_id, "kind": kind, "notifications": len(notifs), "updated_at": now}

    async def _seed_intro(self, feed_id: str, now: int) -> Dict[str, Any]:
        notif = intro_notification()
        batch = NotificationBatch(feed_id)
        batch.index_insert_many(feed_id, [(notif["_id"], notif["published"])])
        batch.write_record_with_expiry(notif["_id"], {**notif, "feed_id": feed_id}, config.RETENTION_WINDOW)
        batch.set_feed_updated(feed_id, now)
        await self.store.commit(batch)

        logger.info(f"Seeded intro feed {feed_id}")
        return {"feed_id": feed_id, "kind": FeedKind.INTRO, "notifications": 1, "updated_at": now}


@trace_span(
    "update_feeds",
    tracer_name="updater",
    attr_from_args=lambda updater, feeds, queue: {"feed.count": len(feeds)},
)
async def update_feeds(
    updater: FeedUpdater,
    feeds: Sequence[Dict[str, Any]],
    queue: SingleFlightQueue,
) -> List[Optional[Dict[str, Any]]]:
    """Update a batch of feeds, isolating per-feed failures.

    Each feed is submitted to `queue` under its own id and the call waits for
    every submission to settle. A failed feed is logged with its id and
    reported as None at its position in the result list; the batch as a whole
    only fails on errors in the queue itself.
    """
    futures = []
    for feed in feeds:
        feed_key = str(feed.get("id"))
        futures.append(queue.submit(feed_key, lambda feed=feed: updater.process_feed(feed)))

    outcomes = await gather(*futures, return_exceptions=True)

    results: List[Optional[Dict[str, Any]]] = []
    failed = 0
    for feed, outcome in zip(feeds, outcomes):
        if isinstance(outcome, BaseException):
            failed += 1
            if isinstance(outcome, FeedUpdateError):
                logger.error(f"Error updating feed {feed.get('id')}: {outcome}")
            else:
                logger.error(f"Error updating feed {feed.get('id')}: {outcome!r}", exc_info=outcome)
            results.append(None)
        else:
            results.append(outcome)

    logger.info(f"Feed batch finished: {len(feeds) - failed} updated, {failed} failed")
    return results
