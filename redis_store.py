#!/usr/bin/env python3
"""
Redis-backed notification store.

Same contract as models.NotificationStore, laid out the way the feed service
has always stored notifications in Redis:

    feeds:updated        HASH   feed id -> last updated (epoch seconds)
    feed:{feed_id}       ZSET   notification id scored by published time
    notif:{notif_id}     STRING JSON payload, expiring on its own

A NotificationBatch is replayed onto a MULTI/EXEC pipeline, so Redis applies
every command of a commit or none of them.
"""

import json
from typing import Any, Dict, List, Optional, Tuple

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from config import config, get_logger
from errors import CommitError
from models import NotificationBatch
from telemetry import trace_span

logger = get_logger("redis_store")

FEEDS_UPDATED_KEY = "feeds:updated"
FEED_INDEX_KEY = "feed:"
NOTIFS_KEY = "notif:"


class RedisNotificationStore:
    """Notification store on Redis sorted sets and expiring string keys."""

    def __init__(self, url: Optional[str] = None, client=None, key_prefix: Optional[str] = None):
        self.url = url or config.REDIS_URL
        self.client = client
        self.key_prefix = config.REDIS_KEY_PREFIX if key_prefix is None else key_prefix
        self._owns_client = client is None

    def _updated_key(self) -> str:
        return f"{self.key_prefix}{FEEDS_UPDATED_KEY}"

    def _index_key(self, feed_id: str) -> str:
        return f"{self.key_prefix}{FEED_INDEX_KEY}{feed_id}"

    def _notif_key(self, notif_id: str) -> str:
        return f"{self.key_prefix}{NOTIFS_KEY}{notif_id}"

    async def start(self) -> None:
        if self.client is None:
            self.client = aioredis.from_url(self.url, decode_responses=True)
        logger.info("Redis store ready")

    async def stop(self) -> None:
        if self.client is not None and self._owns_client:
            await self.client.aclose()
            self.client = None
        logger.info("Redis store closed")

    def _queue_operation(self, pipe, name: str, params: Dict[str, Any]) -> None:
        if name == "set_feed_updated":
            pipe.hset(self._updated_key(), params["feed_id"], params["timestamp"])
        elif name == "prune_index":
            pipe.zremrangebyscore(self._index_key(params["feed_id"]), "-inf", params["cutoff"])
        elif name == "index_insert_many":
            mapping = {record_id: score for record_id, score in params["entries"]}
            pipe.zadd(self._index_key(params["feed_id"]), mapping)
        elif name == "write_record_with_expiry":
            ttl = params["ttl"]
            if ttl is None:
                pipe.set(self._notif_key(params["record_id"]), params["payload"])
            else:
                # The expiry is refreshed on every write, even for unchanged notifications
                pipe.set(self._notif_key(params["record_id"]), params["payload"], ex=max(int(ttl), 1))
        else:
            raise ValueError(f"Unknown batch operation: {name}")

    @trace_span(
        "store.commit",
        tracer_name="store",
        static_attrs={"db.system": "redis"},
        attr_from_args=lambda self, batch: {
            "feed.id": batch.feed_id or "",
            "store.operations": len(batch),
        },
    )
    async def commit(self, batch: NotificationBatch) -> int:
        """Replay a batch onto a transactional pipeline and execute it."""
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                for name, params in batch.operations:
                    self._queue_operation(pipe, name, params)
                await pipe.execute()
        except (RedisError, ValueError) as e:
            raise CommitError(f"Store commit failed: {e}", feed_id=batch.feed_id) from e
        return len(batch)

    async def get_feed_updated(self, feed_id: str) -> Optional[int]:
        value = await self.client.hget(self._updated_key(), feed_id)
        return int(value) if value is not None else None

    async def list_feed_updates(self) -> Dict[str, int]:
        values = await self.client.hgetall(self._updated_key())
        return {feed_id: int(ts) for feed_id, ts in sorted(values.items())}

    async def get_index(self, feed_id: str) -> List[Tuple[str, int]]:
        entries = await self.client.zrange(self._index_key(feed_id), 0, -1, withscores=True)
        return [(notif_id, int(score)) for notif_id, score in entries]

    async def get_notification(self, notif_id: str) -> Optional[Dict[str, Any]]:
        payload = await self.client.get(self._notif_key(notif_id))
        return json.loads(payload) if payload else None

    async def get_notifications_since(self, feed_ids: List[str], since: int, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return live notifications of the given feeds published after `since`, newest first."""
        scored: List[Tuple[int, str]] = []
        for feed_id in feed_ids:
            entries = await self.client.zrangebyscore(
                self._index_key(feed_id), f"({int(since)}", "+inf", withscores=True
            )
            scored.extend((int(score), notif_id) for notif_id, score in entries)
        if not scored:
            return []

        scored.sort(key=lambda pair: (-pair[0], pair[1]))
        # The same notification can sit in several feeds' indexes
        ordered_ids: List[str] = []
        seen = set()
        for _, notif_id in scored:
            if notif_id not in seen:
                seen.add(notif_id)
                ordered_ids.append(notif_id)

        payloads = await self.client.mget([self._notif_key(notif_id) for notif_id in ordered_ids])
        notifications = [json.loads(payload) for payload in payloads if payload]
        return notifications[:limit] if limit is not None else notifications

    async def expire_notifications(self) -> int:
        # Redis evicts expired keys by itself
        return 0
