#!/usr/bin/env python3
"""
Notification store and its atomic write batch.

The store keeps three things: when each feed was last updated, a per-feed
index of notification ids scored by their published time, and the
notification payloads themselves, each with its own expiry. Writers never
touch the store directly; they queue operations on a NotificationBatch and
hand it to `commit`, which applies everything or nothing.
"""

from os import path, access, R_OK
from time import time
import json
from sqlite3 import connect, Row
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from config import config, get_logger
from errors import CommitError
from telemetry import trace_span

# Module-specific logger
logger = get_logger("store")


class NotificationBatch:
    """An ordered list of store writes to be committed as one unit.

    Building a batch has no side effects; nothing is visible to readers until
    a store commits it, and a failed commit applies none of it.
    """

    def __init__(self, feed_id: Optional[str] = None):
        self.feed_id = feed_id
        self.operations: List[Tuple[str, Dict[str, Any]]] = []

    def __len__(self) -> int:
        return len(self.operations)

    def set_feed_updated(self, feed_id: str, timestamp: int) -> "NotificationBatch":
        self.operations.append(("set_feed_updated", {"feed_id": feed_id, "timestamp": int(timestamp)}))
        return self

    def prune_index(self, feed_id: str, cutoff: int) -> "NotificationBatch":
        """Remove index entries scored at or below `cutoff`."""
        self.operations.append(("prune_index", {"feed_id": feed_id, "cutoff": int(cutoff)}))
        return self

    def index_insert_many(self, feed_id: str, entries: Iterable[Tuple[str, int]]) -> "NotificationBatch":
        """Add or re-score index entries given as (record_id, score) pairs."""
        entries = [(str(record_id), int(score)) for record_id, score in entries]
        if entries:
            self.operations.append(("index_insert_many", {"feed_id": feed_id, "entries": entries}))
        return self

    def write_record_with_expiry(self, record_id: str, payload: Dict[str, Any], ttl: Optional[int]) -> "NotificationBatch":
        """Write a record that expires `ttl` seconds after the commit (never when ttl is None)."""
        self.operations.append((
            "write_record_with_expiry",
            {"record_id": str(record_id), "payload": json.dumps(payload), "ttl": ttl},
        ))
        return self


def initialize_database(conn) -> None:
    """Create the schema from the SQL file if the tables are missing."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feed_index'")
        if cursor.fetchone() is None:
            logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(_read_schema_file())
            logger.info("Database schema initialized successfully")
        else:
            logger.debug("Database already has the notification schema")
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")
    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

    with open(schema_path, 'r') as f:
        return f.read()


class NotificationStore:
    """SQLite-backed notification store.

    All database work goes through a queue drained by a single worker task
    that owns the connection, so operations never interleave. Public
    coroutines wrap `execute(operation_name, **params)`, which dispatches to
    the synchronous method of the same name on the worker.
    """

    OPERATIONS = frozenset({
        "apply_batch",
        "read_feed_updated",
        "read_feed_updates",
        "read_index",
        "read_notification",
        "read_notifications_since",
        "purge_expired",
    })

    def __init__(self, db_path: str, clock: Callable[[], float] = time):
        self.db_path = db_path
        self.clock = clock
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the database and start the worker."""
        if self.running:
            return

        if path.isfile(self.db_path):
            logger.info(f"Using existing database at {self.db_path}")
        else:
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

        # Autocommit mode: transactions are opened explicitly in apply_batch
        self.conn = connect(self.db_path, isolation_level=None)
        self.conn.row_factory = Row
        initialize_database(self.conn)

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info("Store worker started")

    async def stop(self) -> None:
        """Stop the worker and close the database."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass
            self.worker_task = None

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release anyone still waiting so they fail instead of hanging
        for operation_id, event in self.events.items():
            self.results.setdefault(operation_id, {"error": RuntimeError("Store stopped")})
            event.set()
        self.events.clear()

        logger.info("Store worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    if operation_name not in self.OPERATIONS:
                        self.results[operation_id] = {"error": ValueError(f"Unknown operation: {operation_name}")}
                    else:
                        method = getattr(self, operation_name)
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Store operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": e}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Store worker cancelled")
                break

    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a store operation on the worker and return its result."""
        if not self.running:
            raise RuntimeError("Store is not running; call start() first")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()
            result = self.results.pop(operation_id)
            if "error" in result:
                raise result["error"]
            return result["result"]
        finally:
            self.events.pop(operation_id, None)
            self.results.pop(operation_id, None)

    # Async API

    @trace_span(
        "store.commit",
        tracer_name="store",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, batch: {
            "feed.id": batch.feed_id or "",
            "store.operations": len(batch),
        },
    )
    async def commit(self, batch: NotificationBatch) -> int:
        """Apply a batch atomically; returns the number of operations applied."""
        return await self.execute('apply_batch', feed_id=batch.feed_id, operations=list(batch.operations))

    async def get_feed_updated(self, feed_id: str) -> Optional[int]:
        return await self.execute('read_feed_updated', feed_id=feed_id)

    async def list_feed_updates(self) -> Dict[str, int]:
        return await self.execute('read_feed_updates')

    async def get_index(self, feed_id: str) -> List[Tuple[str, int]]:
        """Return (notification id, score) pairs for a feed, oldest first."""
        return await self.execute('read_index', feed_id=feed_id)

    async def get_notification(self, notif_id: str) -> Optional[Dict[str, Any]]:
        return await self.execute('read_notification', notif_id=notif_id)

    async def get_notifications_since(self, feed_ids: List[str], since: int, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return live notifications of the given feeds published after `since`, newest first."""
        return await self.execute('read_notifications_since', feed_ids=list(feed_ids), since=int(since), limit=limit)

    async def expire_notifications(self) -> int:
        """Delete notification records whose expiry has passed."""
        return await self.execute('purge_expired')

    # Worker-side operations

    def apply_batch(self, feed_id: Optional[str], operations: List[Tuple[str, Dict[str, Any]]]) -> int:
        """Run every operation inside one transaction, rolling back on any failure."""
        now = int(self.clock())
        cursor = self.conn.cursor()
        try:
            cursor.execute("BEGIN IMMEDIATE")
            for name, params in operations:
                handler = getattr(self, f"_op_{name}", None)
                if handler is None:
                    raise ValueError(f"Unknown batch operation: {name}")
                handler(cursor, now, **params)
            cursor.execute("COMMIT")
            return len(operations)
        except BaseException as e:
            # The connection is shared by every feed, so no failure may leave the transaction open
            if self.conn.in_transaction:
                cursor.execute("ROLLBACK")
            if not isinstance(e, Exception):
                raise
            raise CommitError(f"Store commit failed: {e.__class__.__name__} {e}", feed_id=feed_id) from e
        finally:
            cursor.close()

    def _op_set_feed_updated(self, cursor, now: int, feed_id: str, timestamp: int) -> None:
        cursor.execute(
            "INSERT INTO feed_updates (feed_id, last_updated) VALUES (?, ?) "
            "ON CONFLICT(feed_id) DO UPDATE SET last_updated = excluded.last_updated",
            (feed_id, timestamp)
        )

    def _op_prune_index(self, cursor, now: int, feed_id: str, cutoff: int) -> None:
        cursor.execute("DELETE FROM feed_index WHERE feed_id = ? AND score <= ?", (feed_id, cutoff))

    def _op_index_insert_many(self, cursor, now: int, feed_id: str, entries: List[Tuple[str, int]]) -> None:
        cursor.executemany(
            "INSERT INTO feed_index (feed_id, notif_id, score) VALUES (?, ?, ?) "
            "ON CONFLICT(feed_id, notif_id) DO UPDATE SET score = excluded.score",
            [(feed_id, record_id, score) for record_id, score in entries]
        )

    def _op_write_record_with_expiry(self, cursor, now: int, record_id: str, payload: str, ttl: Optional[int]) -> None:
        expires_at = now + int(ttl) if ttl is not None else None
        cursor.execute(
            "INSERT INTO notifications (id, payload, expires_at) VALUES (?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET payload = excluded.payload, expires_at = excluded.expires_at",
            (record_id, payload, expires_at)
        )

    def read_feed_updated(self, feed_id: str) -> Optional[int]:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT last_updated FROM feed_updates WHERE feed_id = ?", (feed_id,))
            row = cursor.fetchone()
            return row['last_updated'] if row else None
        finally:
            cursor.close()

    def read_feed_updates(self) -> Dict[str, int]:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT feed_id, last_updated FROM feed_updates ORDER BY feed_id")
            return {row['feed_id']: row['last_updated'] for row in cursor.fetchall()}
        finally:
            cursor.close()

    def read_index(self, feed_id: str) -> List[Tuple[str, int]]:
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "SELECT notif_id, score FROM feed_index WHERE feed_id = ? ORDER BY score, notif_id",
                (feed_id,)
            )
            return [(row['notif_id'], row['score']) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def read_notification(self, notif_id: str) -> Optional[Dict[str, Any]]:
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "SELECT payload FROM notifications WHERE id = ? AND (expires_at IS NULL OR expires_at > ?)",
                (notif_id, int(self.clock()))
            )
            row = cursor.fetchone()
            return json.loads(row['payload']) if row else None
        finally:
            cursor.close()

    def read_notifications_since(self, feed_ids: List[str], since: int, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        if not feed_ids:
            return []
        cursor = self.conn.cursor()
        try:
            placeholders = ','.join(['?' for _ in feed_ids])
            query = (
                "SELECT n.id, n.payload, MAX(i.score) AS score FROM feed_index i JOIN notifications n ON n.id = i.notif_id "
                f"WHERE i.feed_id IN ({placeholders}) AND i.score > ? "
                "AND (n.expires_at IS NULL OR n.expires_at > ?) "
                "GROUP BY n.id ORDER BY score DESC, n.id"
            )
            params: List[Any] = list(feed_ids) + [since, int(self.clock())]
            if limit is not None:
                query += " LIMIT ?"
                params.append(int(limit))
            cursor.execute(query, params)
            return [json.loads(row['payload']) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def purge_expired(self) -> int:
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                "DELETE FROM notifications WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (int(self.clock()),)
            )
            deleted = cursor.rowcount
            if deleted:
                logger.info(f"Expired {deleted} notification records")
            return deleted
        finally:
            cursor.close()
