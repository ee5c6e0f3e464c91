import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from errors import CommitError
from models import NotificationBatch
from redis_store import RedisNotificationStore


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def hset(self, *args):
        self.commands.append(("hset",) + args)

    def zremrangebyscore(self, *args):
        self.commands.append(("zremrangebyscore",) + args)

    def zadd(self, *args):
        self.commands.append(("zadd",) + args)

    def set(self, *args, **kwargs):
        self.commands.append(("set",) + args + tuple(sorted(kwargs.items())))

    async def execute(self):
        if self.client.fail_with is not None:
            raise self.client.fail_with
        self.client.executed.append(self.commands)
        return [True] * len(self.commands)


class FakeRedis:
    def __init__(self, fail_with=None):
        self.fail_with = fail_with
        self.executed = []
        self.transactions = []
        self.hashes = {}
        self.zsets = {}
        self.strings = {}

    def pipeline(self, transaction=True):
        self.transactions.append(transaction)
        return FakePipeline(self)

    async def hget(self, key, field):
        return self.hashes.get(key, {}).get(field)

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def zrange(self, key, start, end, withscores=False):
        return sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1])

    async def zrangebyscore(self, key, low, high, withscores=False):
        floor = float(low.lstrip("("))
        entries = [(member, score) for member, score in self.zsets.get(key, {}).items() if score > floor]
        return sorted(entries, key=lambda item: item[1])

    async def get(self, key):
        return self.strings.get(key)

    async def mget(self, keys):
        return [self.strings.get(key) for key in keys]


@pytest.mark.asyncio
async def test_commit_replays_batch_on_transactional_pipeline():
    client = FakeRedis()
    store = RedisNotificationStore(client=client, key_prefix="")
    batch = (
        NotificationBatch("tt1")
        .prune_index("tt1", 1000)
        .index_insert_many("tt1", [("tt1 1 1", 2000)])
        .write_record_with_expiry("tt1 1 1", {"_id": "tt1 1 1"}, 3600)
        .set_feed_updated("tt1", 5000)
    )

    assert await store.commit(batch) == 4

    assert client.transactions == [True]
    assert client.executed == [[
        ("zremrangebyscore", "feed:tt1", "-inf", 1000),
        ("zadd", "feed:tt1", {"tt1 1 1": 2000}),
        ("set", "notif:tt1 1 1", json.dumps({"_id": "tt1 1 1"}), ("ex", 3600)),
        ("hset", "feeds:updated", "tt1", 5000),
    ]]


@pytest.mark.asyncio
async def test_failed_exec_raises_commit_error():
    store = RedisNotificationStore(client=FakeRedis(fail_with=RedisConnectionError("gone")), key_prefix="")

    with pytest.raises(CommitError) as excinfo:
        await store.commit(NotificationBatch("tt1").set_feed_updated("tt1", 1))

    assert excinfo.value.feed_id == "tt1"


@pytest.mark.asyncio
async def test_readers_use_prefixed_keys_and_order_newest_first():
    client = FakeRedis()
    client.hashes["nf:feeds:updated"] = {"tt1": "5000"}
    client.zsets["nf:feed:tt1"] = {"a": 100.0, "b": 300.0}
    client.zsets["nf:feed:tt2"] = {"b": 300.0, "c": 200.0}
    client.strings = {f"nf:notif:{n}": json.dumps({"_id": n}) for n in ("a", "b", "c")}
    store = RedisNotificationStore(client=client, key_prefix="nf:")

    assert await store.get_feed_updated("tt1") == 5000
    assert await store.get_feed_updated("tt9") is None
    assert await store.list_feed_updates() == {"tt1": 5000}
    assert await store.get_index("tt1") == [("a", 100), ("b", 300)]
    assert await store.get_notification("c") == {"_id": "c"}

    since = await store.get_notifications_since(["tt1", "tt2"], 100)
    assert [n["_id"] for n in since] == ["b", "c"]
    limited = await store.get_notifications_since(["tt1", "tt2"], 0, limit=1)
    assert [n["_id"] for n in limited] == ["b"]
    assert await store.expire_notifications() == 0
