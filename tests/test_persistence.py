import json

import pytest
import redis

from chunkferry.models import FileRecord, FileStatus
from chunkferry.persistence import (
    JsonFileStore,
    MemoryStore,
    NullStore,
    QueuePersistence,
    RedisStore,
    StoreError,
)


class Clock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


class DummyRedis:
    def __init__(self, fail=False):
        self.data = {}
        self.expiry = {}
        self.fail = fail

    def get(self, key):
        if self.fail:
            raise redis.ConnectionError("down")
        return self.data.get(key)

    def set(self, key, value, ex=None):
        if self.fail:
            raise redis.ConnectionError("down")
        self.data[key] = value.encode("utf-8")
        self.expiry[key] = ex

    def delete(self, key):
        self.data.pop(key, None)

    def scan_iter(self, match=None):
        prefix = (match or "*").rstrip("*")
        return [k for k in self.data if k.startswith(prefix)]


def record(fid, updated, status=FileStatus.UPLOADING):
    return FileRecord(id=fid, name=f"{fid}.bin", size=30, uploaded_size=10, progress=33, status=status, total_chunks=3, last_updated=updated)


def test_save_and_load_round_trip():
    clock = Clock()
    p = QueuePersistence(MemoryStore(), clock=clock)
    assert p.save_queue([record("a", clock.now)], {"a": [3, 1]})
    (snap,) = p.load_queue()
    assert snap.file_id == "a"
    assert snap.status == "uploading"
    assert snap.committed_parts == [1, 3]


def test_expired_records_are_purged_and_written_back():
    clock = Clock()
    store = MemoryStore()
    p = QueuePersistence(store, ttl_seconds=86400, clock=clock)
    p.save_queue([record("old", clock.now - 90000), record("new", clock.now - 10)], {})
    assert [s.file_id for s in p.load_queue()] == ["new"]
    stored = json.loads(store.get(p.key))
    assert [f["file_id"] for f in stored["files"]] == ["new"]


def test_version_mismatch_clears_the_document():
    store = MemoryStore()
    p = QueuePersistence(store)
    store.set(p.key, json.dumps({"version": "0.1", "timestamp": 1, "files": []}))
    assert p.load_queue() == []
    assert store.get(p.key) is None


def test_garbage_is_discarded():
    store = MemoryStore()
    p = QueuePersistence(store)
    store.set(p.key, "{not json")
    assert p.load_queue() == []
    assert store.get(p.key) is None


def test_remove_file_and_disabled_persistence():
    clock = Clock()
    p = QueuePersistence(MemoryStore(), clock=clock)
    p.save_queue([record("a", clock.now), record("b", clock.now)], {})
    assert p.remove_file("a")
    assert not p.remove_file("a")
    assert [s.file_id for s in p.load_queue()] == ["b"]
    p.set_enabled(False)
    assert not p.save_queue([record("c", clock.now)], {})
    assert p.load_queue() == []
    assert not QueuePersistence(NullStore()).is_enabled()


def test_json_file_store(tmp_path):
    store = JsonFileStore(tmp_path / "state")
    assert store.get("queue") is None
    store.set("queue", '{"a": 1}')
    store.set("queue-extra", "{}")
    assert store.get("queue") == '{"a": 1}'
    assert store.keys("queue") == ["queue", "queue-extra"]
    assert not list((tmp_path / "state").glob("*.tmp"))
    store.delete("queue")
    store.delete("queue")
    assert store.keys() == ["queue-extra"]


def test_redis_store_uses_namespace_and_expiry():
    client = DummyRedis()
    store = RedisStore(client=client, ttl_seconds=60)
    store.set("queue", "{}")
    assert client.expiry["chunkferry:queue"] == 60
    assert store.get("queue") == "{}"
    assert store.keys() == ["queue"]
    store.delete("queue")
    assert store.get("queue") is None


def test_store_failures_do_not_raise():
    p = QueuePersistence(RedisStore(client=DummyRedis(fail=True)))
    assert not p.save_queue([record("a", 1.0)], {})
    assert p.load_queue() == []
    with pytest.raises(StoreError, match="down"):
        RedisStore(client=DummyRedis(fail=True)).get("x")
