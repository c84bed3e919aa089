from typing import Dict, List

import pytest
import redis
from redis.exceptions import LockNotOwnedError

from outbreak_watch.exceptions import PreviousStateUnreadable
from outbreak_watch.models import ChangeKind, RegionSnapshot
from outbreak_watch.pipeline import IngestionPipeline
from outbreak_watch.store import RedisRunLock, RedisStateStore, snapshot_from_hash


class _FakePipeline:
    def __init__(self, client: "_FakeRedis") -> None:
        self.client = client
        self.ops: List = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self.ops.append((name, args, kwargs))
            return self
        return queue

    def execute(self):
        return [getattr(self.client, name)(*args, **kwargs) for name, args, kwargs in self.ops]


class _FakeRedis:
    """Bytes in, bytes out, like redis-py without decode_responses."""

    def __init__(self) -> None:
        self.strings: Dict[str, bytes] = {}
        self.hashes: Dict[str, Dict[bytes, bytes]] = {}
        self.lists: Dict[str, List[bytes]] = {}
        self.down = False

    def _check(self):
        if self.down:
            raise redis.ConnectionError("connection refused")

    def get(self, key):
        self._check()
        return self.strings.get(key)

    def set(self, key, value):
        self.strings[key] = str(value).encode()

    def hgetall(self, key):
        self._check()
        return dict(self.hashes.get(key, {}))

    def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update({k.encode(): str(v).encode() for k, v in mapping.items()})

    def delete(self, key):
        for d in (self.strings, self.hashes, self.lists):
            d.pop(key, None)

    def rpush(self, key, *values):
        self.lists.setdefault(key, []).extend(v.encode() for v in values)

    def lrange(self, key, start, end):
        return list(self.lists.get(key, []))

    def pipeline(self):
        return _FakePipeline(self)

    def lock(self, name, timeout=None):
        self.lock_args = (name, timeout)
        return _FakeLock()


class _FakeLock:
    """Expires once `owned` is cleared, like a redis lock past its timeout."""

    def __init__(self) -> None:
        self.owned = False
        self.reacquired = 0

    def acquire(self, blocking=None):
        self.owned = True
        return True

    def reacquire(self):
        if not self.owned:
            raise LockNotOwnedError("Cannot reacquire a lock that's no longer owned")
        self.reacquired += 1
        return True

    def release(self):
        if not self.owned:
            raise LockNotOwnedError("Cannot release a lock that's no longer owned")
        self.owned = False


@pytest.fixture
def fake_redis():
    return _FakeRedis()


def test_scalar_roundtrip_and_missing(fake_redis):
    store = RedisStateStore(fake_redis)
    assert store.get_last("MOH.DORSCON") is None
    store.set_last("MOH.DORSCON", "Orange")
    assert store.get_last("MOH.DORSCON") == "Orange"


def test_snapshot_overwrite_drops_stale_fields(fake_redis):
    store = RedisStateStore(fake_redis)
    store.set_snapshot("BNO.Singapore", RegionSnapshot(region="Singapore", cases=5, deaths=0,
                                                       notes="", alert_level="Orange"))
    store.set_snapshot("BNO.Singapore", RegionSnapshot(region="Singapore", cases=7, deaths=0, notes=""))

    snap = store.get_snapshot("BNO.Singapore")
    assert snap == RegionSnapshot(region="Singapore", cases=7, deaths=0, notes="")
    assert store.get_snapshot("BNO.Japan") is None


def test_connection_errors_read_as_unreadable(fake_redis):
    store = RedisStateStore(fake_redis)
    fake_redis.down = True
    with pytest.raises(PreviousStateUnreadable):
        store.get_last("MOH.DORSCON")
    with pytest.raises(PreviousStateUnreadable):
        store.get_snapshot("BNO.Singapore")


def test_malformed_snapshot_is_unreadable():
    with pytest.raises(PreviousStateUnreadable):
        snapshot_from_hash({b"region": b"Singapore", b"cases": b"NaN", b"deaths": b"0"}, key="BNO.Singapore")


def test_region_list_is_replaced(fake_redis):
    store = RedisStateStore(fake_redis)
    store.set_region_list(["Hubei", "Japan"])
    store.set_region_list(["Singapore"])
    assert store.region_list() == ["Singapore"]


def test_undecodable_bytes_read_as_unreadable(fake_redis):
    store = RedisStateStore(fake_redis)
    fake_redis.strings["MOH.DORSCON"] = b"\xff\xfe"
    fake_redis.hashes["BNO.Singapore"] = {b"region": b"Singapore", b"cases": b"5", b"deaths": b"0",
                                          b"notes": b"\xff\xfe"}
    with pytest.raises(PreviousStateUnreadable):
        store.get_last("MOH.DORSCON")
    with pytest.raises(PreviousStateUnreadable):
        store.get_snapshot("BNO.Singapore")


def test_undecodable_snapshot_is_replaced_on_next_ingest(fake_redis, catalog):
    store = RedisStateStore(fake_redis)
    fake_redis.hashes["BNO.Singapore"] = {b"region": b"Singapore", b"cases": b"5", b"deaths": b"0",
                                          b"notes": b"\xff\xfe"}

    changes = IngestionPipeline(store, catalog).ingest_snapshots(
        "BNO", [RegionSnapshot(region="Singapore", cases=7, deaths=0, notes="")],
    )

    assert [(c.kind, c.old) for c in changes] == [(ChangeKind.REGION_STATS_CHANGED, None)]
    assert store.get_snapshot("BNO.Singapore") == RegionSnapshot(region="Singapore", cases=7, deaths=0, notes="")


def test_run_lock_renews_and_reports_expiry(fake_redis):
    lock = RedisStateStore(fake_redis).run_lock("outbreak_watch:run", 300)
    assert isinstance(lock, RedisRunLock)
    assert fake_redis.lock_args == ("outbreak_watch:run", 300)

    assert lock.acquire(blocking=False)
    assert lock.renew()
    lock._lock.owned = False  # expired and taken over

    assert lock.renew() is False
    assert lock.release() is False
