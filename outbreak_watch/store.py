from __future__ import annotations

from typing import Any, Dict, Iterable, Optional, Protocol

import redis
from redis.exceptions import LockError

from .exceptions import PreviousStateUnreadable
from .models import RegionSnapshot

REGIONS_KEY = "REGIONS"
RUN_LOCK_KEY = "outbreak_watch:run"


def scalar_key(feed: str, label: str) -> str:
    return f"{feed}.{label}"


def snapshot_key(feed: str, region: str) -> str:
    return f"{feed}.{region}"


class RunLock(Protocol):
    def acquire(self, blocking: bool = ...) -> bool:  # pragma: no cover - interface
        ...

    def renew(self) -> bool:  # pragma: no cover - interface
        ...

    def release(self) -> bool:  # pragma: no cover - interface
        ...


class StateStore(Protocol):
    """Durable watermark: the last known value per (feed, label/region) key."""

    def get_last(self, key: str) -> Optional[str]:  # pragma: no cover - interface
        ...

    def set_last(self, key: str, value: str) -> None:  # pragma: no cover - interface
        ...

    def get_snapshot(self, key: str) -> Optional[RegionSnapshot]:  # pragma: no cover - interface
        ...

    def set_snapshot(self, key: str, snapshot: RegionSnapshot) -> None:  # pragma: no cover - interface
        ...

    def set_region_list(self, names: Iterable[str]) -> None:  # pragma: no cover - interface
        ...

    def run_lock(self, name: str, ttl_sec: float) -> RunLock:  # pragma: no cover - interface
        ...


def _text(v: Any) -> str:
    if isinstance(v, bytes):
        return v.decode("utf-8")
    return str(v)


def snapshot_to_hash(snapshot: RegionSnapshot) -> Dict[str, str]:
    data = {
        "region": snapshot.region,
        "cases": str(snapshot.cases),
        "deaths": str(snapshot.deaths),
        "notes": snapshot.notes,
    }
    if snapshot.alert_level is not None:
        data["alert_level"] = snapshot.alert_level
    if snapshot.confirmed_cases is not None:
        data["confirmed_cases"] = str(snapshot.confirmed_cases)
    return data


def snapshot_from_hash(raw: Dict[Any, Any], *, key: str) -> Optional[RegionSnapshot]:
    """
    Rebuild a RegionSnapshot from a redis hash. An empty hash means "never stored".
    Raises PreviousStateUnreadable for hashes that are present but malformed.
    """
    if not raw:
        return None
    try:
        data = {_text(k): _text(v) for k, v in raw.items()}
        confirmed = data.get("confirmed_cases")
        return RegionSnapshot(
            region=data.get("region") or key.split(".", 1)[-1],
            cases=int(data["cases"]),
            deaths=int(data["deaths"]),
            notes=data.get("notes", ""),
            alert_level=data.get("alert_level"),
            confirmed_cases=int(confirmed) if confirmed is not None else None,
        )
    except (KeyError, ValueError) as e:
        raise PreviousStateUnreadable(f"Malformed snapshot at {key}: {e}") from e


class RedisRunLock:
    """
    redis lock held for the duration of a run.

    `renew` resets the expiry to the full timeout; it and `release` return
    False instead of raising once the lock has expired and may belong to
    another run.
    """

    def __init__(self, lock: "redis.lock.Lock") -> None:
        self._lock = lock

    def acquire(self, blocking: bool = True) -> bool:
        return bool(self._lock.acquire(blocking=blocking))

    def renew(self) -> bool:
        try:
            self._lock.reacquire()
            return True
        except LockError:
            return False

    def release(self) -> bool:
        try:
            self._lock.release()
            return True
        except LockError:
            return False


class RedisStateStore:
    """
    StateStore on top of redis.

    Scalars are plain string keys (`MOH.DORSCON`), snapshots are hashes
    (`BNO.Singapore`). Connection errors while reading surface as
    PreviousStateUnreadable; write errors propagate as redis errors.
    """

    def __init__(self, client: "redis.Redis") -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStateStore":
        return cls(redis.Redis.from_url(url))

    def get_last(self, key: str) -> Optional[str]:
        try:
            val = self._client.get(key)
        except redis.RedisError as e:
            raise PreviousStateUnreadable(f"Cannot read {key}: {e}") from e
        try:
            return None if val is None else _text(val)
        except UnicodeDecodeError as e:
            raise PreviousStateUnreadable(f"Undecodable value at {key}: {e}") from e

    def set_last(self, key: str, value: str) -> None:
        self._client.set(key, value)

    def get_snapshot(self, key: str) -> Optional[RegionSnapshot]:
        try:
            raw = self._client.hgetall(key)
        except redis.RedisError as e:
            raise PreviousStateUnreadable(f"Cannot read {key}: {e}") from e
        return snapshot_from_hash(raw, key=key)

    def set_snapshot(self, key: str, snapshot: RegionSnapshot) -> None:
        # Overwrite, so optional fields from an older snapshot do not linger
        pipe = self._client.pipeline()
        pipe.delete(key)
        pipe.hset(key, mapping=snapshot_to_hash(snapshot))
        pipe.execute()

    def set_region_list(self, names: Iterable[str]) -> None:
        names = list(names)
        pipe = self._client.pipeline()
        pipe.delete(REGIONS_KEY)
        if names:
            pipe.rpush(REGIONS_KEY, *names)
        pipe.execute()

    def region_list(self) -> list:
        return [_text(v) for v in self._client.lrange(REGIONS_KEY, 0, -1)]

    def run_lock(self, name: str, ttl_sec: float) -> RunLock:
        return RedisRunLock(self._client.lock(name, timeout=ttl_sec))

    def close(self) -> None:
        self._client.close()
