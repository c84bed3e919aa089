from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from outbreak_watch.db import Catalog
from outbreak_watch.exceptions import PreviousStateUnreadable, RecipientUnreachable
from outbreak_watch.models import NewsItem, RegionSnapshot


class MemoryLock:
    """
    RunLock on a threading.Lock. `expire_after` makes `renew` fail from that
    renewal on, as if the TTL had run out; release then reports the loss too.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.name: Optional[str] = None
        self.ttl_sec: Optional[float] = None
        self.renewals = 0
        self.expire_after: Optional[int] = None
        self.expired = False

    def acquire(self, blocking: bool = True) -> bool:
        return self._lock.acquire(blocking=blocking)

    def renew(self) -> bool:
        if self.expire_after is not None and self.renewals >= self.expire_after:
            self.expired = True
        if self.expired:
            return False
        self.renewals += 1
        return True

    def release(self) -> bool:
        self._lock.release()
        return not self.expired


class MemoryState:
    """StateStore kept in dicts; `fail_reads` / `fail_writes` hold keys that error."""

    def __init__(self) -> None:
        self.scalars: Dict[str, str] = {}
        self.snapshots: Dict[str, RegionSnapshot] = {}
        self.regions: List[str] = []
        self.fail_reads: set = set()
        self.fail_writes: set = set()
        self.lock = MemoryLock()

    def get_last(self, key: str) -> Optional[str]:
        if key in self.fail_reads:
            raise PreviousStateUnreadable(f"cannot read {key}")
        return self.scalars.get(key)

    def set_last(self, key: str, value: str) -> None:
        if key in self.fail_writes:
            raise ConnectionError(f"cannot write {key}")
        self.scalars[key] = value

    def get_snapshot(self, key: str) -> Optional[RegionSnapshot]:
        if key in self.fail_reads:
            raise PreviousStateUnreadable(f"cannot read {key}")
        return self.snapshots.get(key)

    def set_snapshot(self, key: str, snapshot: RegionSnapshot) -> None:
        if key in self.fail_writes:
            raise ConnectionError(f"cannot write {key}")
        self.snapshots[key] = snapshot

    def set_region_list(self, names: Iterable[str]) -> None:
        self.regions = list(names)

    def run_lock(self, name: str, ttl_sec: float) -> MemoryLock:
        self.lock.name, self.lock.ttl_sec = name, ttl_sec
        return self.lock


class FakeTransport:
    def __init__(self, clock: Optional["FakeClock"] = None, unreachable: Iterable[str] = ()) -> None:
        self.sent: List[Tuple[str, str]] = []
        self.times: List[float] = []
        self.unreachable = set(unreachable)
        self.clock = clock

    def send(self, recipient: str, text: str, *, format: str = "markdown") -> None:
        if recipient in self.unreachable:
            raise RecipientUnreachable(f"{recipient} blocked the bot")
        self.sent.append((recipient, text))
        if self.clock is not None:
            self.times.append(self.clock())

    def to(self, recipient: str) -> List[str]:
        return [text for r, text in self.sent if r == recipient]


class FakeClock:
    """Monotonic clock advanced only by `sleep`."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class StaticAdapter:
    def __init__(self, batches: List[Any]) -> None:
        self.batches = list(batches)
        self.calls = 0

    def fetch(self, source: str):
        self.calls += 1
        batch = self.batches.pop(0) if len(self.batches) > 1 else self.batches[0]
        if isinstance(batch, Exception):
            raise batch
        return batch


@pytest.fixture
def catalog() -> Catalog:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    cat = Catalog(engine)
    cat.create_all()
    yield cat
    cat.close()


@pytest.fixture
def state() -> MemoryState:
    return MemoryState()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def news(link: str, title: str = "Title", source: str = "NHC", day: int = 1) -> NewsItem:
    return NewsItem(title=title, link=link, written_at=datetime(2020, 2, day, tzinfo=timezone.utc), source=source)
