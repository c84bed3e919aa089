from __future__ import annotations

import concurrent.futures as _fut
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from .config import Settings, SourceConfig
from .db import Catalog
from .dispatcher import DispatchResult, Dispatcher, render_status
from .exceptions import SourceUnavailable
from .models import Change, ChangeKind, RawRecord, RegionSnapshot
from .pipeline import IngestionPipeline
from .store import RUN_LOCK_KEY, RedisStateStore, RunLock, StateStore, snapshot_key
from .transport import DiscordWebhookTransport, LogTransport, Transport

logger = logging.getLogger(__name__)


@dataclass
class SourceOutcome:
    name: str
    changes: int = 0
    sent: int = 0
    failed: int = 0
    skipped: bool = False
    error: Optional[str] = None


@dataclass
class RunSummary:
    ran: bool = True
    sources: List[SourceOutcome] = field(default_factory=list)

    @property
    def changes(self) -> int:
        return sum(s.changes for s in self.sources)

    @property
    def sent(self) -> int:
        return sum(s.sent for s in self.sources)

    @property
    def skipped(self) -> List[str]:
        return [s.name for s in self.sources if s.skipped]


class Watcher:
    """
    High-level API: one call to `run_once()` is one scheduled cycle.

    Pipeline per source: fetch → normalize → ingest (read previous, detect, store) → dispatch.
    Sources are fetched in parallel but ingested and dispatched one after the
    other in configured order, so a failing source never holds back the changes
    already found for an earlier one.
    """

    def __init__(
        self,
        sources: Sequence[SourceConfig],
        *,
        state: StateStore,
        catalog: Catalog,
        transport: Transport,
        pacing_sec: float = 1.0,
        fetch_timeout_sec: float = 60.0,
        max_workers: int = 4,
        announce_baseline: bool = True,
        run_lock_ttl_sec: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sources = list(sources)
        self.state = state
        self.catalog = catalog
        self.transport = transport
        self.fetch_timeout_sec = fetch_timeout_sec
        self.max_workers = max(1, int(max_workers or 1))
        self.pipeline = IngestionPipeline(state, catalog, announce_baseline=announce_baseline)
        self.dispatcher = Dispatcher(transport, pacing_sec=pacing_sec, sleep=sleep, clock=clock)
        # Renewed before every source and every send, so it only has to cover one fetch wait
        self.run_lock_ttl_sec = run_lock_ttl_sec or max(300.0, fetch_timeout_sec * 3)
        self._lock: Optional[RunLock] = None
        self._lock_lost = False

    def __enter__(self) -> "Watcher":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        for resource in (self.transport, self.state, self.catalog):
            close = getattr(resource, "close", None)
            if close:
                close()

    # Recipients

    def _source_region_ids(self, source: SourceConfig) -> List[int]:
        ids: Dict[int, None] = {}
        for name in source.regions:
            region = self.catalog.get_region(name)
            if region is not None:
                ids[region.id] = None
        if source.region_pattern:
            for region in self.catalog.regions_matching(source.region_pattern):
                ids[region.id] = None
        return list(ids)

    def recipients_resolver(self, source: SourceConfig) -> Callable[[Change], List[str]]:
        cache: Dict[str, List[str]] = {}

        def recipients_for(change: Change) -> List[str]:
            if change.kind is ChangeKind.REGION_STATS_CHANGED:
                region = self.catalog.get_region(change.region)
                return self.catalog.subscribers_of(region.id) if region else []
            if "source" not in cache:
                cache["source"] = self.catalog.subscribers_of_any(self._source_region_ids(source))
            return cache["source"]

        return recipients_for

    # Run

    def _fetch(self, source: SourceConfig) -> List[RawRecord]:
        return list(source.adapter.fetch(source.name))

    def _start_fetch(self, source: SourceConfig, slots: threading.BoundedSemaphore) -> "_fut.Future":
        """
        Fetch `source` on a daemon thread. At most `max_workers` fetches run at
        once; a hung adapter cannot keep the process alive after the run.
        """
        future: _fut.Future = _fut.Future()

        def work() -> None:
            with slots:
                if not future.set_running_or_notify_cancel():
                    return
                try:
                    future.set_result(self._fetch(source))
                except Exception as e:
                    future.set_exception(e)

        threading.Thread(target=work, name=f"fetch-{source.name}", daemon=True).start()
        return future

    def _keep_lock(self) -> bool:
        """Extend the run lock. False once it has been lost to expiry."""
        if self._lock is None or self._lock_lost:
            return not self._lock_lost
        if not self._lock.renew():
            self._lock_lost = True
            logger.warning("Run lock expired; another run may have started")
        return not self._lock_lost

    def process(self, source: SourceConfig, records: Sequence[RawRecord]) -> SourceOutcome:
        outcome = SourceOutcome(name=source.name)
        changes = self.pipeline.ingest(source, records)
        outcome.changes = len(changes)
        if changes:
            # Stored changes are announced even if the lock is lost meanwhile; no other run will see them
            result: DispatchResult = self.dispatcher.dispatch(
                changes, self.recipients_resolver(source), heartbeat=self._keep_lock,
            )
            outcome.sent, outcome.failed = result.sent, result.failed
        return outcome

    def run_once(self) -> RunSummary:
        lock = self.state.run_lock(RUN_LOCK_KEY, self.run_lock_ttl_sec)
        if not lock.acquire(blocking=False):
            logger.warning("Previous run still in progress; skipping this one")
            return RunSummary(ran=False)
        self._lock, self._lock_lost = lock, False
        try:
            return self._run()
        finally:
            self._lock = None
            if not lock.release():
                logger.warning("Run lock was no longer held at release")

    def _run(self) -> RunSummary:
        summary = RunSummary()
        slots = threading.BoundedSemaphore(self.max_workers)
        futures = [self._start_fetch(s, slots) for s in self.sources]
        try:
            for source, future in zip(self.sources, futures):
                if not self._keep_lock():
                    summary.sources.append(SourceOutcome(name=source.name, skipped=True, error="run lock lost"))
                    continue
                summary.sources.append(self._run_source(source, future))
        finally:
            for future in futures:
                future.cancel()
        logger.info("Run finished: %d change(s), %d message(s) sent, skipped: %s",
                    summary.changes, summary.sent, ", ".join(summary.skipped) or "none")
        return summary

    def _run_source(self, source: SourceConfig, future: "_fut.Future") -> SourceOutcome:
        try:
            records = future.result(timeout=self.fetch_timeout_sec)
        except _fut.TimeoutError:
            logger.warning("Source %s timed out after %gs; skipping", source.name, self.fetch_timeout_sec)
            return SourceOutcome(name=source.name, skipped=True, error="timeout")
        except SourceUnavailable as e:
            logger.warning("Source %s unavailable: %s; skipping", source.name, e)
            return SourceOutcome(name=source.name, skipped=True, error=str(e))
        except Exception as e:
            logger.exception("Scraping %s failed; skipping", source.name)
            return SourceOutcome(name=source.name, skipped=True, error=str(e))

        try:
            return self.process(source, records)
        except Exception as e:
            logger.exception("Processing %s failed", source.name)
            return SourceOutcome(name=source.name, skipped=True, error=str(e))

    # Status

    def status(self, feed: str, region: str) -> Optional[RegionSnapshot]:
        return self.state.get_snapshot(snapshot_key(feed, region))

    def status_text(self, feed: str, region: str) -> Optional[str]:
        snapshot = self.status(feed, region)
        return render_status(snapshot) if snapshot else None


def build_watcher(settings: Settings) -> Watcher:
    """Wire the production collaborators from settings. The caller owns closing the watcher."""
    catalog = Catalog.from_url(settings.database_url, pool_pre_ping=True)
    state = RedisStateStore.from_url(settings.redis_url)
    transport: Transport
    if settings.dry_run:
        transport = LogTransport()
    else:
        transport = DiscordWebhookTransport(bot_token=settings.discord_bot_token)
    return Watcher(
        settings.sources,
        state=state,
        catalog=catalog,
        transport=transport,
        pacing_sec=settings.pacing_sec,
        fetch_timeout_sec=settings.fetch_timeout_sec,
        max_workers=settings.max_workers,
        announce_baseline=settings.announce_baseline,
    )
