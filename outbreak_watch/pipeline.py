from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from .db import Catalog
from .detector import detect_news, detect_scalar, detect_snapshot
from .exceptions import ParseError, PreviousStateUnreadable
from .models import (
    Change,
    ChangeKind,
    NewsItem,
    RawAlertLevel,
    RawArticle,
    RawConfirmedCases,
    RawRecord,
    RawRegionStats,
    RegionSnapshot,
)
from .normalizer import is_aggregate_row, parse_count, to_alert_level, to_news_item, to_snapshot
from .store import StateStore, scalar_key, snapshot_key

logger = logging.getLogger(__name__)


class KeyedLocks:
    """One lock per watermark key; guards the read-compare-write sequence."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield


class IngestionPipeline:
    """
    Turns one source's batch into stored state and a list of Changes.

    Previous values are always read before they are overwritten. A Change is
    only returned once the new value has been stored, so a failed write is
    re-detected (and announced) on the next run instead of being announced twice.
    """

    def __init__(self, state: StateStore, catalog: Catalog, *, announce_baseline: bool = True) -> None:
        self.state = state
        self.catalog = catalog
        self.announce_baseline = announce_baseline
        self._locks = KeyedLocks()

    def ingest(self, source, records: Iterable[RawRecord]) -> List[Change]:
        """
        Normalize a raw batch for `source` (a SourceConfig) and ingest every record kind.
        Malformed records are skipped; their siblings are still ingested.
        """
        articles: List[NewsItem] = []
        snapshots: List[Tuple[int, RegionSnapshot]] = []
        scalars: List[tuple] = []
        first_seen: Dict[str, int] = {}
        for pos, raw in enumerate(records):
            try:
                if isinstance(raw, RawArticle):
                    item = to_news_item(raw, source.name)
                    articles.append(item)
                    first_seen.setdefault(item.link, pos)
                elif isinstance(raw, RawRegionStats):
                    if not is_aggregate_row(raw):
                        snapshots.append((pos, to_snapshot(raw)))
                elif isinstance(raw, RawAlertLevel):
                    scalars.append((pos, ChangeKind.ALERT_LEVEL_CHANGED, source.alert_label,
                                    to_alert_level(raw.value)))
                elif isinstance(raw, RawConfirmedCases):
                    scalars.append((pos, ChangeKind.CONFIRMED_CASES_CHANGED, source.cases_label,
                                    parse_count(raw.value, field="confirmed cases")))
                else:
                    raise ParseError(f"Unsupported record type {type(raw).__name__}")
            except ParseError as e:
                logger.warning("Skipping malformed record from %s: %s", source.name, e)

        # (input position, change), sorted at the end so changes follow the batch order
        placed: List[Tuple[int, Change]] = []
        if articles:
            placed.extend((first_seen[c.new.link], c) for c in self.ingest_news(source.name, articles))
        for pos, kind, label, value in scalars:
            placed.extend((pos, c) for c in self.ingest_scalar(
                kind, scalar_key(source.name, label), value, source=source.name, region=source.home_region,
            ))
        if snapshots:
            before = len(placed)
            for pos, snapshot in snapshots:
                placed.extend((pos, c) for c in self._ingest_snapshot_guarded(source.name, snapshot))
            self._publish_regions(source.name, [s for _, s in snapshots])
            logger.info("%s: %d region(s), %d changed", source.name, len(snapshots), len(placed) - before)
        placed.sort(key=lambda pc: pc[0])
        return [c for _, c in placed]

    def ingest_news(self, source_name: str, items: Sequence[NewsItem]) -> List[Change]:
        try:
            news_source = self.catalog.find_or_create_source(source_name)
        except Exception:
            logger.warning("Cannot register news source %s; skipping its news", source_name, exc_info=True)
            return []
        with self._locks.hold(f"news:{source_name}"):
            try:
                seen = self.catalog.list_seen_links(news_source.id)
            except Exception:
                logger.warning("Cannot read stored links for %s; treating every item as new",
                               source_name, exc_info=True)
                seen = set()
            candidates = {c.new.link: c for c in detect_news(items, seen, source=source_name)}

            changes: List[Change] = []
            for item in items:
                try:
                    inserted = self.catalog.upsert_news(item, news_source.id)
                except Exception:
                    logger.warning("Failed to store news %s from %s", item.link, source_name, exc_info=True)
                    continue
                change = candidates.pop(item.link, None)
                if change is not None and inserted:
                    changes.append(change)
        logger.info("%s: %d item(s), %d new", source_name, len(items), len(changes))
        return changes

    def _read_scalar(self, kind: ChangeKind, key: str):
        try:
            raw = self.state.get_last(key)
            if raw is None or kind is ChangeKind.ALERT_LEVEL_CHANGED:
                return raw
            return int(raw)
        except (PreviousStateUnreadable, ValueError) as e:
            logger.warning("Previous value of %s unreadable (%s); treating as absent", key, e)
            return None

    def ingest_scalar(
        self,
        kind: ChangeKind,
        key: str,
        value,
        *,
        source: str,
        region: Optional[str] = None,
    ) -> List[Change]:
        with self._locks.hold(key):
            previous = self._read_scalar(kind, key)
            changes = detect_scalar(kind, previous, value, source=source, region=region,
                                    announce_baseline=self.announce_baseline)
            try:
                self.state.set_last(key, str(value))
            except Exception:
                logger.warning("Failed to store %s=%r", key, value, exc_info=True)
                return []
        return changes

    def _read_snapshot(self, key: str) -> Optional[RegionSnapshot]:
        try:
            return self.state.get_snapshot(key)
        except PreviousStateUnreadable as e:
            logger.warning("Previous snapshot %s unreadable (%s); treating as absent", key, e)
            return None

    def ingest_snapshot(self, feed: str, snapshot: RegionSnapshot) -> List[Change]:
        self.catalog.find_or_create_region(snapshot.region)
        key = snapshot_key(feed, snapshot.region)
        with self._locks.hold(key):
            previous = self._read_snapshot(key)
            changes = detect_snapshot(previous, snapshot, source=feed, announce_baseline=self.announce_baseline)
            try:
                self.state.set_snapshot(key, snapshot)
            except Exception:
                logger.warning("Failed to store snapshot %s", key, exc_info=True)
                return []
        return changes

    def _ingest_snapshot_guarded(self, feed: str, snapshot: RegionSnapshot) -> List[Change]:
        try:
            return self.ingest_snapshot(feed, snapshot)
        except Exception:
            logger.warning("Failed to ingest %s snapshot for %s", feed, snapshot.region, exc_info=True)
            return []

    def _publish_regions(self, feed: str, snapshots: Sequence[RegionSnapshot]) -> None:
        try:
            self.state.set_region_list(s.region for s in snapshots)
        except Exception:
            logger.warning("Failed to publish region list for %s", feed, exc_info=True)

    def ingest_snapshots(self, feed: str, snapshots: Sequence[RegionSnapshot]) -> List[Change]:
        changes: List[Change] = []
        for snapshot in snapshots:
            changes.extend(self._ingest_snapshot_guarded(feed, snapshot))
        self._publish_regions(feed, snapshots)
        logger.info("%s: %d region(s), %d changed", feed, len(snapshots), len(changes))
        return changes
