from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union


@dataclass(frozen=True)
class NewsItem:
    """
    Canonical news item as stored and announced.

    `(source, link)` identifies an item; title and date are informational only.
    """
    title: str
    link: str
    written_at: datetime
    source: str


@dataclass(frozen=True)
class NewsSource:
    id: int
    name: str


@dataclass(frozen=True)
class Region:
    id: int
    name: str


@dataclass(frozen=True)
class Subscription:
    id: int
    chat_id: str
    region_id: int


@dataclass(frozen=True)
class RegionSnapshot:
    """
    Most recently observed statistics for one region from one feed.

    Only cases, deaths and notes take part in change detection.
    """
    region: str
    cases: int
    deaths: int
    notes: str = ""
    alert_level: Optional[str] = None
    confirmed_cases: Optional[int] = None


# Raw records, as handed over by scrape adapters. Values are only lightly typed
# (numbers may still be strings like "1,234"); see normalizer.py.

@dataclass(frozen=True)
class RawArticle:
    title: str
    link: str
    date: Union[str, datetime, None]


@dataclass(frozen=True)
class RawRegionStats:
    region: str
    cases: Union[int, str, None]
    deaths: Union[int, str, None]
    notes: str = ""


@dataclass(frozen=True)
class RawAlertLevel:
    value: str


@dataclass(frozen=True)
class RawConfirmedCases:
    value: Union[int, str, None]


RawRecord = Union[RawArticle, RawRegionStats, RawAlertLevel, RawConfirmedCases]


class ChangeKind(str, Enum):
    NEW_NEWS_ITEM = "new_news_item"
    ALERT_LEVEL_CHANGED = "alert_level_changed"
    CONFIRMED_CASES_CHANGED = "confirmed_cases_changed"
    REGION_STATS_CHANGED = "region_stats_changed"


@dataclass(frozen=True)
class Change:
    """
    A detected difference between the previous and the current observation.

    `old` is None when nothing was known before. For REGION_STATS_CHANGED both
    values are whole RegionSnapshot objects, for NEW_NEWS_ITEM `new` is the
    NewsItem.
    """
    kind: ChangeKind
    old: Any
    new: Any
    source: str
    region: Optional[str] = None
