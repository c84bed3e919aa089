from __future__ import annotations

from typing import Any, Optional

from .exceptions import ParseError
from .models import NewsItem, RawArticle, RawRegionStats, RegionSnapshot
from .parser import parse_date

# Summary rows some statistics tables append after the per-region rows
_AGGREGATE_REGIONS = {"total", "totals"}


def parse_count(value: Any, *, field: str) -> int:
    """
    Parse a scraped count such as 1234, "1,234" or " 12 " into a non-negative int.
    """
    if isinstance(value, bool):
        raise ParseError(f"Invalid {field}: {value!r}")
    if isinstance(value, int):
        n = value
    elif isinstance(value, str):
        s = value.replace(",", "").strip()
        try:
            n = int(s, 10)
        except ValueError as e:
            raise ParseError(f"Invalid {field}: {value!r}") from e
    else:
        raise ParseError(f"Invalid {field}: {value!r}")
    if n < 0:
        raise ParseError(f"Negative {field}: {value!r}")
    return n


def to_news_item(raw: RawArticle, source: str) -> NewsItem:
    """
    Convert a RawArticle into a NewsItem.
    Requires a non-empty link and a parseable date; the title may be empty.
    """
    link = (raw.link or "").strip()
    if not link:
        raise ParseError("Article lacks a link")
    written_at = parse_date(raw.date)
    if written_at is None:
        raise ParseError(f"Article {link} has no usable date: {raw.date!r}")
    return NewsItem(title=(raw.title or "").strip(), link=link, written_at=written_at, source=source)


def is_aggregate_row(raw: RawRegionStats) -> bool:
    return (raw.region or "").strip().lower() in _AGGREGATE_REGIONS


def to_snapshot(raw: RawRegionStats) -> RegionSnapshot:
    region = (raw.region or "").strip()
    if not region:
        raise ParseError("Statistics row lacks a region name")
    return RegionSnapshot(
        region=region,
        cases=parse_count(raw.cases, field="cases"),
        deaths=parse_count(raw.deaths, field="deaths"),
        notes=(raw.notes or "").strip(),
    )


def to_alert_level(value: Optional[str]) -> str:
    level = (value or "").strip()
    if not level:
        raise ParseError("Empty alert level")
    return level
