from __future__ import annotations

import calendar
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import feedparser
import feedparser.datetimes

from .models import RawArticle


def _from_struct(val: time.struct_time) -> datetime:
    # feedparser normalizes *_parsed fields to UTC
    return datetime.fromtimestamp(calendar.timegm(val), tz=timezone.utc)


def parse_date(value: Any) -> Optional[datetime]:
    """
    Coerce a scraped date (datetime, struct_time or free-form string) to an aware UTC datetime.
    Returns None when the value cannot be understood.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, time.struct_time):
        return _from_struct(value)
    if isinstance(value, str) and value.strip():
        s = value.strip()
        try:
            return parse_date(datetime.fromisoformat(s))
        except ValueError:
            pass
        # RFC 822, W3C-DTF and friends; feedparser knows most formats sites use
        parsed = feedparser.datetimes._parse_date(s)  # type: ignore[attr-defined]
        if isinstance(parsed, time.struct_time):
            return _from_struct(parsed)
    return None


def _entry_date(entry: Dict[str, Any]) -> Optional[datetime]:
    """
    Priority: published_parsed -> updated_parsed -> created_parsed -> string fields.
    """
    for key in ("published_parsed", "updated_parsed", "created_parsed"):
        val = entry.get(key)
        if isinstance(val, time.struct_time):
            return _from_struct(val)
    for key in ("published", "updated", "created"):
        dt = parse_date(entry.get(key))
        if dt:
            return dt
    return None


def parse_entry(entry: Dict[str, Any]) -> RawArticle:
    """
    Map a raw feed entry (from feedparser) to a RawArticle.
    The date stays None when the entry carries none; normalization decides what to do with it.
    """
    title = (entry.get("title") or "").strip()
    link = (entry.get("link") or entry.get("feedburner_origlink") or "").strip()
    return RawArticle(title=title, link=link, date=_entry_date(entry))
