from __future__ import annotations

import importlib
from typing import Any, Callable, Dict, List, Protocol

import feedparser

from .exceptions import ConfigurationError, SourceUnavailable
from .models import RawRecord
from .parser import parse_entry


class ScrapeAdapter(Protocol):
    def fetch(self, source: str) -> List[RawRecord]:  # pragma: no cover - interface
        ...


def fetch_feed_entries(url: str) -> List[Dict[str, Any]]:
    """
    Fetch a single feed URL and return its entries.

    Raises SourceUnavailable on network/parse issues or when feed is malformed (bozo).
    """
    try:
        feed = feedparser.parse(url)
    except Exception as e:  # pragma: no cover - surface as domain error
        raise SourceUnavailable(f"Failed to fetch feed: {url} ({e})") from e

    if getattr(feed, "bozo", 0):
        exc = getattr(feed, "bozo_exception", None)
        msg = f"Invalid RSS/Atom feed: {url}"
        if exc:
            msg += f" ({exc})"
        raise SourceUnavailable(msg)

    entries = getattr(feed, "entries", None)
    if not isinstance(entries, list):
        raise SourceUnavailable(f"Feed has no entries: {url}")
    return entries


class FeedAdapter:
    """News from an RSS/Atom feed, one RawArticle per entry."""

    def __init__(self, url: str) -> None:
        self.url = url

    def fetch(self, source: str) -> List[RawRecord]:
        return [parse_entry(e) for e in fetch_feed_entries(self.url)]

    def __repr__(self) -> str:
        return f"FeedAdapter({self.url!r})"


class CallableAdapter:
    """Wraps a plain `fetch(source) -> list` function supplied by a site scraper."""

    def __init__(self, func: Callable[[str], List[RawRecord]]) -> None:
        self._func = func

    def fetch(self, source: str) -> List[RawRecord]:
        return list(self._func(source))


def _import_target(target: str) -> Any:
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"Adapter target must look like 'module:callable', got {target!r}")
    try:
        module = importlib.import_module(module_name)
        return getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot import adapter {target!r}: {e}") from e


def load_adapter(entry: Dict[str, Any]) -> ScrapeAdapter:
    """
    Build an adapter from its configuration entry.

    {"type": "feed", "url": ...} reads an RSS/Atom feed.
    {"type": "python", "target": "pkg.module:obj"} loads a site scraper: a class
    (instantiated without arguments), an object with `fetch`, or a bare function.
    """
    kind = (entry.get("type") or "").lower()
    if kind == "feed":
        url = entry.get("url")
        if not url:
            raise ConfigurationError("Feed adapter requires 'url'")
        return FeedAdapter(url)
    if kind == "python":
        obj = _import_target(entry.get("target") or "")
        if isinstance(obj, type):
            obj = obj()
        if hasattr(obj, "fetch"):
            return obj
        if callable(obj):
            return CallableAdapter(obj)
        raise ConfigurationError(f"Adapter {entry.get('target')!r} is neither callable nor has fetch()")
    raise ConfigurationError(f"Unknown adapter type: {entry.get('type')!r}")
