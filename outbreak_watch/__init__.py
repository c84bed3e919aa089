"""
outbreak_watch

Watches public-health sources and tells subscribers what changed since the last run.

Core ideas:
- Input: raw records per source (news headlines, alert levels, case counters, per-region statistics)
- Process: fetch → normalize → read previous state → detect changes → store → notify (paced)
- Output: one message per subscriber and change group; nothing is announced twice

Example
-------
from dotenv import load_dotenv
from outbreak_watch import Settings, build_watcher

load_dotenv()
with build_watcher(Settings.from_env()) as watcher:
    summary = watcher.run_once()

print(summary.changes, summary.sent, summary.skipped)
"""
from .models import Change, ChangeKind, NewsItem, RegionSnapshot
from .config import Settings, SourceConfig
from .core import RunSummary, Watcher, build_watcher
from .detector import detect, detect_news, detect_scalar, detect_snapshot

__all__ = [
    "Change",
    "ChangeKind",
    "NewsItem",
    "RegionSnapshot",
    "Settings",
    "SourceConfig",
    "RunSummary",
    "Watcher",
    "build_watcher",
    "detect",
    "detect_news",
    "detect_scalar",
    "detect_snapshot",
]
