from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence

from .exceptions import ConfigurationError
from .fetcher import ScrapeAdapter, load_adapter

_TRUE = {"1", "true", "yes", "on"}


@dataclass
class SourceConfig:
    """
    One configured source.

    News and scalar changes of a source go to the subscribers of `regions`
    plus every region whose name matches `region_pattern`. The first entry of
    `regions` is the region scalar values (alert level, confirmed cases) belong to.
    """
    name: str
    adapter: ScrapeAdapter
    regions: Sequence[str] = ()
    region_pattern: Optional[str] = None
    alert_label: str = "ALERT_LEVEL"
    cases_label: str = "CONFIRMED_CASES"

    @property
    def home_region(self) -> Optional[str]:
        return self.regions[0] if self.regions else None


@dataclass
class Settings:
    database_url: str
    redis_url: str
    sources_file: str
    pacing_sec: float = 1.0
    fetch_timeout_sec: float = 60.0
    max_workers: int = 4
    announce_baseline: bool = True
    dry_run: bool = False
    discord_bot_token: Optional[str] = None
    log_level: str = "INFO"
    sources: List[SourceConfig] = field(default_factory=list)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Read settings from the environment (call `load_dotenv()` first to honor a .env file)
        and load the source list. Raises ConfigurationError on anything missing or malformed.
        """
        env = os.environ if env is None else env
        missing = [k for k in ("DATABASE_URL", "REDIS_URL", "SOURCES_FILE") if not env.get(k)]
        if missing:
            raise ConfigurationError(f"Missing environment variables: {', '.join(missing)}")

        settings = cls(
            database_url=env["DATABASE_URL"],
            redis_url=env["REDIS_URL"],
            sources_file=env["SOURCES_FILE"],
            pacing_sec=_number(env, "PACING_SEC", 1.0),
            fetch_timeout_sec=_number(env, "FETCH_TIMEOUT_SEC", 60.0),
            max_workers=int(_number(env, "MAX_WORKERS", 4)),
            announce_baseline=_flag(env, "ANNOUNCE_BASELINE", True),
            dry_run=_flag(env, "DRY_RUN", False),
            discord_bot_token=env.get("DISCORD_BOT_TOKEN") or None,
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        )
        if settings.pacing_sec < 0 or settings.fetch_timeout_sec <= 0 or settings.max_workers < 1:
            raise ConfigurationError("PACING_SEC must be >= 0, FETCH_TIMEOUT_SEC > 0 and MAX_WORKERS >= 1")
        settings.sources = load_sources(settings.sources_file)
        return settings


def _number(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}") from e


def _flag(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in _TRUE


def parse_sources(entries: Any) -> List[SourceConfig]:
    if not isinstance(entries, list) or not entries:
        raise ConfigurationError("Source configuration must be a non-empty list")
    out: List[SourceConfig] = []
    names = set()
    for entry in entries:
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Source entry must be an object, got {entry!r}")
        name = (entry.get("name") or "").strip()
        if not name:
            raise ConfigurationError(f"Source entry without a name: {entry!r}")
        if name in names:
            raise ConfigurationError(f"Duplicate source name: {name}")
        names.add(name)
        adapter = entry.get("adapter")
        if not isinstance(adapter, dict):
            raise ConfigurationError(f"Source {name} needs an 'adapter' object")
        regions = entry.get("regions") or []
        if not isinstance(regions, list):
            raise ConfigurationError(f"Source {name}: 'regions' must be a list")
        out.append(SourceConfig(
            name=name,
            adapter=load_adapter(adapter),
            regions=[str(r) for r in regions],
            region_pattern=entry.get("region_pattern") or None,
            alert_label=entry.get("alert_label") or "ALERT_LEVEL",
            cases_label=entry.get("cases_label") or "CONFIRMED_CASES",
        ))
    return out


def load_sources(path: str) -> List[SourceConfig]:
    """
    Load the source list from a JSON file:

    [
      {"name": "NHC", "adapter": {"type": "feed", "url": "..."}, "region_pattern": "%province%"},
      {"name": "MOH", "adapter": {"type": "python", "target": "scrapers.moh:fetch"},
       "regions": ["Singapore"], "alert_label": "DORSCON"}
    ]
    """
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot read sources file {path}: {e}") from e
    return parse_sources(data)
