"""
Change detection.

Every function here is pure: previous values are supplied by the caller, which
must read them from durable state before overwriting it.
"""
from __future__ import annotations

from typing import AbstractSet, Any, Iterable, List, Optional, Union

from .dedup import unseen
from .models import Change, ChangeKind, NewsItem, RegionSnapshot

Scalar = Union[str, int]

_SCALAR_KINDS = {ChangeKind.ALERT_LEVEL_CHANGED, ChangeKind.CONFIRMED_CASES_CHANGED}


def detect_scalar(
    kind: ChangeKind,
    previous: Optional[Scalar],
    current: Scalar,
    *,
    source: str,
    region: Optional[str] = None,
    announce_baseline: bool = True,
) -> List[Change]:
    """
    One change iff the value differs exactly from the previous one.

    A missing previous value counts as a change when `announce_baseline` is set,
    so the first observation is announced once.
    """
    if kind not in _SCALAR_KINDS:
        raise ValueError(f"Not a scalar change kind: {kind}")
    if previous is None:
        if not announce_baseline:
            return []
    elif previous == current:
        return []
    return [Change(kind=kind, old=previous, new=current, source=source, region=region)]


def snapshot_differs(previous: RegionSnapshot, current: RegionSnapshot) -> bool:
    return (
        previous.cases != current.cases
        or previous.deaths != current.deaths
        or previous.notes != current.notes
    )


def detect_snapshot(
    previous: Optional[RegionSnapshot],
    current: RegionSnapshot,
    *,
    source: str,
    announce_baseline: bool = True,
) -> List[Change]:
    """A single REGION_STATS_CHANGED carrying both snapshots, or nothing."""
    if previous is None:
        if not announce_baseline:
            return []
    elif not snapshot_differs(previous, current):
        return []
    return [
        Change(
            kind=ChangeKind.REGION_STATS_CHANGED,
            old=previous,
            new=current,
            source=source,
            region=current.region,
        )
    ]


def detect_news(
    items: Iterable[NewsItem],
    seen_links: AbstractSet[str],
    *,
    source: str,
) -> List[Change]:
    return [
        Change(kind=ChangeKind.NEW_NEWS_ITEM, old=None, new=it, source=source)
        for it in unseen(items, seen_links)
    ]


def detect(previous: Any, current: Any, *, source: str, kind: Optional[ChangeKind] = None,
           region: Optional[str] = None, announce_baseline: bool = True) -> List[Change]:
    """
    Dispatch on the shape of `current`.

    Snapshots go through detect_snapshot, news batches (a list of NewsItem with
    a set of previously seen links as `previous`) through detect_news, anything
    else is a scalar and needs `kind`.
    """
    if isinstance(current, RegionSnapshot):
        return detect_snapshot(previous, current, source=source, announce_baseline=announce_baseline)
    if isinstance(current, (list, tuple)):
        return detect_news(current, previous or set(), source=source)
    if kind is None:
        raise ValueError("kind is required for scalar values")
    return detect_scalar(kind, previous, current, source=source, region=region,
                         announce_baseline=announce_baseline)
