from __future__ import annotations

from typing import AbstractSet, Iterable, List, Set

from .models import NewsItem


def deduplicate(items: Iterable[NewsItem]) -> List[NewsItem]:
    """
    Remove repeated links within one batch.
    Keeps the first occurrence and preserves original order.
    """
    seen: Set[str] = set()
    out: List[NewsItem] = []
    for it in items:
        if it.link in seen:
            continue
        seen.add(it.link)
        out.append(it)
    return out


def unseen(items: Iterable[NewsItem], seen_links: AbstractSet[str]) -> List[NewsItem]:
    """
    Items whose link is not among `seen_links`, in input order.

    Link equality is the only criterion: a known link with a different title or
    date is still a known item.
    """
    return [it for it in deduplicate(items) if it.link not in seen_links]
