from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .exceptions import RecipientUnreachable
from .models import Change, ChangeKind, RegionSnapshot
from .transport import Transport

logger = logging.getLogger(__name__)

ARROW = "→"


@dataclass
class DispatchResult:
    sent: int = 0
    failed: int = 0


def group_changes(changes: Iterable[Change]) -> List[List[Change]]:
    """
    All new news items of one source travel together in a single message;
    every other change is a message of its own. Groups keep input order.
    """
    groups: List[List[Change]] = []
    news_groups: Dict[str, List[Change]] = {}
    for change in changes:
        if change.kind is ChangeKind.NEW_NEWS_ITEM:
            group = news_groups.get(change.source)
            if group is None:
                group = news_groups[change.source] = []
                groups.append(group)
            group.append(change)
        else:
            groups.append([change])
    return groups


def _code(value: Any) -> str:
    return f"`{'-' if value is None or value == '' else value}`"


def _pair(old: Any, new: Any) -> str:
    return f"{_code(old)} {ARROW} {_code(new)}"


def render(group: List[Change]) -> str:
    """Markdown text for one change group."""
    first = group[0]
    if first.kind is ChangeKind.NEW_NEWS_ITEM:
        return "\n\n".join(f"[{c.new.title}]({c.new.link})" for c in group)
    if first.kind is ChangeKind.ALERT_LEVEL_CHANGED:
        return f"*UPDATE:* The {first.source} alert level changed from {_pair(first.old, first.new)}"
    if first.kind is ChangeKind.CONFIRMED_CASES_CHANGED:
        return (f"*UPDATE:* The {first.source}'s number of confirmed cases changed from "
                f"{_pair(first.old, first.new)}")
    if first.kind is ChangeKind.REGION_STATS_CHANGED:
        old: Optional[RegionSnapshot] = first.old
        new: RegionSnapshot = first.new
        return "\n".join([
            f"*UPDATE:* _{new.region}_",
            f"Cases: {_pair(old.cases if old else None, new.cases)}",
            f"Deaths: {_pair(old.deaths if old else None, new.deaths)}",
            f"Notes: {_pair(old.notes if old else None, new.notes)}",
        ])
    raise ValueError(f"Unknown change kind: {first.kind}")


def render_status(snapshot: RegionSnapshot) -> str:
    """`KEY: *value*` lines for a stored snapshot."""
    fields: List[Tuple[str, Any]] = [
        ("region", snapshot.region),
        ("cases", snapshot.cases),
        ("deaths", snapshot.deaths),
        ("notes", snapshot.notes),
        ("alert_level", snapshot.alert_level),
        ("confirmed_cases", snapshot.confirmed_cases),
    ]
    return "\n".join(f"{k.upper()}: *{v}*" for k, v in fields if v is not None)


class Dispatcher:
    """
    Sends change groups to their recipients, one message per (recipient, group).

    Sends are strictly sequential and at least `pacing_sec` apart, whoever the
    recipient is; a failed send is logged and the next one goes on.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        pacing_sec: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport
        self.pacing_sec = pacing_sec
        self._sleep = sleep
        self._clock = clock
        self._last_send: Optional[float] = None

    def _wait_turn(self) -> None:
        if self._last_send is None:
            return
        remaining = self.pacing_sec - (self._clock() - self._last_send)
        if remaining > 0:
            self._sleep(remaining)

    def send(self, recipient: str, text: str) -> bool:
        self._wait_turn()
        try:
            self.transport.send(recipient, text, format="markdown")
            return True
        except RecipientUnreachable as e:
            logger.warning("Recipient unreachable: %s", e)
        except Exception:
            logger.exception("Unexpected error sending to %s", recipient)
        finally:
            self._last_send = self._clock()
        return False

    def dispatch(
        self,
        changes: Iterable[Change],
        recipients_for: Callable[[Change], Iterable[str]],
        heartbeat: Optional[Callable[[], object]] = None,
    ) -> DispatchResult:
        """`heartbeat`, when given, is called before every send."""
        result = DispatchResult()
        for group in group_changes(changes):
            try:
                recipients = list(dict.fromkeys(recipients_for(group[0])))
            except Exception:
                logger.exception("Cannot resolve recipients for %s change from %s", group[0].kind.value, group[0].source)
                continue
            if not recipients:
                continue
            text = render(group)
            for recipient in recipients:
                if heartbeat is not None:
                    heartbeat()
                if self.send(recipient, text):
                    result.sent += 1
                else:
                    result.failed += 1
        return result
