from outbreak_watch.dispatcher import Dispatcher, group_changes, render, render_status
from outbreak_watch.models import Change, ChangeKind, RegionSnapshot
from outbreak_watch.transport import truncate

from conftest import FakeClock, FakeTransport, news


def _news_change(link, title="T", source="NHC"):
    return Change(kind=ChangeKind.NEW_NEWS_ITEM, old=None, new=news(link, title=title, source=source), source=source)


def _stats_change(region, old_cases, new_cases):
    old = RegionSnapshot(region=region, cases=old_cases, deaths=0, notes="") if old_cases is not None else None
    return Change(kind=ChangeKind.REGION_STATS_CHANGED, old=old,
                  new=RegionSnapshot(region=region, cases=new_cases, deaths=0, notes=""),
                  source="BNO", region=region)


def test_news_of_one_source_share_a_message():
    alert = Change(kind=ChangeKind.ALERT_LEVEL_CHANGED, old="Yellow", new="Orange", source="MOH")
    changes = [_news_change("a"), alert, _news_change("b"), _news_change("x", source="MOH")]
    groups = group_changes(changes)
    assert [[c.kind for c in g] for g in groups] == [
        [ChangeKind.NEW_NEWS_ITEM, ChangeKind.NEW_NEWS_ITEM],
        [ChangeKind.ALERT_LEVEL_CHANGED],
        [ChangeKind.NEW_NEWS_ITEM],
    ]


def test_render_news_and_scalars():
    assert render([_news_change("https://a", "A"), _news_change("https://b", "B")]) == \
        "[A](https://a)\n\n[B](https://b)"
    alert = Change(kind=ChangeKind.ALERT_LEVEL_CHANGED, old="Yellow", new="Orange", source="MOH")
    assert render([alert]) == "*UPDATE:* The MOH alert level changed from `Yellow` → `Orange`"
    cases = Change(kind=ChangeKind.CONFIRMED_CASES_CHANGED, old=None, new=3, source="MOH")
    assert render([cases]) == "*UPDATE:* The MOH's number of confirmed cases changed from `-` → `3`"


def test_render_region_stats():
    text = render([_stats_change("Singapore", 5, 7)])
    assert text.splitlines() == [
        "*UPDATE:* _Singapore_",
        "Cases: `5` → `7`",
        "Deaths: `0` → `0`",
        "Notes: `-` → `-`",
    ]
    assert "Cases: `-` → `7`" in render([_stats_change("Singapore", None, 7)])


def test_render_status():
    snap = RegionSnapshot(region="Singapore", cases=7, deaths=0, notes="2 critical")
    assert render_status(snap) == "REGION: *Singapore*\nCASES: *7*\nDEATHS: *0*\nNOTES: *2 critical*"


def test_fan_out_only_to_region_subscribers(clock):
    transport = FakeTransport()
    dispatcher = Dispatcher(transport, pacing_sec=0, sleep=clock.sleep, clock=clock)
    subs = {"Singapore": ["u1", "u2"], "Japan": ["u3"]}

    result = dispatcher.dispatch([_stats_change("Singapore", 5, 7)], lambda c: subs.get(c.region, []))

    assert result.sent == 2
    assert sorted(r for r, _ in transport.sent) == ["u1", "u2"]
    assert transport.to("u3") == []


def test_one_message_per_recipient_and_group(clock):
    transport = FakeTransport()
    dispatcher = Dispatcher(transport, pacing_sec=0, sleep=clock.sleep, clock=clock)

    dispatcher.dispatch([_news_change("a", "A"), _news_change("b", "B")], lambda c: ["u1", "u1", "u2"])

    assert len(transport.to("u1")) == 1
    assert "[A](a)" in transport.to("u1")[0] and "[B](b)" in transport.to("u1")[0]
    assert len(transport.sent) == 2


def test_sends_are_paced():
    clock = FakeClock()
    transport = FakeTransport(clock=clock)
    dispatcher = Dispatcher(transport, pacing_sec=1.0, sleep=clock.sleep, clock=clock)
    changes = [_stats_change("Singapore", 5, 7), _stats_change("Japan", 1, 2)]

    dispatcher.dispatch(changes, lambda c: ["u1", "u2"])

    assert len(transport.times) == 4
    gaps = [b - a for a, b in zip(transport.times, transport.times[1:])]
    assert all(g >= 1.0 for g in gaps)
    assert transport.times[-1] - transport.times[0] >= 3.0


def test_pacing_carries_over_between_dispatches():
    clock = FakeClock()
    transport = FakeTransport(clock=clock)
    dispatcher = Dispatcher(transport, pacing_sec=1.0, sleep=clock.sleep, clock=clock)
    dispatcher.dispatch([_stats_change("Singapore", 5, 7)], lambda c: ["u1"])
    clock.now += 0.25
    dispatcher.dispatch([_stats_change("Japan", 1, 2)], lambda c: ["u1"])
    assert clock.sleeps == [0.75]


def test_unreachable_recipient_does_not_stop_others(clock):
    transport = FakeTransport(unreachable=["u2"])
    dispatcher = Dispatcher(transport, pacing_sec=0, sleep=clock.sleep, clock=clock)

    result = dispatcher.dispatch([_stats_change("Singapore", 5, 7)], lambda c: ["u1", "u2", "u3"])

    assert (result.sent, result.failed) == (2, 1)
    assert [r for r, _ in transport.sent] == ["u1", "u3"]


def test_recipient_lookup_failure_skips_group(clock):
    transport = FakeTransport()
    dispatcher = Dispatcher(transport, pacing_sec=0, sleep=clock.sleep, clock=clock)

    def resolve(change):
        if change.region == "Japan":
            raise RuntimeError("directory down")
        return ["u1"]

    result = dispatcher.dispatch([_stats_change("Japan", 1, 2), _stats_change("Singapore", 5, 7)], resolve)
    assert result.sent == 1
    assert "_Singapore_" in transport.sent[0][1]


def test_truncate_respects_discord_limit():
    assert truncate("short") == "short"
    long = "x" * 2500
    out = truncate(long)
    assert len(out) == 2000 and out.endswith("...")
