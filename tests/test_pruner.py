from connscope.core.normalizer import normalize
from connscope.core.pruner import prune
from tests.utils_payloads import T0, detail, group, iso, payload


def test_prune_keeps_recent_and_untimed_details():
    now = T0 + 60_000
    snap = normalize(payload([
        group("g1", [
            detail("fresh", 100, 10, last_seen=iso(now - 10_000)),
            detail("stale", 900, 90, last_seen=iso(now - 40_000)),
            detail("untimed", 5, 1),
        ], upload=1005, download=101, connectionCount=3),
        group("g2", [detail("old", 50, 50, last_seen=iso(now - 31_000))]),
        group("g3", [], upload=7, download=3),
    ], upload_total=9999, download_total=9999))

    out = prune(snap, now, 30_000)

    assert [g.id for g in out.groups] == ["g1", "g3"]
    g1 = out.groups[0]
    assert [d.id for d in g1.details] == ["fresh", "untimed"]
    assert g1.upload == 105
    assert g1.download == 11
    assert g1.connection_count == 2
    assert out.upload_total == 105 + 7
    assert out.download_total == 11 + 3


def test_prune_drops_details_from_the_future():
    now = T0
    snap = normalize(payload([group("g", [detail("ahead", 1, 1, last_seen=iso(now + 5_000))])]))
    assert prune(snap, now, 30_000).groups == []


def test_prune_does_not_touch_input():
    now = T0 + 60_000
    snap = normalize(payload([group("g", [
        detail("a", 1, 1, last_seen=iso(now)),
        detail("b", 1, 1, last_seen=iso(T0)),
    ])]))
    prune(snap, now, 30_000)
    assert len(snap.groups[0].details) == 2
