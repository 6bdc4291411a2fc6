from credits import UsageRecord
from usage_cache import UsageCache


class _Tick:
    def __init__(self):
        self.t = 1000.0

    def __call__(self) -> float:
        return self.t


def test_get_within_ttl_returns_record() -> None:
    tick = _Tick()
    cache = UsageCache(ttl_sec=10, clock=tick)
    cache.put("u1", UsageRecord(user_id="u1", weekly_used=3))

    tick.t += 9.9
    rec = cache.get("u1")
    assert rec is not None
    assert rec.weekly_used == 3


def test_get_after_ttl_is_a_miss() -> None:
    tick = _Tick()
    cache = UsageCache(ttl_sec=10, clock=tick)
    cache.put("u1", UsageRecord(user_id="u1"))

    tick.t += 10
    assert cache.get("u1") is None
    assert len(cache) == 0


def test_invalidate_drops_entry() -> None:
    cache = UsageCache(ttl_sec=10, clock=_Tick())
    cache.put("u1", UsageRecord(user_id="u1"))
    cache.put("u2", UsageRecord(user_id="u2"))

    cache.invalidate("u1")
    cache.invalidate("missing")
    assert cache.get("u1") is None
    assert cache.get("u2") is not None


def test_entries_are_isolated_copies() -> None:
    cache = UsageCache(ttl_sec=10, clock=_Tick())
    rec = UsageRecord(user_id="u1", purchased_credits=5)
    cache.put("u1", rec)
    rec.purchased_credits = 0

    got = cache.get("u1")
    assert got.purchased_credits == 5
    got.purchased_credits = 1
    assert cache.get("u1").purchased_credits == 5


def test_put_refreshes_timestamp() -> None:
    tick = _Tick()
    cache = UsageCache(ttl_sec=10, clock=tick)
    cache.put("u1", UsageRecord(user_id="u1", weekly_used=1))
    tick.t += 8
    cache.put("u1", UsageRecord(user_id="u1", weekly_used=2))
    tick.t += 8
    assert cache.get("u1").weekly_used == 2


def test_prune_drops_only_expired_entries() -> None:
    tick = _Tick()
    cache = UsageCache(ttl_sec=10, clock=tick)
    cache.put("old", UsageRecord(user_id="old"))
    tick.t += 11
    cache.put("new", UsageRecord(user_id="new"))

    assert cache.prune() == 1
    assert len(cache) == 1
    assert cache.get("new") is not None
