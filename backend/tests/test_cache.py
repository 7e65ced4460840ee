from __future__ import annotations

from goalwise import cache as cache_module
from goalwise.cache import TTLCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def monotonic(self):
        return self.now


def test_entries_expire_after_ttl(monkeypatch) -> None:
    clock = FakeClock()
    monkeypatch.setattr(cache_module, "time", clock)
    cache = TTLCache(default_ttl_seconds=60)

    cache.set("dashboard:user_owner", {"active_goals_count": 2})
    clock.now += 59
    assert cache.get("dashboard:user_owner") == {"active_goals_count": 2}

    clock.now += 1
    assert cache.get("dashboard:user_owner") is None
    assert len(cache) == 0


def test_delete_reports_whether_key_existed() -> None:
    cache = TTLCache()
    cache.set("portfolio:user_owner", 1)

    assert cache.delete("portfolio:user_owner") is True
    assert cache.delete("portfolio:user_owner") is False


def test_overflow_evicts_expired_then_soonest(monkeypatch) -> None:
    clock = FakeClock()
    monkeypatch.setattr(cache_module, "time", clock)
    cache = TTLCache(default_ttl_seconds=60, max_entries=2)

    cache.set("stale", 1, ttl_seconds=5)
    cache.set("short", 2, ttl_seconds=30)
    clock.now += 10
    cache.set("long", 3, ttl_seconds=120)

    assert cache.get("stale") is None
    assert cache.get("short") == 2
    assert cache.get("long") == 3

    cache.set("newest", 4, ttl_seconds=90)

    assert cache.get("short") is None
    assert len(cache) == 2
