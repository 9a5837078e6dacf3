"""Tests for the TTL caches used by every engine."""

from competency_eval.services.cache import options_key, ttl_cache


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class TestTTLCache:

    def test_hit_before_expiry(self):
        clock = FakeClock()
        cache = ttl_cache(60, clock=clock)
        cache[("u1", "A2")] = "report"
        clock.now = 59.9
        assert cache.get(("u1", "A2")) == "report"

    def test_miss_after_expiry(self):
        clock = FakeClock()
        cache = ttl_cache(60, clock=clock)
        cache["k"] = "v"
        clock.now = 60
        assert cache.get("k") is None

    def test_expired_entries_are_purged_on_insert(self):
        clock = FakeClock()
        cache = ttl_cache(60, clock=clock)
        cache["gone-user"] = "old report"
        clock.now = 120
        cache["active-user"] = "fresh report"
        assert "gone-user" not in cache
        assert len(cache) == 1

    def test_bounded_size(self):
        cache = ttl_cache(60, maxsize=2)
        for i in range(5):
            cache[i] = i
        assert len(cache) == 2

    def test_clear(self):
        cache = ttl_cache(60)
        cache["a"] = 1
        cache["b"] = 2
        cache.clear()
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_unknown_key(self):
        assert ttl_cache(60).get("missing") is None


class TestOptionsKey:

    def test_order_independent(self):
        assert options_key({"limit": 3, "actionable_only": True}) == options_key({"actionable_only": True, "limit": 3})

    def test_none_and_empty_match(self):
        assert options_key(None) == options_key({})

    def test_different_options_differ(self):
        assert options_key({"limit": 3}) != options_key({"limit": 4})
