"""Tests for the positive and negative caches."""

from ethflow.cache import NegativeCache, TTLCache


class TestTTLCache:
    """Tests for TTLCache."""

    def test_hit_within_ttl(self, clock):
        """A value set with TTL T is returned until T has elapsed."""
        cache = TTLCache(default_ttl=20, clock=clock)
        cache.set("/path?limit=5", b"[1,2]")

        clock.advance(19.9)
        assert cache.get("/path?limit=5") == (b"[1,2]", True)

    def test_miss_and_eviction_after_ttl(self, clock):
        """Once expired the lookup misses and the entry is removed."""
        cache = TTLCache(default_ttl=20, clock=clock)
        cache.set("/path", b"body")

        clock.advance(20)
        assert cache.get("/path") == (None, False)
        assert len(cache) == 0
        assert "/path" not in cache

    def test_unknown_key(self, clock):
        cache = TTLCache(default_ttl=20, clock=clock)
        assert cache.get("/missing") == (None, False)

    def test_explicit_ttl_and_status(self, clock):
        """Per-entry TTL overrides the default and the status is kept."""
        cache = TTLCache(default_ttl=20, clock=clock)
        cache.set("/err", b"{}", ttl=5, status=429)

        entry = cache.get_entry("/err")
        assert entry is not None
        assert entry.status == 429

        clock.advance(5)
        assert cache.get_entry("/err") is None

    def test_overwrite_restarts_expiry(self, clock):
        cache = TTLCache(default_ttl=10, clock=clock)
        cache.set("/k", b"old")
        clock.advance(8)
        cache.set("/k", b"new")
        clock.advance(8)

        assert cache.get("/k") == (b"new", True)

    def test_clear(self, clock):
        cache = TTLCache(default_ttl=10, clock=clock)
        cache.set("/a", b"1")
        cache.set("/b", b"2")
        cache.clear()
        assert len(cache) == 0


class TestNegativeCache:
    """Tests for NegativeCache."""

    def test_backoff_window(self, clock):
        negative = NegativeCache(ttl=10, clock=clock)
        assert negative.check("/path") is False

        negative.mark("/path")
        clock.advance(9.5)
        assert negative.check("/path") is True

        clock.advance(0.5)
        assert negative.check("/path") is False
        assert len(negative) == 0

    def test_keys_are_independent(self, clock):
        negative = NegativeCache(ttl=10, clock=clock)
        negative.mark("/a")
        assert negative.check("/a") is True
        assert negative.check("/b") is False


class RewritingClock:
    """Clock that runs ``hook`` once, on the next reading after ``arm``."""

    def __init__(self, clock):
        self.clock = clock
        self.hook = None

    def arm(self, hook):
        self.hook = hook

    def __call__(self):
        hook, self.hook = self.hook, None
        if hook is not None:
            hook()
        return self.clock()


class TestConcurrentRewrite:
    """A rewrite landing between a lookup and its eviction survives."""

    def test_ttl_cache_keeps_newer_entry(self, clock):
        racing = RewritingClock(clock)
        cache = TTLCache(default_ttl=10, clock=racing)
        cache.set("/k", b"old")
        clock.advance(10)

        # The rewrite happens after the lookup has read the stale entry.
        racing.arm(lambda: cache.set("/k", b"new"))
        assert cache.get_entry("/k") is None

        assert cache.get("/k") == (b"new", True)
        assert len(cache) == 1

    def test_negative_cache_keeps_newer_mark(self, clock):
        racing = RewritingClock(clock)
        negative = NegativeCache(ttl=10, clock=racing)
        negative.mark("/path")
        clock.advance(10)

        racing.arm(lambda: negative.mark("/path"))
        assert negative.check("/path") is False

        assert negative.check("/path") is True
        assert len(negative) == 1
