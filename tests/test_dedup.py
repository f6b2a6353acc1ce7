"""Tests for the bounded recent-key history."""

from chatrelay.pipeline.dedup import RecentKeys, content_key


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestRecentKeys:
    def test_first_sighting_accepted(self):
        keys = RecentKeys()
        assert keys.check_and_add("a") is True
        assert "a" in keys

    def test_repeat_rejected_within_ttl(self):
        clock = FakeClock()
        keys = RecentKeys(ttl=10.0, clock=clock)
        assert keys.check_and_add("a")
        clock.now += 5
        assert keys.check_and_add("a") is False

    def test_repeat_accepted_after_ttl(self):
        clock = FakeClock()
        keys = RecentKeys(ttl=10.0, clock=clock)
        keys.check_and_add("a")
        clock.now += 11
        assert "a" not in keys
        assert keys.check_and_add("a") is True

    def test_per_key_ttl_override(self):
        clock = FakeClock()
        keys = RecentKeys(ttl=600.0, clock=clock)
        keys.check_and_add("short", ttl=2.0)
        keys.check_and_add("long")
        clock.now += 3
        assert "short" not in keys
        assert "long" in keys
        assert len(keys) == 1

    def test_capacity_evicts_oldest(self):
        keys = RecentKeys(capacity=3, ttl=600.0)
        for key in ("a", "b", "c", "d"):
            keys.check_and_add(key)
        assert "a" not in keys
        assert all(k in keys for k in ("b", "c", "d"))
        assert len(keys) == 3
        assert keys.evictions == 1

    def test_expired_keys_purged_before_evicting(self):
        clock = FakeClock()
        keys = RecentKeys(capacity=2, ttl=5.0, clock=clock)
        keys.check_and_add("old")
        clock.now += 6
        keys.check_and_add("x")
        keys.check_and_add("y")
        assert keys.evictions == 0
        assert len(keys) == 2

    def test_discard(self):
        keys = RecentKeys()
        keys.check_and_add("a")
        keys.discard("a")
        assert keys.check_and_add("a") is True


class TestContentKey:
    def test_same_sender_same_text(self):
        assert content_key("1555", "hi") == content_key("1555", "hi")

    def test_differs_by_sender_and_text(self):
        assert content_key("1555", "hi") != content_key("1556", "hi")
        assert content_key("1555", "hi") != content_key("1555", "hello")

    def test_key_prefixed_by_sender(self):
        assert content_key("1555", "hi").startswith("1555:")
