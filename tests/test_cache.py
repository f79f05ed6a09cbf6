"""
Unit tests for the TTL cache.
"""

import pytest

from shared.cache import CACHE_TTLS, CacheRegion, TTLCache, coerce_region


class TestCoerceRegion:
    """Test cases for region name handling."""

    def test_enum_passthrough(self):
        assert coerce_region(CacheRegion.STATISTICS) is CacheRegion.STATISTICS

    def test_wire_name(self):
        assert coerce_region("commitHistory") is CacheRegion.COMMIT_HISTORY

    def test_member_name_case_insensitive(self):
        assert coerce_region("unpushed_commits") is CacheRegion.UNPUSHED_COMMITS

    def test_unknown_region(self):
        with pytest.raises(ValueError):
            coerce_region("bogus")


class TestTTLCache:
    """Test cases for TTLCache."""

    def test_policy_constants(self):
        assert CACHE_TTLS[CacheRegion.REPOSITORY_STATUS] == 30.0
        assert CACHE_TTLS[CacheRegion.COMMIT_HISTORY] == 60.0
        assert CACHE_TTLS[CacheRegion.STATISTICS] == 300.0
        assert CACHE_TTLS[CacheRegion.UNPUSHED_COMMITS] == 30.0

    def test_read_after_write_is_fresh(self, cache):
        cache.set(CacheRegion.COMMIT_HISTORY, ["abc1234"])

        assert cache.get(CacheRegion.COMMIT_HISTORY) == ["abc1234"]
        assert cache.last_updated is not None

    def test_entry_expires_at_ttl(self, cache, clock):
        cache.set(CacheRegion.COMMIT_HISTORY, ["abc1234"])

        clock.advance(59)
        assert cache.get(CacheRegion.COMMIT_HISTORY) == ["abc1234"]

        clock.advance(1)
        assert cache.get(CacheRegion.COMMIT_HISTORY) is None
        assert cache.size(CacheRegion.COMMIT_HISTORY) == 0

    def test_regions_have_independent_ttls(self, cache, clock):
        cache.set(CacheRegion.STATISTICS, {"total": 1})
        cache.set(CacheRegion.UNPUSHED_COMMITS, True)

        clock.advance(31)

        assert cache.get(CacheRegion.UNPUSHED_COMMITS) is None
        assert cache.get(CacheRegion.STATISTICS) == {"total": 1}

    def test_keyed_region_requires_key(self, cache):
        with pytest.raises(ValueError):
            cache.set(CacheRegion.REPOSITORY_STATUS, "status")

    def test_keyed_region_entries(self, cache):
        cache.set(CacheRegion.REPOSITORY_STATUS, "one", key="/repo/one")
        cache.set(CacheRegion.REPOSITORY_STATUS, "two", key="/repo/two")

        cache.invalidate(CacheRegion.REPOSITORY_STATUS, key="/repo/one")

        assert cache.get(CacheRegion.REPOSITORY_STATUS, "/repo/one") is None
        assert cache.get(CacheRegion.REPOSITORY_STATUS, "/repo/two") == "two"

    def test_invalidate_region(self, cache):
        cache.set(CacheRegion.COMMIT_HISTORY, [])
        cache.set(CacheRegion.STATISTICS, {})

        cache.invalidate("commitHistory")

        assert cache.get(CacheRegion.COMMIT_HISTORY) is None
        assert cache.get(CacheRegion.STATISTICS) == {}

    def test_invalidate_all(self, cache):
        cache.set(CacheRegion.COMMIT_HISTORY, [])
        cache.set(CacheRegion.STATISTICS, {})
        cache.set(CacheRegion.UNPUSHED_COMMITS, False)
        cache.set(CacheRegion.REPOSITORY_STATUS, "status", key="/repo")

        cache.invalidate()

        assert cache.status() == {
            "repositoryStatus": 0,
            "commitHistory": 0,
            "statistics": 0,
            "unpushedCommits": 0,
        }

    def test_falsy_values_are_cached(self, cache):
        cache.set(CacheRegion.UNPUSHED_COMMITS, False)

        assert cache.get(CacheRegion.UNPUSHED_COMMITS) is False

    def test_custom_ttls(self, clock):
        cache = TTLCache(ttls={CacheRegion.STATISTICS: 1.0}, clock=clock)
        cache.set(CacheRegion.STATISTICS, {})

        clock.advance(1.0)

        assert cache.get(CacheRegion.STATISTICS) is None
        assert cache.ttls[CacheRegion.COMMIT_HISTORY] == 60.0
