from unwindkit.cache import CacheX86_64
from unwindkit.rule_cache import CacheHandle
from unwindkit.rules import JustReturn


def test_new_cache_has_no_lookups():
    assert CacheX86_64().stats().total() == 0


def test_stats_follow_rule_cache():
    cache = CacheX86_64()
    handle = cache.rule_cache.lookup(0x1000, 7)
    assert isinstance(handle, CacheHandle)
    cache.rule_cache.insert(handle, JustReturn())
    assert cache.rule_cache.lookup(0x1000, 7) == JustReturn()
    stats = cache.stats()
    assert stats.hits() == 1
    assert stats.misses() == 1


def test_caches_are_independent():
    first = CacheX86_64()
    second = CacheX86_64()
    first.rule_cache.insert(first.rule_cache.lookup(0x1000, 7), JustReturn())
    assert isinstance(second.rule_cache.lookup(0x1000, 7), CacheHandle)
    assert first.stats().total() == 1