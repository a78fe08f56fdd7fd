import pytest

from page_service.conversion.cache import ConversionCache


def test_get_counts_hits_and_misses():
    cache = ConversionCache()
    assert cache.get("doc-1") is None
    cache.put("doc-1", ["a.jpg", "b.jpg"])

    entry = cache.get("doc-1")
    assert entry.page_count == 2
    assert entry.access_count == 1

    stats = cache.stats()
    assert stats["totalEntries"] == 1
    assert stats["totalPages"] == 2
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["hitRate"] == 50.0
    assert stats["popularDocuments"][0]["documentId"] == "doc-1"


def test_get_returns_copy():
    cache = ConversionCache()
    cache.put("doc-1", ["a.jpg"])
    cache.get("doc-1").page_urls.append("tampered.jpg")
    assert cache.peek("doc-1").page_urls == ["a.jpg"]


def test_peek_leaves_counters_alone():
    cache = ConversionCache()
    cache.put("doc-1", ["a.jpg"])
    cache.peek("doc-1")
    cache.peek("missing")
    stats = cache.stats()
    assert stats["hits"] == 0
    assert stats["misses"] == 0
    assert stats["hitRate"] == 0.0


def test_invalidate_and_invalidate_many():
    cache = ConversionCache()
    cache.put("doc-1", ["a.jpg"])
    cache.put("doc-2", ["a.jpg"])
    cache.put("doc-3", ["a.jpg"])

    assert cache.invalidate("doc-1") is True
    assert cache.invalidate("doc-1") is False
    assert cache.invalidate_many(["doc-2", "doc-3", "doc-9"]) == 2
    assert len(cache) == 0
    assert not cache.has_cached("doc-2")


def test_staleness_uses_source_fingerprint():
    cache = ConversionCache()
    cache.put("doc-1", ["a.jpg"], source_fingerprint="sha-1")
    cache.put("doc-2", ["a.jpg"])

    assert cache.is_stale("doc-1", "sha-2")
    assert not cache.is_stale("doc-1", "sha-1")
    assert not cache.is_stale("doc-1", None)
    # No fingerprint recorded
    assert not cache.is_stale("doc-2", "sha-2")
    assert not cache.is_stale("missing", "sha-2")


def test_least_recently_used_entry_is_evicted():
    cache = ConversionCache(max_entries=2)
    cache.put("doc-1", ["a.jpg"])
    cache.put("doc-2", ["b.jpg"])
    # Reading doc-1 makes doc-2 the oldest
    cache.get("doc-1")
    cache.put("doc-3", ["c.jpg"])

    assert cache.has_cached("doc-1")
    assert not cache.has_cached("doc-2")
    assert cache.has_cached("doc-3")
    stats = cache.stats()
    assert stats["totalEntries"] == 2
    assert stats["maxEntries"] == 2
    assert stats["evictions"] == 1


def test_replacing_an_entry_does_not_evict():
    cache = ConversionCache(max_entries=1)
    cache.put("doc-1", ["a.jpg"])
    cache.put("doc-1", ["a.jpg", "b.jpg"])
    assert cache.peek("doc-1").page_count == 2
    assert cache.stats()["evictions"] == 0


def test_unbounded_cache_and_invalid_bound():
    cache = ConversionCache()
    for n in range(50):
        cache.put(f"doc-{n}", ["a.jpg"])
    assert cache.stats()["totalEntries"] == 50
    assert cache.stats()["maxEntries"] is None

    with pytest.raises(ValueError):
        ConversionCache(max_entries=0)
