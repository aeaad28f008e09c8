import pytest

from engines.caching import EmbeddingCache


def test_cache_evicts_least_recently_used():
    cache = EmbeddingCache(max_size=2)
    cache.add("a", [1.0])
    cache.add("b", [2.0])

    assert cache.get("a") == [1.0]
    cache.add("c", [3.0])

    assert cache.get("b") is None
    assert cache.get("a") == [1.0]
    assert cache.get("c") == [3.0]
    assert len(cache) == 2


def test_cache_counts_hits_and_misses():
    cache = EmbeddingCache()
    cache.add("Zweierkomplement", [0.5, 0.5])

    cache.get("Zweierkomplement")
    cache.get("KV-Diagramm")

    assert (cache.hits, cache.misses) == (1, 1)


def test_cached_vectors_are_copies():
    cache = EmbeddingCache()
    vector = [1.0, 2.0]
    cache.add("text", vector)
    vector.append(3.0)

    stored = cache.get("text")
    stored.append(4.0)

    assert cache.get("text") == [1.0, 2.0]


def test_texts_with_common_prefix_do_not_collide():
    cache = EmbeddingCache()
    prefix = "x" * 500
    cache.add(prefix + "a", [1.0])

    assert cache.get(prefix + "b") is None


def test_clear_and_invalid_size():
    cache = EmbeddingCache()
    cache.add("a", [1.0])
    cache.clear()

    assert len(cache) == 0
    with pytest.raises(ValueError):
        EmbeddingCache(max_size=0)
