# playground/cache_gate/test_result_cache_gate.py

"""
[职责] cache gate：验证 ResultCache 的 TTL、LRU 淘汰、损坏条目驱逐与统计计数，以及缓存 key 规范化。
[边界] 注入假时钟；不经过 SearchService。
[上游关系] backend/pipelines/retrieval/cache.py。
[下游关系] SearchService 的缓存命中路径依赖这些保证。
"""

from __future__ import annotations

import threading

import pytest

from doc_rag.backend.pipelines.retrieval.cache import ResultCache, build_cache_key
from doc_rag.backend.schemas.search import LabelFilters, ScoredResult, SearchConfig


pytestmark = pytest.mark.cache_gate


def _result(cid: str, doc: str, score: float = 0.5) -> ScoredResult:
    return ScoredResult(id=cid, document_id=doc, fused_rank=0.01, composite_score=score)


def test_entries_expire_after_ttl(fake_clock) -> None:
    cache = ResultCache(capacity=4, default_ttl_s=10.0, clock=fake_clock)
    cache.put("k", [_result("c-1", "d-1")])

    fake_clock.advance(9.9)
    assert cache.get("k") is not None
    fake_clock.advance(0.2)
    assert cache.get("k") is None
    assert cache.stats()["expirations"] == 1
    assert len(cache) == 0


def test_per_entry_ttl_and_non_positive_ttl(fake_clock) -> None:
    cache = ResultCache(capacity=4, default_ttl_s=100.0, clock=fake_clock)
    cache.put("short", [_result("c-1", "d-1")], ttl=1.0)
    cache.put("never", [_result("c-2", "d-2")], ttl=0)

    assert cache.get("never") is None
    fake_clock.advance(2.0)
    assert cache.get("short") is None


def test_lru_evicts_least_recently_used(fake_clock) -> None:
    cache = ResultCache(capacity=2, default_ttl_s=60.0, clock=fake_clock)
    cache.put("a", [_result("c-a", "d-a")])
    cache.put("b", [_result("c-b", "d-b")])
    assert cache.get("a") is not None  # docstring: a 变为最近使用

    cache.put("c", [_result("c-c", "d-c")])

    assert cache.get("b") is None
    assert cache.get("a") is not None
    assert cache.get("c") is not None
    assert cache.stats()["evictions"] == 1


def test_get_does_not_extend_ttl(fake_clock) -> None:
    cache = ResultCache(capacity=2, default_ttl_s=10.0, clock=fake_clock)
    cache.put("k", [_result("c-1", "d-1")])

    fake_clock.advance(6.0)
    assert cache.get("k") is not None
    fake_clock.advance(6.0)
    assert cache.get("k") is None


def test_put_overwrites_whole_entry(fake_clock) -> None:
    cache = ResultCache(capacity=2, default_ttl_s=10.0, clock=fake_clock)
    cache.put("k", [_result("c-1", "d-1"), _result("c-2", "d-2")])
    cache.put("k", [_result("c-3", "d-3")])

    assert [r.id for r in cache.get("k")] == ["c-3"]
    assert len(cache) == 1

    assert cache.invalidate("k") is True
    assert cache.invalidate("k") is False
    assert cache.get("k") is None


def test_corrupted_entry_is_evicted_as_miss(fake_clock) -> None:
    cache = ResultCache(capacity=4, default_ttl_s=60.0, clock=fake_clock)
    cache.put("dup", [_result("c-1", "d-1"), _result("c-2", "d-1")])
    cache.put("junk", ["not a result"])  # type: ignore[list-item]

    assert cache.get("dup") is None
    assert cache.get("junk") is None
    stats = cache.stats()
    assert stats["corruptions"] == 2
    assert stats["size"] == 0


def test_sweep_and_stats(fake_clock) -> None:
    cache = ResultCache(capacity=8, default_ttl_s=5.0, clock=fake_clock)
    cache.put("a", [_result("c-a", "d-a")])
    cache.put("b", [_result("c-b", "d-b")], ttl=50.0)
    fake_clock.advance(10.0)

    assert cache.sweep() == 1
    assert cache.get("b") is not None
    assert cache.get("zzz") is None
    stats = cache.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["size"] == 1
    assert stats["capacity"] == 8


def test_concurrent_puts_respect_capacity() -> None:
    cache = ResultCache(capacity=16, default_ttl_s=60.0)

    def _writer(offset: int) -> None:
        for i in range(50):
            cache.put(f"k-{offset}-{i}", [_result(f"c-{i}", f"d-{i}")])

    threads = [threading.Thread(target=_writer, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(cache) == 16
    assert cache.stats()["evictions"] == 200 - 16


def test_invalid_construction() -> None:
    with pytest.raises(ValueError):
        ResultCache(capacity=0)
    with pytest.raises(ValueError):
        ResultCache(default_ttl_s=0)


def test_cache_key_normalizes_query_and_config() -> None:
    cfg = SearchConfig(top_k=5)

    assert build_cache_key("教室管理　の詳細", cfg) == build_cache_key("  教室管理 の詳細 ", cfg)
    assert build_cache_key("ＡＢＣ", cfg) == build_cache_key("abc", cfg)
    assert build_cache_key("教室", cfg) != build_cache_key("教室", SearchConfig(top_k=6))
    assert build_cache_key("教室", cfg) != build_cache_key(
        "教室", SearchConfig(label_filters=LabelFilters(include_archived=True))
    )
    assert build_cache_key("教室", SearchConfig(label_filters=LabelFilters(toggles={"b": True, "a": False}))) == (
        build_cache_key("教室", SearchConfig(label_filters=LabelFilters(toggles={"a": False, "b": True})))
    )
