# src/doc_rag/backend/pipelines/retrieval/cache.py

"""
[职责] Result Cache：按（规范化 query + 规范化配置）缓存最终排序结果；容量有界（LRU）且按 TTL 过期。
[边界] 跨请求唯一的共享可变状态；所有读写在 threading.Lock 内完成；结构校验失败的值视为 miss 并淘汰，绝不返回。
[上游关系] SearchService 在 pipeline 之前读、之后写（read-through）；实例由调用方构造并注入。
[下游关系] health 路由读取 stats()；生命周期（sweep/clear）由调用方负责。
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import threading
import time
import unicodedata
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from doc_rag.backend.schemas.search import ScoredResult, SearchConfig
from doc_rag.backend.utils.errors import CacheCorruptionError
from doc_rag.backend.utils.logging_ import get_logger, log_event


logger = get_logger("retrieval.cache")


def normalize_query(query: str) -> str:
    """NFKC + 小写 + 空白折叠。"""
    return " ".join(unicodedata.normalize("NFKC", query or "").lower().split())


def canonical_config(config: SearchConfig) -> str:
    return json.dumps(config.model_dump(mode="json"), sort_keys=True, ensure_ascii=False, separators=(",", ":"))


def build_cache_key(query: str, config: SearchConfig) -> str:
    """sha256(normalized query + 0x1f + canonical config JSON)。"""
    raw = f"{normalize_query(query)}\x1f{canonical_config(config)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Tuple[Any, ...]
    created_at: float
    ttl_s: float

    def expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl_s


def validate_results(value: Any) -> Tuple[ScoredResult, ...]:
    """结构校验：必须为 ScoredResult 序列，composite_score 有限，且 document_id 不重复。"""
    if not isinstance(value, tuple):
        raise CacheCorruptionError(detail={"type": type(value).__name__})
    seen = set()
    for item in value:
        if not isinstance(item, ScoredResult):
            raise CacheCorruptionError(detail={"item_type": type(item).__name__})
        if not math.isfinite(item.composite_score):
            raise CacheCorruptionError(detail={"id": item.id, "problem": "non_finite_score"})
        if item.document_id in seen:
            raise CacheCorruptionError(detail={"id": item.id, "problem": "duplicate_document"})
        seen.add(item.document_id)
    return value


class ResultCache:
    """
    [职责] 线程安全 LRU + TTL 缓存。
    [边界] get 命中会刷新 LRU 位置，但不延长 TTL；put 覆盖同 key 的整个条目（不做部分更新）。
    """

    def __init__(
        self,
        *,
        capacity: int = 512,
        default_ttl_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        if default_ttl_s <= 0:
            raise ValueError("default_ttl_s must be > 0")
        self._capacity = int(capacity)
        self._default_ttl_s = float(default_ttl_s)
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {
            "hits": 0,
            "misses": 0,
            "evictions": 0,
            "expirations": 0,
            "corruptions": 0,
        }

    def get(self, key: str) -> Optional[Tuple[ScoredResult, ...]]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._counters["misses"] += 1
                return None
            if entry.expired(self._clock()):
                del self._entries[key]
                self._counters["expirations"] += 1
                self._counters["misses"] += 1
                return None
            try:
                value = validate_results(entry.value)
            except CacheCorruptionError as exc:
                del self._entries[key]
                self._counters["corruptions"] += 1
                self._counters["misses"] += 1
                log_event(
                    logger,
                    logging.WARNING,
                    "cache entry failed validation, evicted",
                    fields={"cache_key": key, "error_kind": exc.error_code, "detail": exc.detail},
                )
                return None
            self._entries.move_to_end(key)
            self._counters["hits"] += 1
            return value

    def put(self, key: str, value: Sequence[ScoredResult], ttl: Optional[float] = None) -> None:
        ttl_s = self._default_ttl_s if ttl is None else float(ttl)
        if ttl_s <= 0:
            return
        entry = CacheEntry(key=key, value=tuple(value), created_at=self._clock(), ttl_s=ttl_s)
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            self._entries[key] = entry
            while len(self._entries) > self._capacity:
                self._entries.popitem(last=False)  # docstring: 淘汰最久未使用
                self._counters["evictions"] += 1

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def sweep(self) -> int:
        """移除所有已过期条目，返回移除数量。"""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.expired(now)]
            for k in expired:
                del self._entries[k]
            self._counters["expirations"] += len(expired)
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            out = dict(self._counters)
            out["size"] = len(self._entries)
            out["capacity"] = self._capacity
        return out
