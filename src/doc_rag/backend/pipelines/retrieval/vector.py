# src/doc_rag/backend/pipelines/retrieval/vector.py

"""
[职责] Vector Retrieval Adapter：外部 k-NN 向量索引的薄适配层（维度校验、k 上限、错误统一映射）。
[边界] 不做语义打分/融合；不改变索引返回的相对顺序；同步索引放到线程池执行，异步索引直接 await。
[上游关系] VectorStrategy 传入 query 向量与 k；索引实现见 kb/memory.py、kb/repo.py。
[下游关系] 输出 (candidate_id, distance) 有序列表，由 VectorStrategy 回查语料并交给 RRF。
"""

from __future__ import annotations

import asyncio
import inspect
import math
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Protocol, Sequence

from doc_rag.backend.utils.errors import RetrievalUnavailable


class VectorIndex(Protocol):
    """
    外部 k-NN 索引协议：nearest_neighbors(vector, k) -> [{"id": str, "distance": float}]。
    实现可同步也可异步；dimension 为索引维度。
    """

    dimension: int

    def nearest_neighbors(self, vector: Sequence[float], k: int) -> Any: ...


@dataclass(frozen=True)
class VectorHit:
    candidate_id: str
    distance: float  # docstring: 非负；越小越相似


async def _call_index(fn: Any, vector: List[float], k: int) -> Any:
    """异步实现直接 await；同步实现放到线程池，避免阻塞事件循环。"""
    if inspect.iscoroutinefunction(fn):
        return await fn(vector, k)
    value = await asyncio.to_thread(fn, vector, k)
    if inspect.isawaitable(value):
        return await value
    return value


def _coerce_hit(raw: Any) -> Optional[VectorHit]:
    if isinstance(raw, Mapping):
        cid, dist = raw.get("id"), raw.get("distance")
    else:
        cid, dist = getattr(raw, "id", None), getattr(raw, "distance", None)
    if cid is None or dist is None:
        return None
    try:
        d = float(dist)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(d):
        return None
    return VectorHit(candidate_id=str(cid), distance=max(d, 0.0))  # docstring: 负距离（浮点误差）截断为 0


class VectorRetrievalAdapter:
    """
    [职责] query(vector, k)：校验维度、约束 k <= max_k、将索引异常统一为 RetrievalUnavailable。
    [边界] 不重试；超时由 orchestrator 控制；同一 id 重复返回时保留首个。
    """

    def __init__(self, index: VectorIndex, *, max_k: int, dimension: Optional[int] = None) -> None:
        if max_k <= 0:
            raise ValueError("max_k must be > 0")
        self._index = index
        self._max_k = int(max_k)
        self._dimension = int(dimension if dimension is not None else getattr(index, "dimension"))

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def max_k(self) -> int:
        return self._max_k

    async def query(self, vector: Sequence[float], k: int) -> List[VectorHit]:
        if len(vector) != self._dimension:
            raise RetrievalUnavailable(
                message=f"query vector dim {len(vector)} != index dim {self._dimension}",
                strategy="vector",
                reason="dimension_mismatch",
            )
        k_eff = min(int(k), self._max_k)
        if k_eff <= 0:
            return []

        try:
            raw = await _call_index(self._index.nearest_neighbors, [float(x) for x in vector], k_eff)
        except RetrievalUnavailable:
            raise
        except Exception as exc:
            raise RetrievalUnavailable(
                message="vector index query failed",
                strategy="vector",
                reason="index_error",
                detail={"type": exc.__class__.__name__},
                cause=exc,
            ) from exc

        hits: List[VectorHit] = []
        seen = set()
        for item in list(raw or [])[:k_eff]:
            hit = _coerce_hit(item)
            if hit is None or hit.candidate_id in seen:
                continue
            seen.add(hit.candidate_id)
            hits.append(hit)
        return hits
