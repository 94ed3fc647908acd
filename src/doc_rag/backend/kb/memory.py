# src/doc_rag/backend/kb/memory.py

"""
[职责] 进程内暴力 k-NN 索引（L2 / cosine 距离），用于本地开发、脚本与测试。
[边界] 非近似索引，O(N·D)；向量写入与查询之间不加锁（由调用方在启动期一次性装载）。
[上游关系] scripts 或测试 fixture 调用 add/add_many 装载向量。
[下游关系] VectorRetrievalAdapter 通过 nearest_neighbors 调用（同步接口，适配层放入线程池）。
"""

from __future__ import annotations

import math
from typing import Dict, Iterable, List, Literal, Sequence, Tuple


Metric = Literal["l2", "cosine"]


class InMemoryVectorIndex:
    def __init__(self, *, dimension: int, metric: Metric = "l2") -> None:
        if dimension <= 0:
            raise ValueError("dimension must be > 0")
        if metric not in ("l2", "cosine"):
            raise ValueError(f"unsupported metric: {metric}")
        self.dimension = int(dimension)
        self.metric = metric
        self._vectors: Dict[str, Tuple[float, ...]] = {}

    def __len__(self) -> int:
        return len(self._vectors)

    def add(self, candidate_id: str, vector: Sequence[float]) -> None:
        if len(vector) != self.dimension:
            raise ValueError(f"vector dim mismatch: {len(vector)} != {self.dimension}")
        self._vectors[str(candidate_id)] = tuple(float(x) for x in vector)

    def add_many(self, items: Iterable[Tuple[str, Sequence[float]]]) -> None:
        for cid, vec in items:
            self.add(cid, vec)

    def _distance(self, a: Sequence[float], b: Sequence[float]) -> float:
        if self.metric == "l2":
            return math.sqrt(sum((x - y) ** 2 for x, y in zip(a, b)))
        dot = sum(x * y for x, y in zip(a, b))
        na = math.sqrt(sum(x * x for x in a))
        nb = math.sqrt(sum(y * y for y in b))
        if na == 0.0 or nb == 0.0:
            return 1.0
        return max(0.0, 1.0 - dot / (na * nb))  # docstring: cosine distance ∈ [0, 2]

    def nearest_neighbors(self, vector: Sequence[float], k: int) -> List[Dict[str, object]]:
        scored = [(self._distance(vector, vec), cid) for cid, vec in self._vectors.items()]
        scored.sort(key=lambda x: (x[0], x[1]))  # docstring: 距离相同按 id 稳定排序
        return [{"id": cid, "distance": dist} for dist, cid in scored[: max(int(k), 0)]]
