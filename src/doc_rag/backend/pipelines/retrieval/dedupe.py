# src/doc_rag/backend/pipelines/retrieval/dedupe.py

"""
[职责] Chunk Deduplicator：同一 document_id 只保留一个最佳 chunk，避免单文档挤占固定大小的结果窗口。
[边界] 选择规则：composite_score 最高 → vector_distance 最低（缺失视为 +inf）→ id 最小；不修改 ScoredResult。
[上游关系] scoring 输出的 ScoredResult 列表。
[下游关系] pipeline 截断 top_k 后返回/写缓存。
"""

from __future__ import annotations

import math
from typing import Dict, Iterable, List

from doc_rag.backend.schemas.search import ScoredResult

from .scoring import result_sort_key


def _preference(result: ScoredResult) -> tuple:
    dist = result.vector_distance if result.vector_distance is not None else math.inf
    return (-result.composite_score, dist, result.id)


def dedupe(scored_results: Iterable[ScoredResult]) -> List[ScoredResult]:
    best: Dict[str, ScoredResult] = {}
    for result in scored_results:
        current = best.get(result.document_id)
        if current is None or _preference(result) < _preference(current):
            best[result.document_id] = result
    return sorted(best.values(), key=result_sort_key)
