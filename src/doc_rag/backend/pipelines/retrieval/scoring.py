# src/doc_rag/backend/pipelines/retrieval/scoring.py

"""
[职责] Composite Scorer：对融合后的候选计算复合分数（向量/BM25/标题/标签四项归一信号的加权和），并保留可审计的分项贡献。
[边界] 权重为配置而非硬编码；归一化在当前候选集合内完成；ScoredResult 创建后不可变。
[上游关系] pipeline 传入融合窗口内的合并候选、fused_rank 与关键词。
[下游关系] dedupe 基于 composite_score 选择每个文档的最佳 chunk；ScoreBreakdown 输出给调用方调试。
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from doc_rag.backend.schemas.search import ScoreBreakdown, ScoredResult, StructuredMetadata
from doc_rag.backend.utils.constants import (
    DEFAULT_LABEL_WEIGHT,
    DEFAULT_LEXICAL_WEIGHT,
    DEFAULT_TITLE_WEIGHT,
    DEFAULT_VECTOR_WEIGHT,
    LABEL_PLAIN_SHARE,
    LABEL_STRUCTURED_SHARE,
    STRUCTURED_APPROVED_POINTS,
    STRUCTURED_CATEGORY_POINTS,
    STRUCTURED_DOMAIN_POINTS,
    STRUCTURED_FEATURE_POINTS,
    STRUCTURED_MAX_POINTS,
    STRUCTURED_TAG_POINTS,
)

from .keywords import near_duplicate_key, normalize_text
from .types import Candidate


@dataclass(frozen=True)
class CompositeWeights:
    """
    [职责] 四项信号权重；非负且和为正，使用时归一化为和 1，因此 composite_score ∈ [0, 1]。
    """

    vector: float = DEFAULT_VECTOR_WEIGHT
    lexical: float = DEFAULT_LEXICAL_WEIGHT
    title: float = DEFAULT_TITLE_WEIGHT
    label: float = DEFAULT_LABEL_WEIGHT

    def __post_init__(self) -> None:
        values = (self.vector, self.lexical, self.title, self.label)
        if any((not math.isfinite(w)) or w < 0 for w in values):
            raise ValueError("composite weights must be finite and >= 0")
        if sum(values) <= 0:
            raise ValueError("composite weights must not all be zero")

    def normalized(self) -> Tuple[float, float, float, float]:
        total = self.vector + self.lexical + self.title + self.label
        return (self.vector / total, self.lexical / total, self.title / total, self.label / total)


@dataclass(frozen=True)
class SignalSet:
    """单候选的四项归一信号（均在 [0, 1]）。"""

    vector: float = 0.0
    lexical: float = 0.0
    title: float = 0.0
    label: float = 0.0


@dataclass(frozen=True)
class _SetStats:
    min_distance: Optional[float]
    max_distance: Optional[float]
    max_lexical: float


def _set_stats(candidates: Iterable[Candidate]) -> _SetStats:
    dists = [c.vector_distance for c in candidates if c.vector_distance is not None]
    lex = [c.lexical_score for c in candidates if c.lexical_score is not None]
    return _SetStats(
        min_distance=min(dists) if dists else None,
        max_distance=max(dists) if dists else None,
        max_lexical=max(lex) if lex else 0.0,
    )


def vector_signal(distance: Optional[float], stats: _SetStats) -> float:
    """距离反转 + 集合内 min-max；集合内距离全相同时为 1.0；无距离为 0。"""
    if distance is None or stats.min_distance is None or stats.max_distance is None:
        return 0.0
    span = stats.max_distance - stats.min_distance
    if span <= 0:
        return 1.0
    return min(max((stats.max_distance - distance) / span, 0.0), 1.0)


def lexical_signal(score: Optional[float], stats: _SetStats) -> float:
    if score is None or stats.max_lexical <= 0:
        return 0.0
    return min(max(score / stats.max_lexical, 0.0), 1.0)


def title_signal(title: str, keywords: Sequence[str]) -> float:
    """
    标题与任一关键词规范化后完全一致 → 1.0；
    否则为命中关键词字符数 / 关键词总字符数（长词权重更高）。
    """
    terms = [normalize_text(k) for k in keywords if normalize_text(k)]
    if not terms:
        return 0.0
    t = normalize_text(title)
    if not t:
        return 0.0
    title_key = near_duplicate_key(t)
    if any(near_duplicate_key(k) == title_key for k in terms):
        return 1.0
    total = sum(len(k) for k in terms)
    matched = sum(len(k) for k in terms if k in t)
    return matched / total


def _matches_any(value: str, keywords: Sequence[str]) -> bool:
    v = value.casefold()
    return any(k in v or v in k for k in keywords)


def label_signal(labels: Iterable[str], keywords: Sequence[str], structured: Optional[StructuredMetadata]) -> float:
    """
    [职责] 标签信号：20% 普通标签命中率（关键词是否为某标签子串）+ 80% 结构化标签匹配。
    [边界] 结构化：domain +2、feature +1.5、tags +0.5、category +0.3、status=approved +0.2，除以 4.5 并截断到 1。
    """
    kws = [k.casefold() for k in keywords if k]
    if not kws:
        return 0.0

    score = 0.0
    lowered = [lbl.casefold() for lbl in labels]
    if lowered:
        hits = sum(1 for k in kws if any(k in lbl for lbl in lowered))
        score += (hits / len(kws)) * LABEL_PLAIN_SHARE

    if structured is None:
        return min(score, 1.0)

    points = 0.0
    checks = 0
    if structured.domain:
        checks += 1
        if _matches_any(structured.domain, kws):
            points += STRUCTURED_DOMAIN_POINTS
    if structured.feature:
        checks += 1
        if _matches_any(structured.feature, kws):
            points += STRUCTURED_FEATURE_POINTS
    if structured.tags:
        checks += 1
        tags = [t.casefold() for t in structured.tags if t]
        if any(k in tag or tag in k for k in kws for tag in tags):
            points += STRUCTURED_TAG_POINTS
    if structured.category:
        checks += 1
        if _matches_any(structured.category, kws):
            points += STRUCTURED_CATEGORY_POINTS
    if (structured.status or "").casefold() == "approved":
        points += STRUCTURED_APPROVED_POINTS

    if checks > 0:
        score += min(points / STRUCTURED_MAX_POINTS, 1.0) * LABEL_STRUCTURED_SHARE
    return min(score, 1.0)


def result_sort_key(result: ScoredResult) -> tuple:
    """最终排序：composite 降序 → vector_distance 升序（缺失视为 +inf）→ document_id → id。"""
    dist = result.vector_distance if result.vector_distance is not None else math.inf
    return (-result.composite_score, dist, result.document_id, result.id)


class CompositeScorer:
    """
    [职责] score(candidate, fused_rank, signals) -> ScoredResult；score_all 负责集合内归一化。
    [边界] 分项贡献 = 归一权重 × 信号；composite = 分项之和。
    """

    def __init__(self, weights: Optional[CompositeWeights] = None) -> None:
        self._weights = weights or CompositeWeights()

    @property
    def weights(self) -> CompositeWeights:
        return self._weights

    def score(self, candidate: Candidate, fused_rank: float, signals: SignalSet) -> ScoredResult:
        wv, wl, wt, wb = self._weights.normalized()
        breakdown = ScoreBreakdown(
            vector_contribution=wv * signals.vector,
            lexical_contribution=wl * signals.lexical,
            title_contribution=wt * signals.title,
            label_contribution=wb * signals.label,
        )
        return ScoredResult(
            id=candidate.id,
            document_id=candidate.document_id,
            title=candidate.title,
            content=candidate.content,
            labels=tuple(sorted(candidate.labels)),
            vector_distance=candidate.vector_distance,
            lexical_score=candidate.lexical_score,
            ranks=dict(sorted(candidate.ranks.items())),
            structured_metadata=candidate.structured_metadata,
            fused_rank=float(fused_rank),
            composite_score=breakdown.total(),
            score_breakdown=breakdown,
        )

    def score_all(
        self,
        candidates: Sequence[Candidate],
        fused_ranks: Mapping[str, float],
        keywords: Sequence[str],
    ) -> List[ScoredResult]:
        stats = _set_stats(candidates)
        out: List[ScoredResult] = []
        for cand in candidates:
            signals = SignalSet(
                vector=vector_signal(cand.vector_distance, stats),
                lexical=lexical_signal(cand.lexical_score, stats),
                title=title_signal(cand.title, keywords),
                label=label_signal(cand.labels, keywords, cand.structured_metadata),
            )
            out.append(self.score(cand, fused_ranks.get(cand.id, 0.0), signals))
        out.sort(key=result_sort_key)
        return out
