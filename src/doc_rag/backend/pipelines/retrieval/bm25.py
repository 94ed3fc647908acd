# src/doc_rag/backend/pipelines/retrieval/bm25.py

"""
[职责] Lexical Scorer：经典 BM25（k1/b）对候选的 title/content 字段按关键词打分，title 字段权重高于正文。
[边界] 不做召回（候选窗口由 corpus store 提供）；不依赖 DB；统计量来自外部快照或候选窗口估算。
[上游关系] LexicalStrategy 提供 keywords + CorpusStats(可选) + 候选窗口。
[下游关系] 输出 (candidate_id, score) 排序列表，作为 lexical 策略的排名交给 RRF。
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from doc_rag.backend.utils.constants import (
    DEFAULT_BM25_B,
    DEFAULT_BM25_K1,
    DEFAULT_CONTENT_FIELD_WEIGHT,
    DEFAULT_TITLE_FIELD_WEIGHT,
)

from .keywords import normalize_text
from .types import Candidate


FIELDS = ("title", "content")


@dataclass(frozen=True)
class BM25Params:
    k1: float = DEFAULT_BM25_K1
    b: float = DEFAULT_BM25_B
    field_weights: Mapping[str, float] = field(
        default_factory=lambda: {"title": DEFAULT_TITLE_FIELD_WEIGHT, "content": DEFAULT_CONTENT_FIELD_WEIGHT}
    )

    def __post_init__(self) -> None:
        if self.k1 < 0:
            raise ValueError("k1 must be >= 0")
        if not 0.0 <= self.b <= 1.0:
            raise ValueError("b must be within [0, 1]")
        for name, weight in self.field_weights.items():
            if name not in FIELDS:
                raise ValueError(f"unknown BM25 field: {name}")
            if weight < 0:
                raise ValueError(f"field weight must be >= 0: {name}")


@dataclass(frozen=True)
class CorpusStats:
    """
    [职责] 语料统计快照：N（可检索单元总数）、df（包含该词的单元数）、各字段平均长度。
    [边界] 只读；由 corpus store 离线/按需提供；缺失字段由候选窗口估算补齐。
    """

    total_documents: int
    document_frequency: Mapping[str, int]
    avg_field_length: Mapping[str, float] = field(default_factory=dict)


def idf(total_documents: int, df: int) -> float:
    """
    idf = ln(1 + (N - df + 0.5) / (df + 0.5))；df=0 按 df=1 处理（稀有词），df 截断到 N。
    结果恒为有限非负值。
    """
    n = max(int(total_documents), 1)
    d = min(max(int(df), 1), n)
    return math.log(1.0 + (n - d + 0.5) / (d + 0.5))


def term_frequency(term: str, text: str) -> int:
    """不重叠出现次数（无空格语言按子串计数）。"""
    if not term or not text:
        return 0
    return text.count(term)


def _field_texts(candidate: Candidate) -> Dict[str, str]:
    return {"title": normalize_text(candidate.title), "content": normalize_text(candidate.content)}


def estimate_stats(keywords: Sequence[str], candidates: Sequence[Candidate]) -> CorpusStats:
    """用当前候选窗口估算 N/df/平均字段长度（外部统计不可用时的降级路径）。"""
    texts = [_field_texts(c) for c in candidates]
    df: Dict[str, int] = {}
    for kw in keywords:
        df[kw] = sum(1 for t in texts if any(kw in t[f] for f in FIELDS))
    avg = {}
    for f in FIELDS:
        avg[f] = (sum(len(t[f]) for t in texts) / len(texts)) if texts else 0.0
    return CorpusStats(total_documents=len(candidates), document_frequency=df, avg_field_length=avg)


def score(
    keywords: Sequence[str],
    corpus_stats: Optional[CorpusStats],
    candidates: Sequence[Candidate],
    params: Optional[BM25Params] = None,
) -> List[Tuple[str, float]]:
    """
    [职责] 对候选打分并输出按 (-score, id) 排序的 (candidate_id, lexical_score)。
    [边界] 分数为 0 的候选不输出；同一 id 重复出现时只计首个；输入相同则输出相同。
    """

    p = params or BM25Params()
    terms = [normalize_text(k) for k in keywords]
    terms = [t for i, t in enumerate(terms) if t and t not in terms[:i]]
    if not terms or not candidates:
        return []

    window = estimate_stats(terms, candidates)
    stats = corpus_stats or window
    n = stats.total_documents if stats.total_documents > 0 else window.total_documents
    avg_len = {f: stats.avg_field_length.get(f) or window.avg_field_length.get(f) or 1.0 for f in FIELDS}
    idfs = {t: idf(n, stats.document_frequency.get(t, window.document_frequency.get(t, 0))) for t in terms}

    scored: Dict[str, float] = {}
    for cand in candidates:
        if cand.id in scored:
            continue
        texts = _field_texts(cand)
        total = 0.0
        for t in terms:
            weighted_tf = 0.0
            for f in FIELDS:
                w = p.field_weights.get(f, 0.0)
                tf = term_frequency(t, texts[f])
                if w <= 0 or tf == 0:
                    continue
                norm = 1.0 - p.b + p.b * (len(texts[f]) / avg_len[f])
                weighted_tf += w * (tf * (p.k1 + 1.0)) / (tf + p.k1 * norm)
            total += idfs[t] * weighted_tf
        scored[cand.id] = total

    ranked = [(cid, s) for cid, s in scored.items() if s > 0.0]
    ranked.sort(key=lambda x: (-x[1], x[0]))
    return ranked
