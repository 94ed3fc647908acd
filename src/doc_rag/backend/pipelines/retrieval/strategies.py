# src/doc_rag/backend/pipelines/retrieval/strategies.py

"""
[职责] 检索策略实现：vector（embedding → k-NN → 回查语料）、lexical（候选窗口 → BM25）、title（标签限定的标题直接匹配）。
[边界] 每个策略只产出“策略内有序”的 Candidate 列表；后端异常统一抛 RetrievalUnavailable，由 orchestrator 吸收。
[上游关系] SearchService 装配策略（注入 embedder/adapter/corpus store/参数）。
[下游关系] StrategyOrchestrator 并发执行；fusion 按策略名读取结果。
"""

from __future__ import annotations

import dataclasses
from typing import Awaitable, FrozenSet, List, Optional, Protocol, Sequence, TypeVar

from doc_rag.backend.kb.corpus import CorpusStore
from doc_rag.backend.utils.constants import STRATEGY_LEXICAL, STRATEGY_TITLE, STRATEGY_VECTOR
from doc_rag.backend.utils.errors import RetrievalUnavailable

from . import bm25
from .embed import QueryEmbedder
from .keywords import normalize_text
from .types import Candidate, StrategyRequest
from .vector import VectorRetrievalAdapter


T = TypeVar("T")


class RetrievalStrategy(Protocol):
    name: str
    timeout_s: float

    async def run(self, request: StrategyRequest) -> Sequence[Candidate]: ...


async def _corpus_call(strategy: str, call: Awaitable[T]) -> T:
    """语料库访问异常 -> RetrievalUnavailable(reason=corpus_error)。"""
    try:
        return await call
    except RetrievalUnavailable:
        raise
    except Exception as exc:
        raise RetrievalUnavailable(
            message="corpus store unavailable",
            strategy=strategy,
            reason="corpus_error",
            detail={"type": exc.__class__.__name__},
            cause=exc,
        ) from exc


class VectorStrategy:
    """query → embed → k-NN（k = top_k × fetch_multiplier）→ 回查候选并附加 vector_distance。"""

    name = STRATEGY_VECTOR

    def __init__(
        self,
        *,
        embedder: QueryEmbedder,
        adapter: VectorRetrievalAdapter,
        corpus: CorpusStore,
        timeout_s: float,
        fetch_multiplier: int = 2,
    ) -> None:
        self._embedder = embedder
        self._adapter = adapter
        self._corpus = corpus
        self.timeout_s = float(timeout_s)
        self._fetch_multiplier = max(int(fetch_multiplier), 1)

    async def run(self, request: StrategyRequest) -> List[Candidate]:
        vector = await self._embedder.embed(request.query)
        hits = await self._adapter.query(vector, request.config.top_k * self._fetch_multiplier)
        if not hits:
            return []
        found = await _corpus_call(self.name, self._corpus.get_many([h.candidate_id for h in hits]))
        return [
            dataclasses.replace(found[h.candidate_id], vector_distance=h.distance)
            for h in hits
            if h.candidate_id in found  # docstring: 索引中存在但语料已删除的 id 直接丢弃
        ]


class LexicalStrategy:
    """关键词候选窗口 + 语料统计（可缺失）→ BM25 排序。"""

    name = STRATEGY_LEXICAL

    def __init__(
        self,
        *,
        corpus: CorpusStore,
        timeout_s: float,
        window: int = 200,
        params: Optional[bm25.BM25Params] = None,
    ) -> None:
        self._corpus = corpus
        self.timeout_s = float(timeout_s)
        self._window = max(int(window), 1)
        self._params = params or bm25.BM25Params()

    async def run(self, request: StrategyRequest) -> List[Candidate]:
        if not request.keywords:
            return []
        window = await _corpus_call(self.name, self._corpus.lexical_candidates(request.keywords, self._window))
        if not window:
            return []
        stats = await _corpus_call(self.name, self._corpus.corpus_stats(request.keywords))
        ranked = bm25.score(request.keywords, stats, window, self._params)
        by_id = {c.id: c for c in window}
        return [dataclasses.replace(by_id[cid], lexical_score=s) for cid, s in ranked]


class TitleMatchStrategy:
    """
    [职责] 标题直接匹配：完全一致优先，其次命中的最长关键词、命中数。
    [边界] required_labels 非空时只保留带任一指定标签的候选（标签限定）。
    """

    name = STRATEGY_TITLE

    def __init__(
        self,
        *,
        corpus: CorpusStore,
        timeout_s: float,
        window: int = 50,
        required_labels: Optional[Sequence[str]] = None,
    ) -> None:
        self._corpus = corpus
        self.timeout_s = float(timeout_s)
        self._window = max(int(window), 1)
        self._required: FrozenSet[str] = frozenset(x.casefold() for x in (required_labels or ()))

    def _rank_key(self, cand: Candidate, terms: Sequence[str]) -> tuple:
        title = normalize_text(cand.title)
        matched = [t for t in terms if t in title]
        exact = 0 if title in terms else 1
        longest = max((len(t) for t in matched), default=0)
        return (exact, -longest, -len(matched), cand.id)

    async def run(self, request: StrategyRequest) -> List[Candidate]:
        terms = [normalize_text(k) for k in request.keywords if normalize_text(k)]
        if not terms:
            return []
        rows = await _corpus_call(self.name, self._corpus.title_candidates(request.keywords, self._window))
        if self._required:
            rows = [c for c in rows if {lbl.casefold() for lbl in c.labels} & self._required]
        rows = [c for c in rows if any(t in normalize_text(c.title) for t in terms)]
        return sorted(rows, key=lambda c: self._rank_key(c, terms))
