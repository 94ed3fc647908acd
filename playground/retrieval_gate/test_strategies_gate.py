# playground/retrieval_gate/test_strategies_gate.py

"""
[职责] strategies gate：验证 lexical/title 策略的候选窗口、排序与语料库异常归一。
[边界] 使用 InMemoryCorpusStore；不覆盖 orchestrator 超时。
[上游关系] backend/pipelines/retrieval/strategies.py、backend/kb/corpus.py。
[下游关系] pipeline 融合阶段依赖策略内排序。
"""

from __future__ import annotations

from typing import Dict, List, Sequence

import pytest

from doc_rag.backend.pipelines.retrieval.strategies import LexicalStrategy, TitleMatchStrategy
from doc_rag.backend.pipelines.retrieval.types import Candidate, StrategyRequest
from doc_rag.backend.schemas.search import SearchConfig
from doc_rag.backend.utils.errors import RetrievalUnavailable


pytestmark = pytest.mark.retrieval_gate

KEYWORDS = ("教室管理", "詳細", "教室", "管理")


class _OfflineCorpus:
    async def get_many(self, ids: Sequence[str]) -> Dict[str, Candidate]:
        raise OSError("database is locked")

    async def lexical_candidates(self, keywords: Sequence[str], limit: int) -> List[Candidate]:
        raise OSError("database is locked")

    async def title_candidates(self, keywords: Sequence[str], limit: int) -> List[Candidate]:
        raise OSError("database is locked")

    async def corpus_stats(self, keywords: Sequence[str]):
        return None


def _request(keywords: Sequence[str] = KEYWORDS) -> StrategyRequest:
    return StrategyRequest(query="教室管理の詳細は", keywords=tuple(keywords), config=SearchConfig())


@pytest.mark.asyncio
async def test_lexical_strategy_scores_keyword_window(corpus_store) -> None:
    strategy = LexicalStrategy(corpus=corpus_store, timeout_s=1.0)

    candidates = await strategy.run(_request())

    ids = [c.id for c in candidates]
    assert ids[0] in {"c-classroom-1", "c-classroom-2"}
    assert "c-invoice" not in ids
    assert "c-login" not in ids
    scores = [c.lexical_score for c in candidates]
    assert all(s is not None and s > 0 for s in scores)
    assert scores == sorted(scores, reverse=True)


@pytest.mark.asyncio
async def test_lexical_strategy_without_keywords_returns_nothing(corpus_store) -> None:
    strategy = LexicalStrategy(corpus=corpus_store, timeout_s=1.0)

    assert await strategy.run(_request(())) == []


@pytest.mark.asyncio
async def test_title_strategy_prefers_exact_titles(corpus_store) -> None:
    strategy = TitleMatchStrategy(corpus=corpus_store, timeout_s=1.0)

    candidates = await strategy.run(_request())

    ids = [c.id for c in candidates]
    assert ids[:2] == ["c-classroom-1", "c-classroom-2"]
    assert "c-room-detail" in ids
    assert "c-invoice" not in ids
    assert all(c.vector_distance is None and c.lexical_score is None for c in candidates)


@pytest.mark.asyncio
async def test_title_strategy_respects_required_labels(corpus_store) -> None:
    strategy = TitleMatchStrategy(corpus=corpus_store, timeout_s=1.0, required_labels=["画面仕様"])

    candidates = await strategy.run(_request())

    assert [c.id for c in candidates] == ["c-room-detail"]


@pytest.mark.asyncio
async def test_corpus_errors_become_retrieval_unavailable() -> None:
    for strategy in (
        LexicalStrategy(corpus=_OfflineCorpus(), timeout_s=1.0),
        TitleMatchStrategy(corpus=_OfflineCorpus(), timeout_s=1.0),
    ):
        with pytest.raises(RetrievalUnavailable) as exc_info:
            await strategy.run(_request())
        assert exc_info.value.reason == "corpus_error"
        assert exc_info.value.strategy == strategy.name
