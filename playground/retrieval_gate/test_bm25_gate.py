# playground/retrieval_gate/test_bm25_gate.py

"""
[职责] bm25 gate：验证字段加权 BM25（idf 边界、标题权重、零分剔除、统计降级）。
[边界] 纯函数测试；不依赖语料库实现。
[上游关系] backend/pipelines/retrieval/bm25.py。
[下游关系] LexicalStrategy 的 lexical_score 与 lexical 信号。
"""

from __future__ import annotations

import math

import pytest

from doc_rag.backend.pipelines.retrieval import bm25 as bm25_mod
from doc_rag.backend.pipelines.retrieval.types import Candidate


pytestmark = pytest.mark.retrieval_gate


def _cand(cid: str, title: str, content: str) -> Candidate:
    return Candidate(id=cid, document_id=f"doc-{cid}", title=title, content=content)


def test_idf_is_finite_and_treats_unseen_terms_as_rare() -> None:
    assert bm25_mod.idf(100, 0) == pytest.approx(bm25_mod.idf(100, 1))
    assert bm25_mod.idf(100, 1) > bm25_mod.idf(100, 50) > 0.0
    assert math.isfinite(bm25_mod.idf(0, 0))
    assert bm25_mod.idf(10, 500) == pytest.approx(bm25_mod.idf(10, 10))  # docstring: df 截断到 N


def test_title_hits_outweigh_content_hits() -> None:
    in_title = _cand("t", "教室管理", "画面の説明です。")
    in_content = _cand("c", "画面説明", "教室管理の説明です。")

    ranked = bm25_mod.score(["教室管理"], None, [in_content, in_title])

    assert [cid for cid, _ in ranked] == ["t", "c"]
    assert ranked[0][1] > ranked[1][1] > 0.0


def test_zero_score_candidates_are_dropped() -> None:
    hit = _cand("a", "請求書", "請求書の発行")
    miss = _cand("b", "ログイン", "パスワード")

    ranked = bm25_mod.score(["請求書"], None, [hit, miss])

    assert [cid for cid, _ in ranked] == ["a"]


def test_empty_inputs_score_nothing() -> None:
    cands = [_cand("a", "教室", "教室の説明")]
    assert bm25_mod.score([], None, cands) == []
    assert bm25_mod.score(["教室"], None, []) == []


def test_corpus_stats_override_window_estimate() -> None:
    cands = [_cand("a", "教室", "教室の登録"), _cand("b", "生徒", "生徒の教室")]

    rare = bm25_mod.CorpusStats(total_documents=1000, document_frequency={"教室": 2}, avg_field_length={})
    common = bm25_mod.CorpusStats(total_documents=1000, document_frequency={"教室": 900}, avg_field_length={})

    rare_top = bm25_mod.score(["教室"], rare, cands)[0][1]
    common_top = bm25_mod.score(["教室"], common, cands)[0][1]
    assert rare_top > common_top


def test_estimate_stats_counts_window_document_frequency() -> None:
    cands = [_cand("a", "教室", "登録"), _cand("b", "生徒", "教室"), _cand("c", "請求", "発行")]

    stats = bm25_mod.estimate_stats(["教室", "請求"], cands)

    assert stats.total_documents == 3
    assert stats.document_frequency == {"教室": 2, "請求": 1}
    assert stats.avg_field_length["title"] == pytest.approx(2.0)


def test_ordering_is_deterministic_on_ties() -> None:
    a = _cand("a", "教室", "同じ内容")
    b = _cand("b", "教室", "同じ内容")

    assert bm25_mod.score(["教室"], None, [b, a]) == bm25_mod.score(["教室"], None, [a, b])
    assert [cid for cid, _ in bm25_mod.score(["教室"], None, [b, a])] == ["a", "b"]


def test_params_reject_unknown_fields() -> None:
    with pytest.raises(ValueError):
        bm25_mod.BM25Params(field_weights={"body": 1.0})
    with pytest.raises(ValueError):
        bm25_mod.BM25Params(b=1.5)
