# playground/retrieval_gate/test_keywords_gate.py

"""
[职责] keywords gate：验证日文 query 的关键词抽取（形态素分词、复合词拆分、品词过滤、排序、降级路径）。
[边界] 覆盖默认 janome 分词、脚本切分兜底与 assistant 扩展；assistant 使用本地 stub，不访问外部 LLM。
[上游关系] backend/pipelines/retrieval/keywords.py。
[下游关系] 保障 lexical/title 策略与 label/title 信号拿到稳定关键词。
"""

from __future__ import annotations

import asyncio
from typing import List, Sequence

import pytest

from doc_rag.backend.pipelines.retrieval.keywords import (
    DomainVocabulary,
    JanomeSegmenter,
    KeywordExtractor,
    ScriptRunSegmenter,
    Segment,
    near_duplicate_key,
)


pytestmark = pytest.mark.retrieval_gate


def _is_hiragana_only(term: str) -> bool:
    return all("\u3040" <= ch <= "\u309f" for ch in term)


class _BrokenSegmenter:
    name = "broken"

    def segment(self, text: str) -> List[Segment]:
        raise RuntimeError("dictionary missing")


class _SynonymAssistant:
    async def expand(self, query: str, keywords: Sequence[str]) -> Sequence[str]:
        return ["ルーム管理"]


class _FailingAssistant:
    async def expand(self, query: str, keywords: Sequence[str]) -> Sequence[str]:
        raise TimeoutError("assistant timeout")


class _SilentAssistant:
    async def expand(self, query: str, keywords: Sequence[str]) -> Sequence[str]:
        await asyncio.sleep(0)
        return []


def test_compound_query_keywords_in_priority_order() -> None:
    extraction = KeywordExtractor().extract("教室管理の詳細は")

    assert extraction.keywords == ("教室管理", "詳細", "教室", "管理")
    assert extraction.source == "rule_based"
    assert extraction.high_priority == ("教室管理", "詳細", "教室")
    assert extraction.meta["segmenter"] == "janome"


@pytest.mark.parametrize(
    "query, expected, junk",
    [
        ("請求書を発行するにはどうすればいいですか", ("請求書", "発行"), ("するにはどうすればいいですか", "どう")),
        ("授業を振り替えたい", ("授業",), ("えたい", "たい")),
        ("ログインについて教えてください", ("ログイン",), ("について", "ください", "教え")),
    ],
)
def test_default_segmenter_keeps_only_content_words(query: str, expected: tuple, junk: tuple) -> None:
    keywords = KeywordExtractor().extract(query).keywords

    for word in expected:
        assert word in keywords
    for word in junk:
        assert word not in keywords
    assert not any(_is_hiragana_only(k) for k in keywords)


def test_okurigana_verb_keeps_kanji_stem() -> None:
    keywords = KeywordExtractor().extract("授業を振り替えたい").keywords

    assert any(k.startswith("振") and len(k) >= 2 for k in keywords)


def test_janome_segments_carry_part_of_speech() -> None:
    segments = JanomeSegmenter().segment("請求書を発行する")

    assert "".join(s.text for s in segments if s.kind == "noun").startswith("請求")
    assert all(s.pos for s in segments)
    assert not any(s.pos.startswith("助詞") for s in segments)


def test_fullwidth_input_is_normalized() -> None:
    keywords = KeywordExtractor().extract("ＡＰＩ　設定").keywords

    assert "api" in keywords
    assert "設定" in keywords


def test_vocabulary_expands_stem_to_functional_compound() -> None:
    vocab = DomainVocabulary.from_terms(["教室管理", "生徒管理"])
    keywords = KeywordExtractor(vocabulary=vocab).extract("教室").keywords

    assert keywords[0] == "教室管理"
    assert "教室" in keywords


def test_near_duplicates_collapse_and_bound_is_respected() -> None:
    assert near_duplicate_key("教室 管理") == near_duplicate_key("教室管理")

    extractor = KeywordExtractor(max_keywords=2)
    keywords = extractor.extract("教室管理 生徒管理 時間割設定").keywords
    assert len(keywords) == 2
    assert len(set(near_duplicate_key(k) for k in keywords)) == 2


def test_segmenter_failure_degrades_to_script_run_split() -> None:
    extraction = KeywordExtractor(segmenter=_BrokenSegmenter()).extract("教室管理 詳細")

    assert extraction.meta["warning"] == "segmentation_failed"
    assert extraction.meta["fallback"] == "script_run"
    assert "RuntimeError" in extraction.meta["error"]
    assert "教室管理" in extraction.keywords
    assert "詳細" in extraction.keywords


@pytest.mark.asyncio
async def test_assistant_expansion_marks_model_source() -> None:
    extraction = await KeywordExtractor(assistant=_SynonymAssistant()).aextract("教室管理")

    assert extraction.source == "model_assisted"
    assert "ルーム管理" in extraction.keywords
    assert extraction.keywords[0] == "教室管理"
    assert extraction.meta["assisted"] == ["ルーム管理"]


@pytest.mark.asyncio
async def test_assistant_failure_keeps_rule_based_keywords() -> None:
    extraction = await KeywordExtractor(assistant=_FailingAssistant()).aextract("教室管理")

    assert extraction.source == "rule_based"
    assert extraction.meta["warning"] == "assistant_failed"
    assert "TimeoutError" in extraction.meta["assistant_error"]
    assert extraction.keywords[0] == "教室管理"


@pytest.mark.asyncio
async def test_empty_assistant_answer_stays_rule_based() -> None:
    extraction = await KeywordExtractor(assistant=_SilentAssistant()).aextract("教室管理")

    assert extraction.source == "rule_based"
    assert "warning" not in extraction.meta


def test_sync_extract_never_calls_assistant() -> None:
    extraction = KeywordExtractor(assistant=_FailingAssistant()).extract("教室管理")

    assert extraction.source == "rule_based"
    assert "warning" not in extraction.meta


def test_script_run_segmenter_splits_on_script_boundaries() -> None:
    segments = ScriptRunSegmenter().segment("教室コピー機能")

    assert [s.text for s in segments] == ["教室", "コピー", "機能"]
    assert [s.script for s in segments] == ["han", "katakana", "han"]


def test_empty_query_yields_no_keywords() -> None:
    extraction = KeywordExtractor().extract("   ")

    assert extraction.keywords == ()
    assert extraction.source == "rule_based"
