# playground/retrieval_gate/test_filters_gate.py

"""
[职责] filters gate：验证标签范围（会议纪要/归档/具名开关）、标题模式与无效内容排除。
[边界] 只覆盖 filter_candidates/exclusion_reason；pipeline 两阶段调用见 service gate。
[上游关系] backend/pipelines/retrieval/filters.py、schemas/search.LabelFilters。
[下游关系] 诊断中的 exclusions 记录。
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from doc_rag.backend.pipelines.retrieval.filters import exclusion_reason, filter_candidates
from doc_rag.backend.pipelines.retrieval.types import Candidate
from doc_rag.backend.schemas.search import LabelFilters, SearchConfig, StructuredMetadata


pytestmark = pytest.mark.retrieval_gate

BODY = "この機能の説明文は十分な長さがあります。"


def _cand(cid: str, *, title: str = "教室管理", content: str = BODY, labels=(), meta=None) -> Candidate:
    return Candidate(
        id=cid,
        document_id=f"doc-{cid}",
        title=title,
        content=content,
        labels=frozenset(labels),
        structured_metadata=meta,
    )


def test_meeting_notes_and_archive_are_excluded_by_default() -> None:
    filters = LabelFilters()

    assert exclusion_reason(_cand("m", labels=["議事録"]), filters, ()) == "meeting_notes"
    assert exclusion_reason(_cand("a", labels=["Archived"]), filters, ()) == "archived"
    assert exclusion_reason(_cand("ok", labels=["教室"]), filters, ()) is None


def test_scope_flags_include_meeting_notes_and_archive() -> None:
    filters = LabelFilters(include_meeting_notes=True, include_archived=True)

    assert exclusion_reason(_cand("m", labels=["議事録"]), filters, ()) is None
    assert exclusion_reason(_cand("a", labels=["archived"]), filters, ()) is None


def test_named_toggles_exclude_and_override() -> None:
    off = LabelFilters(toggles={"draft": False})
    assert exclusion_reason(_cand("d", labels=["draft"]), off, ()) == "label_toggle"

    allow_minutes = LabelFilters(toggles={"議事録": True})
    assert exclusion_reason(_cand("m", labels=["議事録"]), allow_minutes, ()) is None

    with pytest.raises(ValidationError):
        LabelFilters(toggles={" ": True})


def test_title_patterns_use_glob_matching() -> None:
    patterns = ("*テンプレート*", "old-*")

    assert exclusion_reason(_cand("t", title="議事録テンプレート"), LabelFilters(), patterns) == "title_pattern"
    assert exclusion_reason(_cand("o", title="OLD-spec"), LabelFilters(), patterns) == "title_pattern"
    assert exclusion_reason(_cand("k", title="教室管理"), LabelFilters(), patterns) is None


def test_invalid_content_is_always_excluded() -> None:
    filters = LabelFilters(include_meeting_notes=True, include_archived=True, toggles={"教室": True})

    assert exclusion_reason(_cand("e", content="", labels=["教室"]), filters, ()) == "invalid_content"
    assert exclusion_reason(_cand("s", content="  短い \n"), filters, ()) == "invalid_content"
    flagged = _cand("f", meta=StructuredMetadata(is_valid=False))
    assert exclusion_reason(flagged, filters, ()) == "invalid_content"


def test_filter_candidates_records_stage_and_keeps_order() -> None:
    cands = [_cand("b"), _cand("m", labels=["議事録"]), _cand("a")]

    result = filter_candidates(cands, LabelFilters(), (), stage="post")

    assert [c.id for c in result.kept] == ["b", "a"]
    assert [(e.candidate_id, e.reason, e.stage) for e in result.excluded] == [("m", "meeting_notes", "post")]


def test_search_config_title_patterns_are_an_ordered_set() -> None:
    cfg = SearchConfig(exclude_title_patterns=("a*", "b*", "a*"))

    assert cfg.exclude_title_patterns == ("a*", "b*")
    with pytest.raises(ValidationError):
        SearchConfig(exclude_title_patterns=("",))
    with pytest.raises(ValidationError):
        SearchConfig(top_k=0)
