# src/doc_rag/backend/pipelines/retrieval/filters.py

"""
[职责] Label/Metadata Filter：按标签范围（归档/会议纪要/具名开关）、标题 glob、内容有效性排除候选，并保留排除原因。
[边界] 不打分、不重排（保留输入顺序）；融合前（pre）与融合后（post）使用同一规则。
[上游关系] pipeline 在各策略结果进入 RRF 前调用（stage=pre），融合后再防御性调用一次（stage=post）。
[下游关系] 排除记录写入 SearchDiagnostics.exclusions；kept 列表进入 fusion/scoring。
"""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass
from typing import List, Literal, Optional, Sequence, Tuple

from doc_rag.backend.schemas.search import LabelFilters
from doc_rag.backend.utils.constants import (
    ARCHIVED_LABELS,
    EXCLUDE_REASON_ARCHIVED,
    EXCLUDE_REASON_INVALID,
    EXCLUDE_REASON_MEETING_NOTES,
    EXCLUDE_REASON_TITLE_PATTERN,
    EXCLUDE_REASON_TOGGLE,
    MEETING_NOTE_LABELS,
)

from .types import Candidate, Exclusion


DEFAULT_MIN_CONTENT_CHARS = 10  # docstring: 近空内容阈值（去空白后字符数）


@dataclass(frozen=True)
class FilterResult:
    kept: Tuple[Candidate, ...]
    excluded: Tuple[Exclusion, ...]


def _norm_labels(candidate: Candidate) -> frozenset:
    return frozenset(lbl.strip().casefold() for lbl in candidate.labels)


def _invalid(candidate: Candidate, min_content_chars: int) -> bool:
    meta = candidate.structured_metadata
    if meta is not None and meta.is_valid is False:
        return True
    return len("".join(candidate.content.split())) < min_content_chars


def exclusion_reason(
    candidate: Candidate,
    label_filters: LabelFilters,
    exclude_title_patterns: Sequence[str],
    *,
    min_content_chars: int = DEFAULT_MIN_CONTENT_CHARS,
) -> Optional[str]:
    """
    [职责] 判定单个候选的排除原因（None 表示保留）。
    [边界] 规则顺序固定：无效内容 → 具名开关 → 归档 → 会议纪要 → 标题模式。
    """

    if _invalid(candidate, min_content_chars):
        return EXCLUDE_REASON_INVALID  # docstring: 无效内容无条件排除

    labels = _norm_labels(candidate)
    toggles = {k.strip().casefold(): v for k, v in label_filters.toggles.items()}
    if any(toggles.get(lbl) is False for lbl in labels):
        return EXCLUDE_REASON_TOGGLE
    explicitly_included = {lbl for lbl in labels if toggles.get(lbl) is True}

    if not label_filters.include_archived and (labels & ARCHIVED_LABELS) - explicitly_included:
        return EXCLUDE_REASON_ARCHIVED
    if not label_filters.include_meeting_notes and (labels & MEETING_NOTE_LABELS) - explicitly_included:
        return EXCLUDE_REASON_MEETING_NOTES

    title = candidate.title.casefold()
    for pattern in exclude_title_patterns:
        if fnmatch.fnmatchcase(title, pattern.casefold()):
            return EXCLUDE_REASON_TITLE_PATTERN
    return None


def filter_candidates(
    candidates: Sequence[Candidate],
    label_filters: LabelFilters,
    exclude_title_patterns: Sequence[str],
    *,
    stage: Literal["pre", "post"] = "pre",
    min_content_chars: int = DEFAULT_MIN_CONTENT_CHARS,
) -> FilterResult:
    kept: List[Candidate] = []
    excluded: List[Exclusion] = []
    for cand in candidates:
        reason = exclusion_reason(cand, label_filters, exclude_title_patterns, min_content_chars=min_content_chars)
        if reason is None:
            kept.append(cand)
        else:
            excluded.append(Exclusion(candidate_id=cand.id, reason=reason, stage=stage))
    return FilterResult(kept=tuple(kept), excluded=tuple(excluded))
