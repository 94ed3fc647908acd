# src/doc_rag/backend/pipelines/retrieval/fusion.py

"""
[职责] Rank Fusion（RRF）：合并各策略的排名列表为统一融合分，并合并同一候选在各策略中的信号（距离/BM25/排名）。
[边界] 只依赖 rank，不比较各策略的原始分数（量纲不兼容）；输出与策略完成顺序无关。
[上游关系] orchestrator 产出按策略标记的 StrategyOutcome（仅 StrategyOk 参与）。
[下游关系] scoring 使用 fused_rank 与合并后的 Candidate。
"""

from __future__ import annotations

import dataclasses
import math
from typing import Dict, List, Mapping, Sequence, Tuple

from doc_rag.backend.utils.constants import DEFAULT_RRF_K

from .types import Candidate, StrategyOk, StrategyOutcome


def _rrf_score(rank: int, rrf_k: int) -> float:
    """1 / (κ + rank)；rank 为 1-based。"""
    return 1.0 / (float(rrf_k) + float(rank))


def _first_ranks(ranking: Sequence[str]) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for idx, cid in enumerate(ranking, start=1):
        out.setdefault(str(cid), idx)  # docstring: 列表内重复 id 保留首个 rank
    return out


def fuse(strategy_rankings: Mapping[str, Sequence[str]], *, rrf_k: int = DEFAULT_RRF_K) -> Dict[str, float]:
    """
    [职责] fused_rank(c) = Σ_s 1/(κ + rank_s(c))，只累加 c 出现的策略；缺席策略贡献 0。
    [边界] 策略按名称排序处理，分量用 math.fsum 求和；返回 dict 按 (-fused, id) 有序。
    """

    if rrf_k < 0:
        raise ValueError("rrf_k must be >= 0")
    parts: Dict[str, List[float]] = {}
    for strategy in sorted(strategy_rankings):
        for cid, rank in _first_ranks(strategy_rankings[strategy]).items():
            parts.setdefault(cid, []).append(_rrf_score(rank, rrf_k))

    fused = {cid: math.fsum(vals) for cid, vals in parts.items()}
    return dict(sorted(fused.items(), key=lambda kv: (-kv[1], kv[0])))


def _merge(base: Candidate, other: Candidate, strategy: str, rank: int) -> Candidate:
    ranks = dict(base.ranks)
    ranks.setdefault(strategy, rank)
    return dataclasses.replace(
        base,
        vector_distance=base.vector_distance if base.vector_distance is not None else other.vector_distance,
        lexical_score=base.lexical_score if base.lexical_score is not None else other.lexical_score,
        ranks=ranks,
    )


def collect_rankings(
    outcomes: Mapping[str, StrategyOutcome],
) -> Tuple[Dict[str, List[str]], Dict[str, Candidate]]:
    """
    [职责] 从 StrategyOk 中提取每个策略的 id 排名，并按 id 合并候选信号（ranks/vector_distance/lexical_score）。
    [边界] TimedOut/Failed 的策略被跳过（按标签判断，无异常处理）；按策略名排序合并，结果确定。
    """

    rankings: Dict[str, List[str]] = {}
    merged: Dict[str, Candidate] = {}
    for strategy in sorted(outcomes):
        outcome = outcomes[strategy]
        if not isinstance(outcome, StrategyOk):
            continue
        ids: List[str] = []
        for rank, cand in enumerate(outcome.candidates, start=1):
            ids.append(cand.id)
            if cand.id in merged:
                merged[cand.id] = _merge(merged[cand.id], cand, strategy, rank)
            else:
                ranks = dict(cand.ranks)
                ranks.setdefault(strategy, rank)
                merged[cand.id] = dataclasses.replace(cand, ranks=ranks)
        rankings[strategy] = ids
    return rankings, merged
