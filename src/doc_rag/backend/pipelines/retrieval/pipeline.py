# src/doc_rag/backend/pipelines/retrieval/pipeline.py

"""
[职责] search pipeline：keywords → 并发策略 → 融合前过滤 → RRF → 融合窗口 → 融合后过滤 → 复合打分 → 文档去重 → top_k。
[边界] 不读写缓存（由 SearchService 负责）；不校验配置；所有策略失败时抛 AllStrategiesFailedError。
[上游关系] services/search_service.SearchService.search 调用；依赖 PipelineContext 记录 timing。
[下游关系] 返回 PipelineOutput（results + diagnostics + degraded）给 SearchService。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from doc_rag.backend.pipelines.base.context import PipelineContext
from doc_rag.backend.schemas.search import (
    ExclusionRecord,
    ScoredResult,
    SearchConfig,
    SearchDiagnostics,
    StrategyReport,
)
from doc_rag.backend.utils.constants import (
    DEFAULT_RRF_K,
    STAGE_POST,
    STAGE_PRE,
    STRATEGY_LEXICAL,
    STRATEGY_ORDER,
    STRATEGY_TITLE,
    STRATEGY_VECTOR,
)
from doc_rag.backend.utils.errors import AllStrategiesFailedError
from doc_rag.backend.utils.logging_ import get_logger, hash_text, log_event

from . import dedupe as dedupe_mod
from . import filters as filters_mod
from . import fusion as fusion_mod
from .keywords import KeywordExtractor
from .orchestrator import OrchestrationResult, StrategyOrchestrator
from .scoring import CompositeScorer
from .strategies import RetrievalStrategy
from .types import Exclusion, StrategyOk, StrategyOutcome, StrategyRequest


logger = get_logger("retrieval.pipeline")


@dataclass(frozen=True)
class PipelineParams:
    """Pipeline 级调参（来自 Settings，请求间不变）。"""

    rrf_k: int = DEFAULT_RRF_K
    fusion_window: int = 50  # docstring: 进入打分阶段的融合候选上限
    min_content_chars: int = filters_mod.DEFAULT_MIN_CONTENT_CHARS


@dataclass(frozen=True)
class PipelineOutput:
    results: Tuple[ScoredResult, ...]
    diagnostics: SearchDiagnostics
    degraded: bool


def select_strategies(
    config: SearchConfig,
    available: Mapping[str, RetrievalStrategy],
) -> List[RetrievalStrategy]:
    """
    [职责] 按配置开关选择本次启用的策略（顺序固定为 vector → lexical → title）。
    [边界] vector 总是启用（若已装配）；lexical/title 由 use_lexical_index/use_title_match 控制。
    """
    enabled = {
        STRATEGY_VECTOR: True,
        STRATEGY_LEXICAL: config.use_lexical_index,
        STRATEGY_TITLE: config.use_title_match,
    }
    return [available[name] for name in STRATEGY_ORDER if name in available and enabled.get(name, False)]


def _strategy_reports(outcomes: Mapping[str, StrategyOutcome]) -> Dict[str, StrategyReport]:
    reports: Dict[str, StrategyReport] = {}
    for name, outcome in outcomes.items():
        if isinstance(outcome, StrategyOk):
            reports[name] = StrategyReport(status="ok", hits=len(outcome.candidates), elapsed_ms=round(outcome.elapsed_ms, 3))
        elif outcome.status == "timed_out":
            reports[name] = StrategyReport(status="timed_out", error_kind=outcome.error_kind, reason=outcome.scope)
        else:
            reports[name] = StrategyReport(
                status="failed",
                elapsed_ms=round(outcome.elapsed_ms, 3),
                error_kind=outcome.error_kind,
                reason=outcome.reason,
            )
    return reports


def _prefilter(
    outcomes: Mapping[str, StrategyOutcome],
    config: SearchConfig,
    *,
    min_content_chars: int,
) -> Tuple[Dict[str, StrategyOutcome], List[Exclusion]]:
    """融合前过滤：只作用于 StrategyOk，被排除的候选不会参与 RRF 排名。"""
    filtered: Dict[str, StrategyOutcome] = {}
    excluded: List[Exclusion] = []
    for name, outcome in outcomes.items():
        if not isinstance(outcome, StrategyOk):
            filtered[name] = outcome
            continue
        res = filters_mod.filter_candidates(
            outcome.candidates,
            config.label_filters,
            config.exclude_title_patterns,
            stage=STAGE_PRE,
            min_content_chars=min_content_chars,
        )
        filtered[name] = StrategyOk(strategy=name, candidates=res.kept, elapsed_ms=outcome.elapsed_ms)
        excluded.extend(res.excluded)
    return filtered, excluded


def _exclusion_records(exclusions: Sequence[Exclusion]) -> Tuple[ExclusionRecord, ...]:
    seen = set()
    out: List[ExclusionRecord] = []
    for ex in exclusions:
        key = (ex.candidate_id, ex.reason, ex.stage)
        if key in seen:
            continue  # docstring: 同一候选被多个策略召回时只记录一次
        seen.add(key)
        out.append(ExclusionRecord(candidate_id=ex.candidate_id, reason=ex.reason, stage=ex.stage))
    return tuple(out)


def _failure_detail(orch: OrchestrationResult) -> Dict[str, object]:
    return {
        "strategies": {name: outcome.status for name, outcome in orch.outcomes.items()},
        "error_counts": orch.error_counts,
    }


async def run_search_pipeline(
    *,
    query: str,
    config: SearchConfig,
    extractor: KeywordExtractor,
    orchestrator: StrategyOrchestrator,
    strategies: Mapping[str, RetrievalStrategy],
    scorer: CompositeScorer,
    params: Optional[PipelineParams] = None,
    ctx: Optional[PipelineContext] = None,
) -> PipelineOutput:
    """
    [职责] run_search_pipeline：执行一次完整检索，返回最终结果与诊断。
    [边界] config 已由上游校验；results 按 document_id 唯一且长度 <= top_k。
    [上游关系] SearchService.search（缓存 miss 时）。
    [下游关系] SearchService 组装 SearchResponse 并决定是否写缓存。
    """
    params = params or PipelineParams()
    ctx = ctx or PipelineContext()

    with ctx.timing.stage("keywords"):
        extraction = await extractor.aextract(query)  # docstring: 永不抛异常（分词/assistant 失败均降级）

    request = StrategyRequest(query=query, keywords=extraction.keywords, config=config)
    enabled = select_strategies(config, strategies)

    with ctx.timing.stage("retrieval"):
        orch = await orchestrator.run(request, enabled, ctx=ctx)

    if orch.all_failed:
        log_event(
            logger,
            logging.ERROR,
            "all retrieval strategies failed",
            context=ctx,
            fields={"query_hash": hash_text(query), **_failure_detail(orch)},
        )
        raise AllStrategiesFailedError(detail=_failure_detail(orch))

    with ctx.timing.stage("filter_pre"):
        outcomes, exclusions = _prefilter(orch.outcomes, config, min_content_chars=params.min_content_chars)

    with ctx.timing.stage("fusion"):
        rankings, merged = fusion_mod.collect_rankings(outcomes)
        fused = fusion_mod.fuse(rankings, rrf_k=params.rrf_k)
        window_ids = list(fused)[: max(params.fusion_window, config.top_k)]
        windowed = [merged[cid] for cid in window_ids]

    with ctx.timing.stage("filter_post"):
        post = filters_mod.filter_candidates(
            windowed,
            config.label_filters,
            config.exclude_title_patterns,
            stage=STAGE_POST,
            min_content_chars=params.min_content_chars,
        )
        exclusions.extend(post.excluded)

    with ctx.timing.stage("scoring"):
        scored = scorer.score_all(post.kept, fused, extraction.keywords)

    with ctx.timing.stage("dedupe"):
        results = tuple(dedupe_mod.dedupe(scored)[: config.top_k])

    diagnostics = SearchDiagnostics(
        keywords=extraction.keywords,
        keyword_source=extraction.source,
        keyword_meta=dict(extraction.meta),
        strategies=_strategy_reports(orch.outcomes),
        error_counts=orch.error_counts,
        exclusions=_exclusion_records(exclusions),
        degraded=orch.degraded,
        timing_ms=ctx.timing_ms(),
    )

    log_event(
        logger,
        logging.INFO,
        "search pipeline completed",
        context=ctx,
        fields={
            "query_hash": hash_text(query),
            "keywords": list(extraction.keywords),
            "strategies": {name: o.status for name, o in orch.outcomes.items()},
            "fused": len(fused),
            "results": len(results),
            "degraded": orch.degraded,
        },
    )
    return PipelineOutput(results=results, diagnostics=diagnostics, degraded=orch.degraded)
