# src/doc_rag/backend/services/search_service.py

"""
[职责] search_service：检索业务入口 search(query, config)；配置校验 → 缓存读 → pipeline → 缓存写。
[边界] 不暴露 HTTP 语义；配置错误在任何检索工作开始前抛出；降级结果不写缓存。
[上游关系] api/routers/search.py 或脚本调用；依赖 PipelineContext 透传 trace 标识。
[下游关系] pipelines/retrieval/pipeline.run_search_pipeline；ResultCache 读写。
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import ValidationError

from doc_rag.backend.kb.corpus import CorpusStore
from doc_rag.backend.pipelines.base.context import PipelineContext
from doc_rag.backend.pipelines.retrieval import bm25 as bm25_mod
from doc_rag.backend.pipelines.retrieval.cache import ResultCache, build_cache_key
from doc_rag.backend.pipelines.retrieval.embed import LlamaIndexQueryEmbedder, QueryEmbedder
from doc_rag.backend.pipelines.retrieval.keyword_llm import LlamaIndexKeywordAssistant
from doc_rag.backend.pipelines.retrieval.keywords import DomainVocabulary, KeywordAssistant, KeywordExtractor
from doc_rag.backend.pipelines.retrieval.orchestrator import StrategyOrchestrator
from doc_rag.backend.pipelines.retrieval.pipeline import PipelineParams, run_search_pipeline
from doc_rag.backend.pipelines.retrieval.scoring import CompositeScorer, CompositeWeights
from doc_rag.backend.pipelines.retrieval.strategies import (
    LexicalStrategy,
    RetrievalStrategy,
    TitleMatchStrategy,
    VectorStrategy,
)
from doc_rag.backend.pipelines.retrieval.vector import VectorIndex, VectorRetrievalAdapter
from doc_rag.backend.schemas.search import CacheInfo, SearchConfig, SearchResponse
from doc_rag.backend.utils.errors import InvalidConfigError
from doc_rag.backend.utils.logging_ import get_logger, hash_text, log_event, truncate_text
from doc_rag.config import Settings


ConfigInput = Union[SearchConfig, Mapping[str, Any], None]

logger = get_logger("services.search")


def _validation_detail(exc: ValidationError) -> Dict[str, Any]:
    """pydantic 错误 -> JSON 安全的 detail（不回显原始输入）。"""
    return {
        "errors": [
            {"loc": [str(p) for p in err.get("loc", ())], "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
    }


class SearchService:
    """
    [职责] 装配完成的检索服务；实例在请求间共享（只有 ResultCache 持有可变状态）。
    [边界] 依赖全部由构造注入；不读取全局 settings。
    """

    def __init__(
        self,
        *,
        extractor: KeywordExtractor,
        strategies: Mapping[str, RetrievalStrategy],
        orchestrator: StrategyOrchestrator,
        scorer: CompositeScorer,
        cache: Optional[ResultCache] = None,
        params: Optional[PipelineParams] = None,
        default_top_k: int = 5,
        max_top_k: int = 50,
    ) -> None:
        if default_top_k < 1 or max_top_k < default_top_k:
            raise ValueError("require 1 <= default_top_k <= max_top_k")
        self._extractor = extractor
        self._strategies = dict(strategies)
        self._orchestrator = orchestrator
        self._scorer = scorer
        self._cache = cache
        self._params = params or PipelineParams()
        self._default_top_k = int(default_top_k)
        self._max_top_k = int(max_top_k)

    @property
    def cache(self) -> Optional[ResultCache]:
        return self._cache

    @property
    def strategy_names(self) -> list:
        return list(self._strategies)

    def validate(self, query: str, config: ConfigInput) -> SearchConfig:
        """校验 query 与 config；任何问题抛 InvalidConfigError（不触发任何检索）。"""
        if not isinstance(query, str) or not query.strip():
            raise InvalidConfigError(message="query must be a non-empty string", detail={"field": "query"})

        if config is None:
            cfg = SearchConfig(top_k=self._default_top_k)
        elif isinstance(config, SearchConfig):
            cfg = config
        elif isinstance(config, Mapping):
            try:
                cfg = SearchConfig.model_validate(dict(config))
            except ValidationError as exc:
                raise InvalidConfigError(detail=_validation_detail(exc), cause=exc) from exc
        else:
            raise InvalidConfigError(detail={"type": type(config).__name__})

        if cfg.top_k > self._max_top_k:
            raise InvalidConfigError(
                message=f"top_k must be <= {self._max_top_k}",
                detail={"field": "top_k", "max": self._max_top_k, "value": cfg.top_k},
            )
        return cfg

    async def search(
        self,
        query: str,
        config: ConfigInput = None,
        *,
        context: Optional[PipelineContext] = None,
    ) -> SearchResponse:
        cfg = self.validate(query, config)
        ctx = context or PipelineContext()
        key = build_cache_key(query, cfg)

        cached = self._cache.get(key) if self._cache is not None else None
        if cached is not None:
            log_event(
                logger,
                logging.INFO,
                "search served from cache",
                context=ctx,
                fields={"cache_key": key, "results": len(cached)},
            )
            return SearchResponse(results=cached, cache=CacheInfo(hit=True, key=key), trace_id=str(ctx.trace_id))

        log_event(
            logger,
            logging.INFO,
            "search started",
            context=ctx,
            fields={"query_preview": truncate_text(query), "query_hash": hash_text(query), "top_k": cfg.top_k},
        )
        output = await run_search_pipeline(
            query=query,
            config=cfg,
            extractor=self._extractor,
            orchestrator=self._orchestrator,
            strategies=self._strategies,
            scorer=self._scorer,
            params=self._params,
            ctx=ctx,
        )

        if self._cache is not None and not output.degraded:
            self._cache.put(key, output.results)

        return SearchResponse(
            results=output.results,
            cache=CacheInfo(hit=False, key=key),
            diagnostics=output.diagnostics,
            trace_id=str(ctx.trace_id),
        )


def build_search_service(
    *,
    corpus: CorpusStore,
    index: VectorIndex,
    settings: Settings,
    embedder: Optional[QueryEmbedder] = None,
    cache: Optional[ResultCache] = None,
    vocabulary: Optional[DomainVocabulary] = None,
    assistant: Optional[KeywordAssistant] = None,
) -> SearchService:
    """
    [职责] 依据 Settings 装配 SearchService（策略/参数/权重/超时/缓存）。
    [边界] 语料库与向量索引由调用方提供；embedder/assistant 缺省按 Settings 解析 provider（assistant 仅在配置 provider 时启用）。
    """
    if vocabulary is None and settings.DOC_RAG_VOCABULARY_PATH:
        vocabulary = DomainVocabulary.from_keyword_lists(settings.DOC_RAG_VOCABULARY_PATH)
    if assistant is None and settings.DOC_RAG_KEYWORD_LLM_PROVIDER:
        assistant = LlamaIndexKeywordAssistant.from_settings(
            provider=settings.DOC_RAG_KEYWORD_LLM_PROVIDER,
            model=settings.DOC_RAG_KEYWORD_LLM_MODEL,
            timeout_s=settings.DOC_RAG_KEYWORD_LLM_TIMEOUT_S,
            max_terms=settings.DOC_RAG_KEYWORD_LLM_MAX_TERMS,
        )
    if embedder is None:
        embedder = LlamaIndexQueryEmbedder.from_settings(
            provider=settings.DOC_RAG_EMBED_PROVIDER,
            model=settings.DOC_RAG_EMBED_MODEL,
            dim=settings.DOC_RAG_EMBED_DIM,
        )
    if cache is None:
        cache = ResultCache(capacity=settings.DOC_RAG_CACHE_CAPACITY, default_ttl_s=settings.DOC_RAG_CACHE_TTL_S)

    adapter = VectorRetrievalAdapter(index, max_k=settings.DOC_RAG_VECTOR_MAX_K)
    bm25_params = bm25_mod.BM25Params(
        k1=settings.DOC_RAG_BM25_K1,
        b=settings.DOC_RAG_BM25_B,
        field_weights={
            "title": settings.DOC_RAG_BM25_TITLE_WEIGHT,
            "content": settings.DOC_RAG_BM25_CONTENT_WEIGHT,
        },
    )
    strategies: Dict[str, RetrievalStrategy] = {}
    for strategy in (
        VectorStrategy(
            embedder=embedder,
            adapter=adapter,
            corpus=corpus,
            timeout_s=settings.DOC_RAG_VECTOR_TIMEOUT_S,
            fetch_multiplier=settings.DOC_RAG_VECTOR_FETCH_MULTIPLIER,
        ),
        LexicalStrategy(
            corpus=corpus,
            timeout_s=settings.DOC_RAG_LEXICAL_TIMEOUT_S,
            window=settings.DOC_RAG_LEXICAL_WINDOW,
            params=bm25_params,
        ),
        TitleMatchStrategy(
            corpus=corpus,
            timeout_s=settings.DOC_RAG_TITLE_TIMEOUT_S,
            window=settings.DOC_RAG_TITLE_WINDOW,
            required_labels=settings.DOC_RAG_TITLE_REQUIRED_LABELS,
        ),
    ):
        strategies[strategy.name] = strategy

    return SearchService(
        extractor=KeywordExtractor(
            vocabulary=vocabulary,
            assistant=assistant,
            max_keywords=settings.DOC_RAG_MAX_KEYWORDS,
        ),
        strategies=strategies,
        orchestrator=StrategyOrchestrator(deadline_s=settings.DOC_RAG_REQUEST_DEADLINE_S),
        scorer=CompositeScorer(
            CompositeWeights(
                vector=settings.DOC_RAG_WEIGHT_VECTOR,
                lexical=settings.DOC_RAG_WEIGHT_LEXICAL,
                title=settings.DOC_RAG_WEIGHT_TITLE,
                label=settings.DOC_RAG_WEIGHT_LABEL,
            )
        ),
        cache=cache,
        params=PipelineParams(
            rrf_k=settings.DOC_RAG_RRF_K,
            fusion_window=settings.DOC_RAG_FUSION_WINDOW,
            min_content_chars=settings.DOC_RAG_MIN_CONTENT_CHARS,
        ),
        default_top_k=settings.DOC_RAG_DEFAULT_TOP_K,
        max_top_k=settings.DOC_RAG_MAX_TOP_K,
    )
