# src/doc_rag/backend/api/routers/search.py

"""
[职责] Search Router：POST /api/search，调用 SearchService 并映射为 HTTP 合同。
[边界] 不做检索逻辑；配置校验在服务层；错误统一经 api/errors.py 输出。
[上游关系] 前端/外部调用方。
[下游关系] SearchService.search。
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from doc_rag.backend.api.deps import get_pipeline_context, get_search_service
from doc_rag.backend.api.errors import to_json_response
from doc_rag.backend.api.schemas_http.search import SearchHttpResponse, SearchRequest
from doc_rag.backend.pipelines.base.context import PipelineContext
from doc_rag.backend.services.search_service import SearchService
from doc_rag.backend.utils.errors import DomainError
from doc_rag.backend.utils.logging_ import get_logger, log_event


router = APIRouter(prefix="/search", tags=["search"])
logger = get_logger("api.search")


@router.post("", response_model=SearchHttpResponse)
async def search_endpoint(
    payload: SearchRequest,
    service: SearchService = Depends(get_search_service),
    ctx: PipelineContext = Depends(get_pipeline_context),
) -> SearchHttpResponse:
    try:
        response = await service.search(payload.query, payload.config, context=ctx)
    except Exception as exc:
        level = logging.WARNING if isinstance(exc, DomainError) else logging.ERROR
        log_event(
            logger,
            level,
            "search request failed",
            context=ctx,
            fields={"error_kind": getattr(exc, "error_code", exc.__class__.__name__)},
            exc_info=None if isinstance(exc, DomainError) else exc,
        )
        return to_json_response(  # type: ignore[return-value]
            exc,
            trace_id=str(ctx.trace_id),
            request_id=str(ctx.request_id),
        )

    return SearchHttpResponse.from_response(
        response,
        trace_id=str(ctx.trace_id),
        request_id=str(ctx.request_id),
        debug=payload.debug,
    )
