# src/doc_rag/backend/api/deps.py

"""
[职责] API 依赖装配：从 app.state 取 SearchService，并从 request.state 构造 PipelineContext。
[边界] 不做业务逻辑；不创建全局单例（服务实例由 create_app 注入）。
[上游关系] FastAPI 路由层调用依赖注入。
[下游关系] routers/search、routers/health。
"""

from __future__ import annotations

from fastapi import Request

from doc_rag.backend.pipelines.base.context import PipelineContext
from doc_rag.backend.services.search_service import SearchService
from doc_rag.backend.utils.errors import DomainError


def get_search_service(request: Request) -> SearchService:
    service = getattr(request.app.state, "search_service", None)
    if not isinstance(service, SearchService):
        raise DomainError(
            error_code="service.unavailable",
            message="search service not initialized",
            http_status=503,
            retryable=True,
        )
    return service


def get_pipeline_context(request: Request) -> PipelineContext:
    """优先使用 middleware 注入的 trace/request id；缺失则生成。"""
    return PipelineContext.create(
        trace_id=getattr(request.state, "trace_id", None),
        request_id=getattr(request.state, "request_id", None),
    )
