# src/doc_rag/backend/api/schemas_http/search.py

"""
[职责] HTTP Search Schema：POST /api/search 的请求/响应合同（camelCase）。
[边界] config 以原始 dict 透传给 SearchService 校验（非法配置 → 400 search.invalid_config，而非 422）。
[上游关系] 前端或外部调用方发起检索请求。
[下游关系] routers/search.py 调用 SearchService 并映射为本模块输出结构。
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel

from doc_rag.backend.schemas.search import CacheInfo, ScoredResult, SearchDiagnostics, SearchResponse

from ._common import RequestId, TraceId


class SearchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: str = Field(...)  # docstring: 自然语言查询（空串由服务层拒绝）
    config: Optional[Dict[str, Any]] = Field(default=None)  # docstring: SearchConfig（camelCase 或 snake_case）
    debug: bool = Field(default=False)  # docstring: 是否返回诊断信息


class ScoredResultView(ScoredResult):
    """ScoredResult + 展示层别名 score（恒等于 compositeScore，不是独立分数来源）。"""

    model_config = ConfigDict(extra="ignore")  # docstring: 回读序列化结果时忽略 score（始终重新计算）

    @computed_field  # type: ignore[prop-decorator]
    @property
    def score(self) -> float:
        return self.composite_score


class SearchHttpResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    results: List[ScoredResultView] = Field(default_factory=list)
    cache: CacheInfo
    diagnostics: Optional[SearchDiagnostics] = Field(default=None)
    trace_id: TraceId
    request_id: Optional[RequestId] = Field(default=None)

    @classmethod
    def from_response(
        cls,
        response: SearchResponse,
        *,
        trace_id: str,
        request_id: Optional[str],
        debug: bool,
    ) -> "SearchHttpResponse":
        return cls(
            results=[ScoredResultView.model_validate(r.model_dump()) for r in response.results],
            cache=response.cache,
            diagnostics=response.diagnostics if debug else None,
            trace_id=TraceId(trace_id),
            request_id=RequestId(request_id) if request_id else None,
        )
