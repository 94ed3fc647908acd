# src/doc_rag/backend/api/errors.py

"""
[职责] API 错误映射：将异常统一转换为 ErrorResponse 与 HTTP status。
[边界] 不记录日志；不负责 trace/request 注入（由 middleware/deps 负责）。
[上游关系] routers 捕获异常后调用；app 级 DomainError handler 调用。
[下游关系] 返回 ErrorResponse 供调用方区分“暂无结果（503, retryable）”与“内部错误（500）”。
"""

from __future__ import annotations

from typing import Dict, Optional, Tuple

from fastapi.responses import JSONResponse

from doc_rag.backend.api.schemas_http._common import ErrorResponse
from doc_rag.backend.schemas.ids import new_uuid
from doc_rag.backend.utils.errors import to_http_error

TRACE_HEADER = "x-trace-id"  # docstring: trace header 约定
REQUEST_HEADER = "x-request-id"  # docstring: request header 约定


def _ensure_trace_id(trace_id: Optional[str]) -> str:
    raw = str(trace_id or "").strip()
    return raw or str(new_uuid())


def to_error_response(
    error: BaseException,
    *,
    trace_id: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Tuple[int, ErrorResponse]:
    """异常 -> (status_code, ErrorResponse)；未知异常统一为 internal_error/500（不泄露内部信息）。"""
    domain = to_http_error(error)
    payload = {
        "error": {
            **domain.to_dict(),
            "trace_id": _ensure_trace_id(trace_id),
            "request_id": request_id or None,
            "retryable": bool(domain.retryable),
        }
    }
    return domain.http_status, ErrorResponse.model_validate(payload)


def to_json_response(
    error: BaseException,
    *,
    trace_id: Optional[str] = None,
    request_id: Optional[str] = None,
) -> JSONResponse:
    """异常 -> JSONResponse（含 trace/request header 回写）。"""
    status_code, response = to_error_response(error, trace_id=trace_id, request_id=request_id)

    headers: Dict[str, str] = {}
    if trace_id:
        headers[TRACE_HEADER] = str(trace_id)
    if request_id:
        headers[REQUEST_HEADER] = str(request_id)
    if response.error.retryable:
        headers["retry-after"] = "1"  # docstring: 503 类错误提示调用方稍后重试

    return JSONResponse(status_code=status_code, content=response.model_dump(mode="json"), headers=headers)
