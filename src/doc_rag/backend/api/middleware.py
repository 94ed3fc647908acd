# src/doc_rag/backend/api/middleware.py

"""
[职责] API Middleware：注入 trace_id/request_id 与请求耗时统计。
[边界] 不做业务逻辑与异常处理；不重算 pipeline timing。
[上游关系] create_app 注册本 middleware。
[下游关系] deps.get_pipeline_context 读取 request.state.trace_id/request_id。
"""

from __future__ import annotations

import time
from typing import Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from doc_rag.backend.api.errors import REQUEST_HEADER, TRACE_HEADER
from doc_rag.backend.schemas.ids import is_uuid_str, new_uuid
from doc_rag.backend.utils.constants import TIMING_TOTAL_KEY


def _resolve_header_id(value: Optional[str]) -> Optional[str]:
    """header 中的 id 必须是 UUID 字符串，否则视为缺失（由服务端生成）。"""
    raw = str(value or "").strip()
    if raw and is_uuid_str(raw):
        return raw
    return None


class TraceContextMiddleware(BaseHTTPMiddleware):
    """
    [职责] 注入 trace/request id，并记录 request 总耗时。
    [边界] 不捕获异常；不替代 api/errors.py。
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start_ts = time.perf_counter()

        trace_id = _resolve_header_id(request.headers.get(TRACE_HEADER)) or str(new_uuid())
        request_id = _resolve_header_id(request.headers.get(REQUEST_HEADER)) or str(new_uuid())

        request.state.trace_id = trace_id
        request.state.request_id = request_id

        try:
            response = await call_next(request)
        finally:
            total_ms = (time.perf_counter() - start_ts) * 1000.0
            request.state.timing_ms = {TIMING_TOTAL_KEY: total_ms}

        response.headers[TRACE_HEADER] = trace_id
        response.headers[REQUEST_HEADER] = request_id
        return response
