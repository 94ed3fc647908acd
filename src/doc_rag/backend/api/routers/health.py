# src/doc_rag/backend/api/routers/health.py

"""
[职责] Health Router：服务健康检查（DB 可选）与缓存统计摘要。
[边界] 不触发 pipeline；仅做轻量探测。
[上游关系] 运维/监控系统调用。
[下游关系] app.state.db_engine（可选）、SearchService.cache.stats()。
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text

from doc_rag.backend.api.deps import get_search_service
from doc_rag.backend.services.search_service import SearchService


router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health_check(
    request: Request,
    service: SearchService = Depends(get_search_service),
) -> Dict[str, Any]:
    status = "ok"
    db_status: Dict[str, Any] = {"ok": True, "optional": True}

    engine = getattr(request.app.state, "db_engine", None)
    if engine is not None:
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))  # docstring: DB ping（最小读）
        except Exception as exc:
            db_status["ok"] = False
            db_status["error"] = f"{exc.__class__.__name__}: {exc}"
            status = "degraded"

    cache = service.cache
    return {
        "status": status,
        "db": db_status,
        "cache": cache.stats() if cache is not None else None,
        "strategies": service.strategy_names,
        "version": {"api": "v1"},
    }
