# src/doc_rag/backend/pipelines/base/context.py

"""
[职责] PipelineContext：单次检索请求的运行上下文（trace 标识、timing、meta）。
[边界] 不持有跨请求状态；不持有缓存；依赖（语料库/索引/embedder）由 SearchService 注入 pipeline。
[上游关系] SearchService 或 API 中间件生成 trace_id/request_id 后构造。
[下游关系] pipeline 各阶段写入 timing；log_event 从 ctx 提取 trace 字段。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from doc_rag.backend.schemas.ids import UUIDStr, new_uuid

from .timing import TimingCollector


@dataclass
class PipelineContext:
    trace_id: UUIDStr = field(default_factory=new_uuid)  # docstring: 全链路追踪ID
    request_id: UUIDStr = field(default_factory=new_uuid)  # docstring: 单次请求ID（可由上游注入覆盖）
    timing: TimingCollector = field(default_factory=TimingCollector)
    meta: Dict[str, Any] = field(default_factory=dict)  # docstring: 额外上下文（debug flags）

    @classmethod
    def create(
        cls,
        *,
        trace_id: Optional[str] = None,
        request_id: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> "PipelineContext":
        """从上游（HTTP 头 / 调用方）透传的标识构造上下文；缺失则生成。"""
        return cls(
            trace_id=UUIDStr(trace_id) if trace_id else new_uuid(),
            request_id=UUIDStr(request_id) if request_id else new_uuid(),
            meta=dict(meta or {}),
        )

    def timing_ms(self) -> Dict[str, float]:
        return self.timing.to_dict()

