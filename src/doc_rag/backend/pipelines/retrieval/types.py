# src/doc_rag/backend/pipelines/retrieval/types.py
"""
[职责] Retrieval types：检索各阶段共享的最小公共类型（Candidate、策略请求、策略结果标签、排除记录）。
[边界] 仅定义数据结构；不包含检索逻辑；无 DB/外部依赖。
[上游关系] corpus store / strategies 产出 Candidate；orchestrator 产出 StrategyOutcome。
[下游关系] filters/fusion/scoring/dedupe 消费；StrategyOutcome 由 fusion 侧按标签读取，无需异常处理。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Literal, Optional, Tuple, Union

from doc_rag.backend.schemas.search import SearchConfig, StructuredMetadata


@dataclass(frozen=True)
class Candidate:
    """
    [职责] Candidate：一个可检索单元（chunk），跨策略以 id 对齐。
    [边界] vector_distance 仅向量策略命中时存在；lexical_score 仅词法策略命中时存在。
    [上游关系] corpus store 构造基础字段；各策略通过 dataclasses.replace 附加信号与排名。
    [下游关系] scoring 将其提升为 ScoredResult。
    """

    id: str
    document_id: str  # docstring: 同一 document_id 的 chunk 指向同一逻辑文档
    title: str
    content: str
    labels: FrozenSet[str] = frozenset()
    vector_distance: Optional[float] = None
    lexical_score: Optional[float] = None
    ranks: Dict[str, int] = field(default_factory=dict)  # docstring: strategy -> 1-based rank
    structured_metadata: Optional[StructuredMetadata] = None


@dataclass(frozen=True)
class StrategyRequest:
    """一次策略调用的输入：原始 query、已抽取关键词与检索配置。"""

    query: str
    keywords: Tuple[str, ...]
    config: SearchConfig


@dataclass(frozen=True)
class StrategyOk:
    strategy: str
    candidates: Tuple[Candidate, ...]  # docstring: 策略内排序（保持策略返回顺序）
    elapsed_ms: float = 0.0
    status: Literal["ok"] = "ok"


@dataclass(frozen=True)
class StrategyTimedOut:
    strategy: str
    timeout_s: float
    scope: Literal["strategy", "deadline"] = "strategy"  # docstring: 单策略超时 / 请求级 deadline
    error_kind: str = "timeout"
    status: Literal["timed_out"] = "timed_out"


@dataclass(frozen=True)
class StrategyFailed:
    strategy: str
    reason: str
    error_kind: str
    elapsed_ms: float = 0.0
    status: Literal["failed"] = "failed"


StrategyOutcome = Union[StrategyOk, StrategyTimedOut, StrategyFailed]


@dataclass(frozen=True)
class Exclusion:
    """过滤排除记录（保留原因用于观测）。"""

    candidate_id: str
    reason: str
    stage: Literal["pre", "post"]
