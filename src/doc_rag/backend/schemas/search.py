# src/doc_rag/backend/schemas/search.py

"""
[职责] Search 契约层：检索配置（SearchConfig）、最终结果（ScoredResult/ScoreBreakdown）与响应/诊断结构。
[边界] 不包含检索实现；不依赖 ORM；所有对外结构 frozen，重排只产生新实例。
[上游关系] 调用方（HTTP/服务代码）构造 SearchConfig；scoring 阶段构造 ScoredResult。
[下游关系] ResultCache 缓存 ScoredResult 元组；api 层按 camelCase alias 序列化。
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, StrictBool, field_validator
from pydantic.alias_generators import to_camel


DEFAULT_TOP_K = 5  # docstring: 默认返回条数（小正整数）

KeywordSource = Literal["rule_based", "model_assisted"]  # docstring: 关键词来源
StrategyStatus = Literal["ok", "timed_out", "failed"]  # docstring: 策略执行结果标签
FilterStage = Literal["pre", "post"]  # docstring: 过滤阶段


class _Contract(BaseModel):
    """对外契约基类：frozen + camelCase alias（snake_case 仍可按名填充）。"""

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )


class LabelFilters(_Contract):
    """
    [职责] 标签范围开关：会议纪要/归档默认排除，toggles 为任意具名布尔开关。
    [边界] toggles 语义：name=False 排除带该标签的候选；name=True 显式放行（覆盖默认排除）。
    """

    include_meeting_notes: StrictBool = Field(default=False)  # docstring: 是否包含会议纪要（議事録）
    include_archived: StrictBool = Field(default=False)  # docstring: 是否包含归档文档
    toggles: Dict[str, StrictBool] = Field(default_factory=dict)  # docstring: 任意具名标签开关

    @field_validator("toggles")
    @classmethod
    def _validate_toggle_names(cls, v: Dict[str, bool]) -> Dict[str, bool]:
        for name in v:
            if not str(name).strip():
                raise ValueError("label toggle name must be non-empty")
        return v


class SearchConfig(_Contract):
    """
    [职责] 单次检索配置；构造后不可变，规范化序列化参与缓存 key。
    [边界] top_k 上限由 SearchService 依据 Settings 额外校验。
    """

    top_k: int = Field(default=DEFAULT_TOP_K, ge=1)  # docstring: 结果上限
    label_filters: LabelFilters = Field(default_factory=LabelFilters)  # docstring: 标签范围
    exclude_title_patterns: Tuple[str, ...] = Field(default=())  # docstring: 标题 glob 排除（有序集合）
    use_lexical_index: StrictBool = Field(default=True)  # docstring: 是否启用 BM25 策略
    use_title_match: StrictBool = Field(default=True)  # docstring: 是否启用标题直接匹配策略

    @field_validator("exclude_title_patterns")
    @classmethod
    def _dedupe_patterns(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        seen = set()
        out: List[str] = []
        for raw in v:
            pattern = str(raw).strip()
            if not pattern:
                raise ValueError("exclude_title_patterns must not contain empty patterns")
            if pattern in seen:
                continue  # docstring: 有序集合语义：保留首次出现
            seen.add(pattern)
            out.append(pattern)
        return tuple(out)


class StructuredMetadata(_Contract):
    """结构化标签（category/domain/feature/status/tags）与有效性标记。"""

    category: Optional[str] = None
    domain: Optional[str] = None
    feature: Optional[str] = None
    status: Optional[str] = None
    tags: Tuple[str, ...] = ()
    is_valid: Optional[bool] = None  # docstring: False 表示源内容无效（空/近空）
    content_length: Optional[int] = None


class ScoreBreakdown(_Contract):
    """四项加权贡献（已乘权重），之和等于 composite_score。"""

    vector_contribution: float = 0.0
    lexical_contribution: float = 0.0
    title_contribution: float = 0.0
    label_contribution: float = 0.0

    def total(self) -> float:
        return self.vector_contribution + self.lexical_contribution + self.title_contribution + self.label_contribution


class ScoredResult(_Contract):
    """
    [职责] 最终排序单元：Candidate 字段 + fused_rank + composite_score + score_breakdown。
    [边界] 唯一分数来源为 composite_score；不存在其它分数字段。
    """

    id: str = Field(..., min_length=1)  # docstring: 检索单元 ID
    document_id: str = Field(..., min_length=1)  # docstring: 源文档 ID（去重键）
    title: str = ""
    content: str = ""
    labels: Tuple[str, ...] = ()  # docstring: 排序后的标签（确定性输出）
    vector_distance: Optional[float] = None  # docstring: 向量距离（越小越相似；仅向量策略命中时存在）
    lexical_score: Optional[float] = None  # docstring: BM25 原始分（仅词法策略命中时存在）
    ranks: Dict[str, int] = Field(default_factory=dict)  # docstring: 各策略内 1-based 排名
    structured_metadata: Optional[StructuredMetadata] = None

    fused_rank: float = Field(..., ge=0.0)  # docstring: RRF 融合分
    composite_score: float = Field(..., ge=0.0)  # docstring: 复合分数（权重归一后位于 [0,1]）
    score_breakdown: ScoreBreakdown = Field(default_factory=ScoreBreakdown)


class CacheInfo(_Contract):
    hit: bool
    key: str


class StrategyReport(_Contract):
    """单个策略的执行摘要（用于观测降级）。"""

    status: StrategyStatus
    hits: int = 0
    elapsed_ms: Optional[float] = None
    error_kind: Optional[str] = None
    reason: Optional[str] = None


class ExclusionRecord(_Contract):
    candidate_id: str
    reason: str
    stage: FilterStage


class SearchDiagnostics(_Contract):
    """
    [职责] 一次 pipeline 运行的诊断快照：关键词、策略状态、错误计数、排除原因、阶段耗时。
    [边界] 缓存命中时不生成（pipeline 未运行）。
    """

    keywords: Tuple[str, ...] = ()
    keyword_source: KeywordSource = "rule_based"
    keyword_meta: Dict[str, Any] = Field(default_factory=dict)
    strategies: Dict[str, StrategyReport] = Field(default_factory=dict)
    error_counts: Dict[str, Dict[str, int]] = Field(default_factory=dict)  # docstring: strategy -> error_kind -> count
    exclusions: Tuple[ExclusionRecord, ...] = ()
    degraded: bool = False  # docstring: 存在未成功的策略
    timing_ms: Dict[str, float] = Field(default_factory=dict)


class SearchResponse(_Contract):
    """search(query, config) 的返回值：results + cache{hit,key}（+ 可选诊断）。"""

    results: Tuple[ScoredResult, ...] = ()
    cache: CacheInfo
    diagnostics: Optional[SearchDiagnostics] = None
    trace_id: Optional[str] = None
