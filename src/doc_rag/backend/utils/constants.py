# src/doc_rag/backend/utils/constants.py

"""
[职责] 集中定义检索引擎的稳定字段名、策略名、标签名与默认常量，降低跨模块硬编码。
[边界] 不包含运行时可变配置（见 doc_rag.config.Settings）；不读取环境变量。
[上游关系] pipelines/services/api 引用策略名、timing key、排除标签等。
[下游关系] 日志字段、诊断输出、测试断言使用一致的字段名。
"""

from __future__ import annotations


TRACE_ID_KEY = "trace_id"  # docstring: trace_id 字段
REQUEST_ID_KEY = "request_id"  # docstring: request_id 字段
TRACE_FIELD_KEYS = (TRACE_ID_KEY, REQUEST_ID_KEY)  # docstring: 结构化日志 trace 字段集合

TIMING_TOTAL_KEY = "total"  # docstring: timing_ms 的总耗时 key

STRATEGY_VECTOR = "vector"  # docstring: 向量检索策略
STRATEGY_LEXICAL = "lexical"  # docstring: BM25 词法检索策略
STRATEGY_TITLE = "title"  # docstring: 标题/标签直接匹配策略
STRATEGY_ORDER = (STRATEGY_VECTOR, STRATEGY_LEXICAL, STRATEGY_TITLE)  # docstring: 诊断输出的稳定顺序

STAGE_PRE = "pre"  # docstring: 融合前过滤
STAGE_POST = "post"  # docstring: 融合后防御性过滤

EXCLUDE_REASON_INVALID = "invalid_content"
EXCLUDE_REASON_ARCHIVED = "archived"
EXCLUDE_REASON_MEETING_NOTES = "meeting_notes"
EXCLUDE_REASON_TOGGLE = "label_toggle"
EXCLUDE_REASON_TITLE_PATTERN = "title_pattern"

ARCHIVED_LABELS = frozenset({"archived", "archive", "アーカイブ"})  # docstring: 归档范围标签
MEETING_NOTE_LABELS = frozenset(
    {"議事録", "meeting-notes", "meeting_notes", "meeting notes", "ミーティング議事録"}
)  # docstring: 会议纪要标签（默认排除）

DEFAULT_RRF_K = 60  # docstring: RRF 平滑常数 κ
DEFAULT_BM25_K1 = 1.2
DEFAULT_BM25_B = 0.75
DEFAULT_TITLE_FIELD_WEIGHT = 3.0  # docstring: BM25 标题字段权重
DEFAULT_CONTENT_FIELD_WEIGHT = 1.0  # docstring: BM25 正文字段权重

DEFAULT_VECTOR_WEIGHT = 0.3  # docstring: 复合分数：向量权重
DEFAULT_LEXICAL_WEIGHT = 0.4  # docstring: 复合分数：BM25 权重
DEFAULT_TITLE_WEIGHT = 0.2  # docstring: 复合分数：标题匹配权重
DEFAULT_LABEL_WEIGHT = 0.1  # docstring: 复合分数：标签匹配权重

STRUCTURED_DOMAIN_POINTS = 2.0
STRUCTURED_FEATURE_POINTS = 1.5
STRUCTURED_TAG_POINTS = 0.5
STRUCTURED_CATEGORY_POINTS = 0.3
STRUCTURED_APPROVED_POINTS = 0.2
STRUCTURED_MAX_POINTS = 4.5  # docstring: 结构化标签满分（2 + 1.5 + 0.5 + 0.3 + 0.2）
LABEL_PLAIN_SHARE = 0.2  # docstring: 普通标签匹配占比
LABEL_STRUCTURED_SHARE = 0.8  # docstring: 结构化标签匹配占比

KEYWORD_SOURCE_RULE = "rule_based"
KEYWORD_SOURCE_MODEL = "model_assisted"
