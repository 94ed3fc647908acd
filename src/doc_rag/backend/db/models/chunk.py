# src/doc_rag/backend/db/models/chunk.py

from __future__ import annotations

from typing import List, Optional

from sqlalchemy import Boolean, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..base import Base, TimestampMixin


class ChunkModel(Base, TimestampMixin):
    """
    [职责] 可检索单元（chunk）实体：标题/正文/标签/结构化标签，是词法与标题检索的 SQL 侧底座。
    [边界] 不存向量本体；向量在外部索引中以 id 对齐。语料由外部同步写入，本服务只读。
    [上游关系] scripts/init_db 从 JSONL 装载；外部同步任务写入。
    [下游关系] ChunkRepo 实现 CorpusStore（回查/候选窗口/统计），转换为 Candidate。
    """

    __tablename__ = "chunk"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        comment="检索单元ID（与向量索引主键一致）",  # docstring: 跨策略对齐键
    )

    document_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="源文档ID（同文档多个 chunk）",  # docstring: 去重键
    )

    title: Mapped[str] = mapped_column(
        String(512),
        nullable=False,
        default="",
        index=True,
        comment="文档标题",  # docstring: 标题匹配与 BM25 title 字段
    )

    content: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="",
        comment="正文片段",  # docstring: BM25 content 字段
    )

    title_norm: Mapped[str] = mapped_column(
        String(512),
        nullable=False,
        default="",
        comment="规范化标题（NFKC+小写）",  # docstring: LIKE 匹配/统计用影子列
    )

    content_norm: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="",
        comment="规范化正文（NFKC+小写）",  # docstring: LIKE 匹配/统计用影子列
    )

    labels: Mapped[List[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        comment="标签列表（归档/議事録/自定义）",  # docstring: 标签范围过滤
    )

    structured_category: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, comment="结构化标签：category")
    structured_domain: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, comment="结构化标签：domain")
    structured_feature: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, comment="结构化标签：feature")
    structured_status: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, comment="结构化标签：status")
    structured_tags: Mapped[List[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        comment="结构化标签：tags",
    )

    structured_is_valid: Mapped[Optional[bool]] = mapped_column(
        Boolean,
        nullable=True,
        comment="源内容有效性（False=空/近空）",  # docstring: 过滤阶段无条件排除
    )

    structured_content_length: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="源内容长度（字符）",
    )
