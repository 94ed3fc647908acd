# src/doc_rag/backend/schemas/ids.py

"""
[职责] ID 契约层：trace/request 标识的类型别名与生成策略（UUID v4 string）。
[边界] 语料 chunk/document ID 由外部系统提供（不透明字符串），不在此约束。
"""

from __future__ import annotations

from typing import NewType
from uuid import UUID, uuid4


UUIDStr = NewType("UUIDStr", str)  # docstring: 统一 UUID 字符串类型（运行时仍为 str）


def new_uuid() -> UUIDStr:
    """Generate UUID v4 as string."""
    return UUIDStr(str(uuid4()))


def is_uuid_str(value: str) -> bool:
    """Return True if value parses as UUID string."""
    try:
        UUID(str(value))
    except (TypeError, ValueError):
        return False
    return True
