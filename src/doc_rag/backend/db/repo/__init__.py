# src/doc_rag/backend/db/repo/__init__.py

"""
[职责] db.repo 聚合导出：集中暴露仓储（Repo）对象，供 service/脚本调用。
[边界] 仅做导入与 __all__ 暴露；不包含业务编排。
"""

from __future__ import annotations

from .chunk_repo import ChunkRepo

__all__ = [
    "ChunkRepo",
]
