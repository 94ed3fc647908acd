# src/doc_rag/backend/db/engine.py

"""
[职责] 数据库引擎与会话工厂：创建 AsyncEngine / async_sessionmaker，并提供 init_db/drop_db。
[边界] 不包含 ORM Model 定义；不持有全局引擎（由 API 应用/脚本按需创建并负责 dispose）。
[上游关系] config.Settings 提供 DOC_RAG_DATABASE_URL；测试传入临时 sqlite 文件路径。
[下游关系] ChunkRepo 使用 sessionmaker；api/app.py lifespan 与 scripts/init_db.py 调用。
"""

from __future__ import annotations

import os
from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .base import Base


def resolve_db_url(override: str | None = None) -> str:
    """
    Resolve database URL.

    Priority:
        1) explicit override
        2) settings: DOC_RAG_DATABASE_URL (loads .env)
    """
    if override:
        return override
    from doc_rag.config import settings

    return settings.DOC_RAG_DATABASE_URL


def _ensure_sqlite_dir(url: str) -> None:
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite" or not parsed.database or parsed.database == ":memory:":
        return
    Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)


def create_engine(*, url: str | None = None, echo: bool | None = None) -> AsyncEngine:
    """Create AsyncEngine (sqlite via aiosqlite by default)."""
    db_url = resolve_db_url(url)
    _ensure_sqlite_dir(db_url)
    db_echo = echo if echo is not None else (os.getenv("SQL_ECHO", "0") == "1")  # docstring: SQL 打印开关
    return create_async_engine(db_url, echo=db_echo, pool_pre_ping=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def init_db(engine: AsyncEngine) -> None:
    """create_all；必须先导入 models 以注册表。"""
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_db(engine: AsyncEngine) -> None:
    """Drop all tables (local/dev/tests only)."""
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
