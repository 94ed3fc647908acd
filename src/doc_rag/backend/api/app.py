# src/doc_rag/backend/api/app.py

"""
[职责] FastAPI 应用工厂：注册 middleware、DomainError handler 与 routers（/api/search、/health）。
[边界] create_app 不创建任何依赖（服务由调用方注入）；create_default_app 按 Settings 装配本地运行所需依赖。
[上游关系] uvicorn（doc_rag.backend.api.app:create_default_app --factory）或测试。
[下游关系] routers 通过 deps 从 app.state 读取 SearchService。
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine

from doc_rag.backend.api.errors import to_json_response
from doc_rag.backend.api.middleware import TraceContextMiddleware
from doc_rag.backend.api.routers import health as health_router
from doc_rag.backend.api.routers import search as search_router
from doc_rag.backend.db.engine import create_engine, create_session_factory, init_db
from doc_rag.backend.db.repo import ChunkRepo
from doc_rag.backend.kb.memory import InMemoryVectorIndex
from doc_rag.backend.pipelines.retrieval.embed import LlamaIndexQueryEmbedder, resolve_embedding
from doc_rag.backend.services.search_service import SearchService, build_search_service
from doc_rag.backend.utils.errors import DomainError
from doc_rag.backend.utils.logging_ import configure_logging, get_logger, log_event
from doc_rag.config import Settings


logger = get_logger("api.app")


async def _domain_error_handler(request: Request, exc: Exception) -> JSONResponse:
    return to_json_response(
        exc,
        trace_id=getattr(request.state, "trace_id", None),
        request_id=getattr(request.state, "request_id", None),
    )


def create_app(service: Optional[SearchService] = None, *, engine: Optional[AsyncEngine] = None, lifespan=None) -> FastAPI:
    app = FastAPI(title="doc_rag", version="0.1.0", lifespan=lifespan)
    app.state.search_service = service
    app.state.db_engine = engine

    app.add_middleware(TraceContextMiddleware)
    app.add_exception_handler(DomainError, _domain_error_handler)
    app.include_router(search_router.router, prefix="/api")
    app.include_router(health_router.router)
    return app


def create_default_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    [职责] 本地运行入口：SQLite 语料（ChunkRepo）+ 启动期构建的进程内向量索引 + Settings 指定的 embedding。
    [边界] 生产环境的外部向量索引（Milvus）应通过 create_app(build_search_service(index=MilvusVectorIndex(...))) 注入。
    """
    from doc_rag.config import settings as default_settings

    cfg = settings or default_settings
    configure_logging(level=logging.getLevelName(cfg.DOC_RAG_LOG_LEVEL.upper()), json_output=cfg.DOC_RAG_LOG_JSON)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        engine = create_engine(url=cfg.DOC_RAG_DATABASE_URL)
        await init_db(engine)
        corpus = ChunkRepo(create_session_factory(engine))

        embedding = resolve_embedding(
            provider=cfg.DOC_RAG_EMBED_PROVIDER,
            model=cfg.DOC_RAG_EMBED_MODEL,
            dim=cfg.DOC_RAG_EMBED_DIM,
        )
        chunks = await corpus.all_chunks()
        index = InMemoryVectorIndex(dimension=cfg.DOC_RAG_EMBED_DIM)
        if chunks:
            vectors = await embedding.aget_text_embedding_batch([f"{c.title}\n{c.content}" for c in chunks])
            index.add_many(zip((c.id for c in chunks), vectors))

        app.state.db_engine = engine
        app.state.search_service = build_search_service(
            corpus=corpus,
            index=index,
            settings=cfg,
            embedder=LlamaIndexQueryEmbedder(embedding, dim=cfg.DOC_RAG_EMBED_DIM, provider=cfg.DOC_RAG_EMBED_PROVIDER),
        )
        log_event(logger, logging.INFO, "search service ready", fields={"chunks": len(chunks)})
        try:
            yield
        finally:
            await engine.dispose()

    return create_app(lifespan=lifespan)
