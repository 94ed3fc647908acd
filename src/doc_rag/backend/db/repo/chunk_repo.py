# src/doc_rag/backend/db/repo/chunk_repo.py

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import ColumnElement, case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from doc_rag.backend.db.models.chunk import ChunkModel
from doc_rag.backend.kb.corpus import candidate_from_record
from doc_rag.backend.pipelines.retrieval.bm25 import CorpusStats
from doc_rag.backend.pipelines.retrieval.keywords import normalize_text
from doc_rag.backend.pipelines.retrieval.types import Candidate
from doc_rag.backend.schemas.search import StructuredMetadata


def _terms(keywords: Sequence[str]) -> List[str]:
    out: List[str] = []
    for kw in keywords:
        t = normalize_text(kw)
        if t and t not in out:
            out.append(t)
    return out


def _hit(term: str, *, title_only: bool) -> ColumnElement[bool]:
    # term is already normalized; match against the normalized shadow columns
    if title_only:
        return ChunkModel.title_norm.contains(term, autoescape=True)
    return or_(
        ChunkModel.title_norm.contains(term, autoescape=True),
        ChunkModel.content_norm.contains(term, autoescape=True),
    )


def _to_candidate(row: ChunkModel) -> Candidate:
    structured = None
    if any(
        (
            row.structured_category,
            row.structured_domain,
            row.structured_feature,
            row.structured_status,
            row.structured_tags,
            row.structured_content_length,
        )
    ) or row.structured_is_valid is not None:
        structured = StructuredMetadata(
            category=row.structured_category,
            domain=row.structured_domain,
            feature=row.structured_feature,
            status=row.structured_status,
            tags=tuple(row.structured_tags or ()),
            is_valid=row.structured_is_valid,
            content_length=row.structured_content_length,
        )
    return Candidate(
        id=row.id,
        document_id=row.document_id,
        title=row.title or "",
        content=row.content or "",
        labels=frozenset(str(x) for x in (row.labels or ()) if str(x).strip()),
        structured_metadata=structured,
    )


class ChunkRepo:
    """
    [职责] ChunkRepo：CorpusStore 的 SQL 实现（回查、LIKE 候选窗口、标题候选、BM25 统计）。
    [边界] 每次调用独立 session（策略并发访问，AsyncSession 不可共享）；只读，写入仅供装载脚本。
           匹配与统计基于 title_norm/content_norm（NFKC+小写），与进程内语料库口径一致。
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = session_factory

    async def get_many(self, ids: Sequence[str]) -> Dict[str, Candidate]:
        wanted = [str(x) for x in ids if str(x)]
        if not wanted:
            return {}
        async with self._factory() as session:
            res = await session.execute(select(ChunkModel).where(ChunkModel.id.in_(wanted)))
            return {row.id: _to_candidate(row) for row in res.scalars().all()}

    async def _windowed(self, keywords: Sequence[str], limit: int, *, title_only: bool) -> List[Candidate]:
        terms = _terms(keywords)
        if not terms or limit <= 0:
            return []
        hits = [_hit(t, title_only=title_only) for t in terms]
        matched = sum((case((h, 1), else_=0) for h in hits[1:]), case((hits[0], 1), else_=0))
        q = select(ChunkModel).where(or_(*hits)).order_by(matched.desc(), ChunkModel.id).limit(int(limit))
        async with self._factory() as session:
            res = await session.execute(q)
            return [_to_candidate(row) for row in res.scalars().all()]

    async def lexical_candidates(self, keywords: Sequence[str], limit: int) -> List[Candidate]:
        return await self._windowed(keywords, limit, title_only=False)

    async def title_candidates(self, keywords: Sequence[str], limit: int) -> List[Candidate]:
        return await self._windowed(keywords, limit, title_only=True)

    async def corpus_stats(self, keywords: Sequence[str]) -> Optional[CorpusStats]:
        async with self._factory() as session:
            total, avg_title, avg_content = (
                await session.execute(
                    select(
                        func.count(ChunkModel.id),
                        func.avg(func.length(ChunkModel.title_norm)),
                        func.avg(func.length(ChunkModel.content_norm)),
                    )
                )
            ).one()
            if not total:
                return None
            df: Dict[str, int] = {}
            for term in _terms(keywords):
                df[term] = int(
                    (await session.execute(select(func.count(ChunkModel.id)).where(_hit(term, title_only=False)))).scalar_one()
                )
        return CorpusStats(
            total_documents=int(total),
            document_frequency=df,
            avg_field_length={"title": float(avg_title or 0.0), "content": float(avg_content or 0.0)},
        )

    async def all_chunks(self) -> List[Candidate]:
        """全量读取（启动期构建进程内向量索引用）。"""
        async with self._factory() as session:
            res = await session.execute(select(ChunkModel).order_by(ChunkModel.id))
            return [_to_candidate(row) for row in res.scalars().all()]

    async def count(self) -> int:
        async with self._factory() as session:
            return int((await session.execute(select(func.count(ChunkModel.id)))).scalar_one())

    async def add_many(self, records: Iterable[Mapping[str, Any]]) -> int:
        """装载 chunk 记录（同 id 覆盖），返回写入条数；事务在此提交。"""
        n = 0
        async with self._factory() as session:
            for record in records:
                cand = candidate_from_record(record)
                meta = cand.structured_metadata
                await session.merge(
                    ChunkModel(
                        id=cand.id,
                        document_id=cand.document_id,
                        title=cand.title,
                        content=cand.content,
                        title_norm=normalize_text(cand.title),
                        content_norm=normalize_text(cand.content),
                        labels=sorted(cand.labels),
                        structured_category=meta.category if meta else None,
                        structured_domain=meta.domain if meta else None,
                        structured_feature=meta.feature if meta else None,
                        structured_status=meta.status if meta else None,
                        structured_tags=list(meta.tags) if meta else [],
                        structured_is_valid=meta.is_valid if meta else None,
                        structured_content_length=meta.content_length if meta else None,
                    )
                )
                n += 1
            await session.commit()
        return n
