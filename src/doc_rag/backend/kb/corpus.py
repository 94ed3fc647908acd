# src/doc_rag/backend/kb/corpus.py

"""
[职责] 语料库协议（CorpusStore）与进程内实现：按 id 回查候选、词法候选窗口、标题候选、BM25 统计快照。
[边界] 不负责语料同步/切分（外部系统）；只读；统计量为快照，不随请求变化。
[上游关系] scripts/测试装载 chunk 记录；SQL 版本见 db/repo/chunk_repo.py。
[下游关系] strategies（vector 回查、lexical 窗口 + 统计、title 直接匹配）。
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from doc_rag.backend.pipelines.retrieval.bm25 import CorpusStats
from doc_rag.backend.pipelines.retrieval.keywords import normalize_text
from doc_rag.backend.pipelines.retrieval.types import Candidate
from doc_rag.backend.schemas.search import StructuredMetadata


class CorpusStore(Protocol):
    async def get_many(self, ids: Sequence[str]) -> Dict[str, Candidate]: ...

    async def lexical_candidates(self, keywords: Sequence[str], limit: int) -> List[Candidate]: ...

    async def title_candidates(self, keywords: Sequence[str], limit: int) -> List[Candidate]: ...

    async def corpus_stats(self, keywords: Sequence[str]) -> Optional[CorpusStats]: ...


def structured_from_record(record: Mapping[str, Any]) -> Optional[StructuredMetadata]:
    """
    从记录中提取结构化标签：支持嵌套 structured_metadata 或扁平 structured_* 字段。
    全部为空时返回 None。
    """
    nested = record.get("structured_metadata")
    if isinstance(nested, StructuredMetadata):
        return nested
    if isinstance(nested, Mapping):
        return StructuredMetadata.model_validate(dict(nested))

    flat = {
        "category": record.get("structured_category"),
        "domain": record.get("structured_domain"),
        "feature": record.get("structured_feature"),
        "status": record.get("structured_status"),
        "tags": tuple(record.get("structured_tags") or ()),
        "is_valid": record.get("structured_is_valid"),
        "content_length": record.get("structured_content_length"),
    }
    if not any(v for k, v in flat.items() if k != "is_valid") and flat["is_valid"] is None:
        return None
    return StructuredMetadata(**flat)


def candidate_from_record(record: Mapping[str, Any]) -> Candidate:
    """dict（JSONL 行 / ORM 行映射）-> Candidate；id/document_id 必填。"""
    cid = str(record.get("id") or record.get("chunk_id") or "").strip()
    if not cid:
        raise ValueError("record id is required")
    doc_id = str(record.get("document_id") or record.get("page_id") or cid).strip()
    labels = record.get("labels") or ()
    if isinstance(labels, str):
        labels = [x for x in labels.split(",") if x.strip()]
    return Candidate(
        id=cid,
        document_id=doc_id,
        title=str(record.get("title") or ""),
        content=str(record.get("content") or ""),
        labels=frozenset(str(x).strip() for x in labels if str(x).strip()),
        structured_metadata=structured_from_record(record),
    )


class InMemoryCorpusStore:
    """
    [职责] CorpusStore 的进程内实现（开发/测试/小语料）。
    [边界] 构造后只读；统计快照在构造时计算（字段平均长度），df 按需计算。
    """

    def __init__(self, candidates: Iterable[Candidate], *, provide_stats: bool = True) -> None:
        self._by_id: Dict[str, Candidate] = {}
        for cand in candidates:
            self._by_id.setdefault(cand.id, cand)
        self._provide_stats = provide_stats
        self._norm = {cid: (normalize_text(c.title), normalize_text(c.content)) for cid, c in self._by_id.items()}

    @classmethod
    def from_records(cls, records: Iterable[Mapping[str, Any]], **kwargs: Any) -> "InMemoryCorpusStore":
        return cls((candidate_from_record(r) for r in records), **kwargs)

    def __len__(self) -> int:
        return len(self._by_id)

    async def get_many(self, ids: Sequence[str]) -> Dict[str, Candidate]:
        return {cid: self._by_id[cid] for cid in ids if cid in self._by_id}

    def _matches(self, keywords: Sequence[str], *, title_only: bool) -> List[tuple]:
        terms = [normalize_text(k) for k in keywords if normalize_text(k)]
        rows = []
        for cid in sorted(self._by_id):
            title, content = self._norm[cid]
            hay = title if title_only else f"{title}\n{content}"
            n = sum(1 for t in terms if t in hay)
            if n:
                rows.append((-n, cid))
        rows.sort()
        return rows

    async def lexical_candidates(self, keywords: Sequence[str], limit: int) -> List[Candidate]:
        return [self._by_id[cid] for _, cid in self._matches(keywords, title_only=False)[: max(limit, 0)]]

    async def title_candidates(self, keywords: Sequence[str], limit: int) -> List[Candidate]:
        return [self._by_id[cid] for _, cid in self._matches(keywords, title_only=True)[: max(limit, 0)]]

    async def corpus_stats(self, keywords: Sequence[str]) -> Optional[CorpusStats]:
        if not self._provide_stats or not self._by_id:
            return None
        n = len(self._by_id)
        df: Dict[str, int] = {}
        for kw in keywords:
            t = normalize_text(kw)
            if t:
                df[t] = sum(1 for title, content in self._norm.values() if t in title or t in content)
        avg = {
            "title": sum(len(v[0]) for v in self._norm.values()) / n,
            "content": sum(len(v[1]) for v in self._norm.values()) / n,
        }
        return CorpusStats(total_documents=n, document_frequency=df, avg_field_length=avg)
