# playground/conftest.py

"""
[职责] gate tests 公共 fixture：小型日文语料、概念计数 embedder、进程内索引与 SearchService 装配。
[边界] 不访问网络/外部向量库；SQL gate 使用 tmp_path 下的 sqlite 文件。
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pytest

_REPO_ROOT = Path(__file__).resolve().parents[1]
_SRC_ROOT = _REPO_ROOT / "src"
if str(_SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(_SRC_ROOT))  # docstring: ensure local src import

from doc_rag.backend.kb.corpus import InMemoryCorpusStore
from doc_rag.backend.kb.memory import InMemoryVectorIndex
from doc_rag.backend.pipelines.retrieval.cache import ResultCache
from doc_rag.backend.services.search_service import SearchService, build_search_service
from doc_rag.backend.utils.errors import RetrievalUnavailable
from doc_rag.config import Settings


CONCEPTS = ("教室", "管理", "詳細", "生徒", "請求", "ログイン", "時間割", "会議")


def concept_vector(text: str) -> List[float]:
    """概念词出现次数向量（确定性；与 query/正文共用同一映射）。"""
    return [float(text.count(c)) for c in CONCEPTS]


CORPUS: List[Dict[str, Any]] = [
    {
        "id": "c-classroom-1",
        "document_id": "doc-classroom",
        "title": "教室管理",
        "content": "教室管理機能では教室の登録、編集、削除を行います。詳細は以下の通りです。",
        "labels": ["教室", "機能仕様"],
        "structured_metadata": {"domain": "教室", "feature": "教室管理", "status": "approved", "tags": ["管理"]},
    },
    {
        "id": "c-classroom-2",
        "document_id": "doc-classroom",
        "title": "教室管理",
        "content": "教室管理の画面構成について説明します。一覧画面と詳細画面があります。",
        "labels": ["教室", "機能仕様"],
        "structured_metadata": {"domain": "教室", "feature": "教室管理", "status": "approved"},
    },
    {
        "id": "c-room-detail",
        "document_id": "doc-room-detail",
        "title": "教室詳細画面",
        "content": "教室の詳細情報を表示する画面です。管理者のみ閲覧可能です。",
        "labels": ["画面仕様"],
    },
    {
        "id": "c-student",
        "document_id": "doc-student",
        "title": "生徒管理",
        "content": "生徒管理機能の詳細。生徒の登録と管理を行います。",
        "labels": ["生徒"],
        "structured_metadata": {"domain": "生徒", "feature": "生徒管理", "status": "draft"},
    },
    {
        "id": "c-timetable",
        "document_id": "doc-timetable",
        "title": "時間割設定",
        "content": "時間割設定では教室ごとの授業枠を管理します。",
        "labels": ["時間割"],
    },
    {
        "id": "c-meeting",
        "document_id": "doc-meeting",
        "title": "教室管理 定例会議",
        "content": "教室管理に関する会議の議事録です。詳細な議論の記録。",
        "labels": ["議事録"],
    },
    {
        "id": "c-archived",
        "document_id": "doc-archived",
        "title": "旧教室管理",
        "content": "旧バージョンの教室管理機能の説明です。現在は使われていません。",
        "labels": ["archived"],
    },
    {
        "id": "c-empty",
        "document_id": "doc-empty",
        "title": "教室管理メモ",
        "content": "",
        "labels": [],
    },
    {
        "id": "c-invoice",
        "document_id": "doc-invoice",
        "title": "請求書発行",
        "content": "請求書を発行する手順を説明します。",
        "labels": ["請求"],
    },
    {
        "id": "c-login",
        "document_id": "doc-login",
        "title": "ログイン仕様",
        "content": "ログイン画面の仕様とパスワードポリシーについて。",
        "labels": ["認証"],
    },
]


class ConceptEmbedder:
    """QueryEmbedder stub：概念计数向量；fail=True 时模拟 embedding 服务不可用。"""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls = 0

    async def embed(self, text: str) -> List[float]:
        self.calls += 1
        if self.fail:
            raise RetrievalUnavailable(strategy="vector", reason="embed_error")
        return concept_vector(text)


def build_index(records: Sequence[Dict[str, Any]]) -> InMemoryVectorIndex:
    index = InMemoryVectorIndex(dimension=len(CONCEPTS))
    index.add_many((r["id"], concept_vector(f"{r['title']}\n{r['content']}")) for r in records)
    return index


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def corpus_records() -> List[Dict[str, Any]]:
    return [dict(r) for r in CORPUS]


@pytest.fixture
def corpus_store(corpus_records: List[Dict[str, Any]]) -> InMemoryCorpusStore:
    return InMemoryCorpusStore.from_records(corpus_records)


@pytest.fixture
def vector_index(corpus_records: List[Dict[str, Any]]) -> InMemoryVectorIndex:
    return build_index(corpus_records)


@pytest.fixture
def concept_embedder() -> ConceptEmbedder:
    return ConceptEmbedder()


@pytest.fixture
def failing_embedder() -> ConceptEmbedder:
    return ConceptEmbedder(fail=True)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        DOC_RAG_DATABASE_URL="sqlite+aiosqlite:///:memory:",
        DOC_RAG_EMBED_DIM=len(CONCEPTS),
        DOC_RAG_MAX_TOP_K=20,
        DOC_RAG_REQUEST_DEADLINE_S=2.0,
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_service(corpus_store: InMemoryCorpusStore, vector_index: InMemoryVectorIndex, test_settings: Settings):
    """工厂 fixture：按需替换 embedder/cache/corpus。"""

    def _make(
        *,
        embedder: Optional[Any] = None,
        cache: Optional[ResultCache] = None,
        corpus: Optional[Any] = None,
    ) -> SearchService:
        return build_search_service(
            corpus=corpus or corpus_store,
            index=vector_index,
            settings=test_settings,
            embedder=embedder or ConceptEmbedder(),
            cache=cache or ResultCache(capacity=16, default_ttl_s=60.0),
        )

    return _make
