# playground/sql_gate/test_chunk_repo_gate.py

"""
[职责] sql gate：验证 chunk 表结构、ChunkRepo（CorpusStore SQL 实现）与 init_db 装载脚本。
[边界] 使用 tmp_path 下的 sqlite+aiosqlite 文件；不依赖外部数据库。
[上游关系] backend/db/{engine,models,repo}、backend/scripts/init_db.py。
[下游关系] create_default_app 以 ChunkRepo 作为语料来源。
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List

import pytest
import pytest_asyncio
from sqlalchemy import inspect as sa_inspect

from doc_rag.backend.db.engine import create_engine, create_session_factory, drop_db, init_db
from doc_rag.backend.db.repo import ChunkRepo
from doc_rag.backend.kb.corpus import InMemoryCorpusStore, candidate_from_record
from doc_rag.backend.pipelines.retrieval.keywords import KeywordExtractor
from doc_rag.backend.scripts import init_db as init_db_script


pytestmark = pytest.mark.sql_gate


@pytest_asyncio.fixture
async def chunk_repo(tmp_path: Path, corpus_records: List[Dict[str, Any]]) -> AsyncIterator[ChunkRepo]:
    engine = create_engine(url=f"sqlite+aiosqlite:///{tmp_path / 'chunks.db'}", echo=False)
    await init_db(engine)
    repo = ChunkRepo(create_session_factory(engine))
    await repo.add_many(corpus_records)
    try:
        yield repo
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_init_db_creates_chunk_table(tmp_path: Path) -> None:
    engine = create_engine(url=f"sqlite+aiosqlite:///{tmp_path / 'nested' / 'schema.db'}", echo=False)
    try:
        await init_db(engine)
        async with engine.connect() as conn:
            tables = await conn.run_sync(lambda c: sa_inspect(c).get_table_names())
            columns = await conn.run_sync(lambda c: {col["name"] for col in sa_inspect(c).get_columns("chunk")})
        assert "chunk" in tables
        assert {"id", "document_id", "title", "content", "title_norm", "content_norm", "labels"} <= columns

        await drop_db(engine)
        async with engine.connect() as conn:
            tables = await conn.run_sync(lambda c: sa_inspect(c).get_table_names())
        assert "chunk" not in tables
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_get_many_round_trips_labels_and_structured(chunk_repo: ChunkRepo) -> None:
    found = await chunk_repo.get_many(["c-classroom-1", "c-empty", "missing"])

    assert set(found) == {"c-classroom-1", "c-empty"}
    cand = found["c-classroom-1"]
    assert cand.document_id == "doc-classroom"
    assert cand.labels == frozenset({"教室", "機能仕様"})
    assert cand.structured_metadata is not None
    assert cand.structured_metadata.domain == "教室"
    assert cand.structured_metadata.tags == ("管理",)
    assert found["c-empty"].structured_metadata is None
    assert await chunk_repo.get_many([]) == {}


@pytest.mark.asyncio
async def test_lexical_window_orders_by_matched_terms(chunk_repo: ChunkRepo) -> None:
    rows = await chunk_repo.lexical_candidates(["教室管理", "詳細", "教室", "管理"], 3)

    assert len(rows) == 3
    ids = [c.id for c in rows]
    assert "c-invoice" not in ids
    assert ids[0] in {"c-classroom-1", "c-classroom-2", "c-meeting"}
    assert await chunk_repo.lexical_candidates([], 10) == []


@pytest.mark.asyncio
async def test_title_window_only_matches_titles(chunk_repo: ChunkRepo) -> None:
    rows = await chunk_repo.title_candidates(["詳細"], 10)

    assert [c.id for c in rows] == ["c-room-detail"]


@pytest.mark.asyncio
async def test_like_wildcards_are_escaped(chunk_repo: ChunkRepo) -> None:
    assert await chunk_repo.lexical_candidates(["%"], 10) == []
    assert await chunk_repo.title_candidates(["_"], 10) == []


@pytest.mark.asyncio
async def test_corpus_stats_counts_documents_and_df(chunk_repo: ChunkRepo, corpus_records) -> None:
    stats = await chunk_repo.corpus_stats(["請求書", "教室"])

    assert stats is not None
    assert stats.total_documents == len(corpus_records)
    assert stats.document_frequency["請求書"] == 1
    assert stats.document_frequency["教室"] >= 7
    assert stats.avg_field_length["title"] > 0
    assert await chunk_repo.count() == len(corpus_records)


@pytest.mark.asyncio
async def test_full_width_records_match_normalized_keywords(tmp_path: Path) -> None:
    records = [
        {"id": "a1", "document_id": "doc-a1", "title": "ＡＰＩ連携", "content": "外部ＳＹＳＴＥＭとの連携仕様。"},
        {"id": "a2", "document_id": "doc-a2", "title": "請求書発行", "content": "請求書を発行します。"},
    ]
    keywords = KeywordExtractor().extract("APIについて").keywords
    assert "api" in keywords

    memory = InMemoryCorpusStore(candidate_from_record(r) for r in records)
    engine = create_engine(url=f"sqlite+aiosqlite:///{tmp_path / 'fullwidth.db'}", echo=False)
    try:
        await init_db(engine)
        repo = ChunkRepo(create_session_factory(engine))
        await repo.add_many(records)

        sql_ids = [c.id for c in await repo.lexical_candidates(keywords, 10)]
        mem_ids = [c.id for c in await memory.lexical_candidates(keywords, 10)]
        assert sql_ids == mem_ids == ["a1"]
        assert [c.id for c in await repo.title_candidates(["api"], 10)] == ["a1"]
        assert [c.id for c in await repo.lexical_candidates(["system"], 10)] == ["a1"]
        assert (await repo.get_many(["a1"]))["a1"].title == "ＡＰＩ連携"

        sql_stats = await repo.corpus_stats(keywords)
        mem_stats = await memory.corpus_stats(keywords)
        assert sql_stats is not None and mem_stats is not None
        assert sql_stats.document_frequency["api"] == 1
        assert sql_stats.document_frequency == mem_stats.document_frequency
        assert sql_stats.avg_field_length == pytest.approx(mem_stats.avg_field_length)
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_add_many_overwrites_same_id(chunk_repo: ChunkRepo) -> None:
    n = await chunk_repo.add_many(
        [{"id": "c-login", "document_id": "doc-login", "title": "ログイン仕様 v2", "content": "更新後の本文です。"}]
    )

    assert n == 1
    found = await chunk_repo.get_many(["c-login"])
    assert found["c-login"].title == "ログイン仕様 v2"
    assert len(await chunk_repo.all_chunks()) == 10


@pytest.mark.asyncio
async def test_empty_table_reports_no_stats(tmp_path: Path) -> None:
    engine = create_engine(url=f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}", echo=False)
    try:
        await init_db(engine)
        repo = ChunkRepo(create_session_factory(engine))
        assert await repo.corpus_stats(["教室"]) is None
        assert await repo.all_chunks() == []
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_search_service_over_sql_corpus(chunk_repo: ChunkRepo, make_service) -> None:
    service = make_service(corpus=chunk_repo)

    resp = await service.search("教室管理の詳細は", {"top_k": 5})

    assert resp.results[0].document_id == "doc-classroom"
    assert resp.diagnostics.degraded is False
    assert {"c-meeting", "c-archived", "c-empty"}.isdisjoint({r.id for r in resp.results})


def test_init_db_script_loads_jsonl(tmp_path: Path, corpus_records, capsys: pytest.CaptureFixture[str]) -> None:
    jsonl = tmp_path / "corpus.jsonl"
    jsonl.write_text(
        "\n".join(json.dumps(r, ensure_ascii=False) for r in corpus_records) + "\n\n",
        encoding="utf-8",
    )
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'script.db'}"

    code = init_db_script.main(["--db-url", db_url, "--load", str(jsonl), "--json", "--no-echo"])

    assert code == 0
    out = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert out["ok"] is True
    assert out["chunks"] == len(corpus_records)
    assert out["loaded"] == {str(jsonl): len(corpus_records)}


def test_init_db_script_reports_bad_jsonl(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    bad = tmp_path / "bad.jsonl"
    bad.write_text('["not", "an", "object"]\n', encoding="utf-8")

    code = init_db_script.main(["--db-url", f"sqlite+aiosqlite:///{tmp_path / 'bad.db'}", "--load", str(bad)])

    assert code == 1
    assert "error=ValueError" in capsys.readouterr().out
