# src/doc_rag/backend/scripts/init_db.py

"""
[职责] 初始化数据库结构（create_all / 可选 drop），并可从 JSONL 装载语料 chunk，提供可幂等的 CLI 入口。
[边界] 不执行检索；JSONL 每行一个 chunk 记录（id/document_id/title/content/labels/structured_*）；同 id 覆盖。
[上游关系] 本地开发/CI/部署脚本调用；依赖 db.engine 的 init_db/drop_db 与 ChunkRepo。
[下游关系] 装载后的 chunk 表供 ChunkRepo（CorpusStore）与 create_default_app 使用。
"""

from __future__ import annotations

import argparse
import asyncio
import json
import time
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from doc_rag.backend.db.engine import create_engine, create_session_factory, drop_db, init_db
from doc_rag.backend.db.repo import ChunkRepo


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Initialize database schema and optionally load a JSONL corpus.")
    parser.add_argument("--db-url", dest="db_url", default=None)  # docstring: 显式 DB 连接串
    parser.add_argument("--drop", action="store_true")  # docstring: 先 drop 再 create
    parser.add_argument("--load", dest="load", action="append", default=[])  # docstring: JSONL 语料路径（可重复）
    echo_group = parser.add_mutually_exclusive_group()
    echo_group.add_argument("--echo", dest="echo", action="store_true", default=None)
    echo_group.add_argument("--no-echo", dest="echo", action="store_false")
    parser.add_argument("--json", action="store_true")  # docstring: 仅输出 JSON 结果
    return parser


def iter_jsonl(path: Path) -> Iterator[Dict[str, Any]]:
    """逐行读取 JSONL；空行跳过，非对象行报错（带行号）。"""
    with path.open("r", encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            raw = line.strip()
            if not raw:
                continue
            obj = json.loads(raw)
            if not isinstance(obj, dict):
                raise ValueError(f"{path}:{lineno}: expected a JSON object")
            yield obj


async def run(
    *,
    db_url: Optional[str],
    drop: bool,
    load: Sequence[str],
    echo: Optional[bool],
) -> Dict[str, Any]:
    start_ms = time.perf_counter() * 1000.0
    engine = create_engine(url=db_url, echo=echo)
    result: Dict[str, Any] = {
        "ok": True,
        "db_url": str(engine.url),
        "dropped": False,
        "created": False,
        "loaded": {},
        "chunks": 0,
        "duration_ms": 0.0,
        "error": None,
    }
    try:
        if drop:
            await drop_db(engine)
            result["dropped"] = True
        await init_db(engine)
        result["created"] = True

        repo = ChunkRepo(create_session_factory(engine))
        loaded: Dict[str, int] = {}
        for raw_path in load:
            path = Path(raw_path)
            loaded[str(path)] = await repo.add_many(iter_jsonl(path))
        result["loaded"] = loaded
        result["chunks"] = await repo.count()
    except Exception as exc:
        result["ok"] = False
        result["error"] = f"{exc.__class__.__name__}: {exc}"
    finally:
        await engine.dispose()
        result["duration_ms"] = round(time.perf_counter() * 1000.0 - start_ms, 2)
    return result


def _print_summary(*, result: Dict[str, Any], as_json: bool) -> None:
    if as_json:
        print(json.dumps(result, ensure_ascii=False, default=str))
        return
    status = "ok" if result.get("ok") else "failed"
    print(f"[init_db] status={status}")
    print(f"[init_db] db_url={result.get('db_url')}")
    print(f"[init_db] dropped={result.get('dropped')} created={result.get('created')} chunks={result.get('chunks')}")
    loaded: Dict[str, int] = result.get("loaded") or {}
    for path, n in loaded.items():
        print(f"[init_db] loaded {n} records from {path}")
    if result.get("error"):
        print(f"[init_db] error={result.get('error')}")
    print(f"[init_db] duration_ms={result.get('duration_ms')}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(list(argv) if argv is not None else None)
    load: List[str] = list(args.load or [])
    result = asyncio.run(run(db_url=args.db_url, drop=bool(args.drop), load=load, echo=args.echo))
    _print_summary(result=result, as_json=bool(args.json))
    return 0 if result.get("ok") else 1


if __name__ == "__main__":
    raise SystemExit(main())
