# playground/retrieval_gate/test_orchestrator_gate.py

"""
[职责] orchestrator gate：验证策略并发执行、单策略超时隔离、请求级 deadline 与失败归类。
[边界] 使用内存 stub 策略（asyncio.sleep 模拟延迟）；不依赖语料库。
[上游关系] backend/pipelines/retrieval/orchestrator.py。
[下游关系] pipeline 依据 outcomes 决定融合输入与降级标记。
"""

from __future__ import annotations

import asyncio
import time
from typing import List, Optional

import pytest

from doc_rag.backend.pipelines.base.context import PipelineContext
from doc_rag.backend.pipelines.retrieval.orchestrator import StrategyOrchestrator, ok_strategy_names
from doc_rag.backend.pipelines.retrieval.types import (
    Candidate,
    StrategyFailed,
    StrategyOk,
    StrategyRequest,
    StrategyTimedOut,
)
from doc_rag.backend.schemas.search import SearchConfig
from doc_rag.backend.utils.errors import RetrievalUnavailable


pytestmark = pytest.mark.retrieval_gate

REQUEST = StrategyRequest(query="教室管理", keywords=("教室管理",), config=SearchConfig())


class _StubStrategy:
    def __init__(
        self,
        name: str,
        *,
        delay: float = 0.0,
        timeout_s: float = 1.0,
        error: Optional[Exception] = None,
        ids: tuple = ("c-1",),
    ) -> None:
        self.name = name
        self.timeout_s = timeout_s
        self._delay = delay
        self._error = error
        self._ids = ids

    async def run(self, request: StrategyRequest) -> List[Candidate]:
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error is not None:
            raise self._error
        return [Candidate(id=cid, document_id=f"doc-{cid}", title=cid, content="") for cid in self._ids]


class _StubbornStrategy:
    """取消后仍继续执行一段时间（模拟不可中断的 I/O）。"""

    name = "stubborn"
    timeout_s = 0.05

    def __init__(self) -> None:
        self.finished = False

    async def run(self, request: StrategyRequest) -> List[Candidate]:
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            await asyncio.sleep(0.2)
            self.finished = True
        return []


@pytest.mark.asyncio
async def test_slow_strategy_times_out_without_blocking_others() -> None:
    orch = StrategyOrchestrator(deadline_s=2.0)
    strategies = [
        _StubStrategy("vector", delay=0.5, timeout_s=0.05),
        _StubStrategy("lexical", ids=("c-2", "c-1")),
    ]

    started = time.perf_counter()
    result = await orch.run(REQUEST, strategies)
    elapsed = time.perf_counter() - started

    assert elapsed < 0.4
    assert isinstance(result.outcomes["vector"], StrategyTimedOut)
    assert result.outcomes["vector"].scope == "strategy"
    lexical = result.outcomes["lexical"]
    assert isinstance(lexical, StrategyOk)
    assert [c.id for c in lexical.candidates] == ["c-2", "c-1"]
    assert result.degraded is True
    assert result.all_failed is False
    assert result.error_counts == {"vector": {"timeout": 1}}


@pytest.mark.asyncio
async def test_uncooperative_strategy_is_abandoned() -> None:
    stubborn = _StubbornStrategy()
    orch = StrategyOrchestrator(deadline_s=2.0)

    started = time.perf_counter()
    result = await orch.run(REQUEST, [stubborn, _StubStrategy("lexical")])
    elapsed = time.perf_counter() - started

    assert elapsed < 0.15
    assert isinstance(result.outcomes["stubborn"], StrategyTimedOut)
    assert isinstance(result.outcomes["lexical"], StrategyOk)
    assert stubborn.finished is False

    await asyncio.sleep(0.3)  # docstring: 让被放弃的任务自然结束，其结果被丢弃
    assert stubborn.finished is True


@pytest.mark.asyncio
async def test_request_deadline_caps_total_latency() -> None:
    orch = StrategyOrchestrator(deadline_s=0.1)
    strategies = [_StubStrategy("vector", delay=1.0, timeout_s=5.0), _StubStrategy("title")]

    started = time.perf_counter()
    result = await orch.run(REQUEST, strategies)
    elapsed = time.perf_counter() - started

    assert elapsed < 0.5
    timed_out = result.outcomes["vector"]
    assert isinstance(timed_out, StrategyTimedOut)
    assert timed_out.scope == "deadline"
    assert ok_strategy_names(result) == ["title"]


@pytest.mark.asyncio
async def test_failures_are_classified_per_strategy() -> None:
    orch = StrategyOrchestrator(deadline_s=1.0)
    strategies = [
        _StubStrategy("vector", error=RetrievalUnavailable(strategy="vector", reason="embed_error")),
        _StubStrategy("lexical", error=KeyError("boom")),
        _StubStrategy("title"),
    ]
    ctx = PipelineContext()

    result = await orch.run(REQUEST, strategies, ctx=ctx)

    vector = result.outcomes["vector"]
    lexical = result.outcomes["lexical"]
    assert isinstance(vector, StrategyFailed) and vector.reason == "embed_error"
    assert vector.error_kind == "retrieval.unavailable"
    assert isinstance(lexical, StrategyFailed) and lexical.error_kind == "KeyError"
    assert lexical.reason.startswith("KeyError")
    assert list(result.outcomes) == ["vector", "lexical", "title"]
    assert "strategy.title" in ctx.timing_ms()
    assert "strategy.vector" not in ctx.timing_ms()


@pytest.mark.asyncio
async def test_all_failed_and_empty_inputs() -> None:
    orch = StrategyOrchestrator(deadline_s=1.0)

    result = await orch.run(REQUEST, [_StubStrategy("vector", error=RuntimeError("down"))])
    assert result.all_failed is True
    assert result.ok == {}

    empty = await orch.run(REQUEST, [])
    assert empty.outcomes == {}

    with pytest.raises(ValueError):
        await orch.run(REQUEST, [_StubStrategy("vector"), _StubStrategy("vector")])
    with pytest.raises(ValueError):
        StrategyOrchestrator(deadline_s=0)


@pytest.mark.asyncio
async def test_empty_candidate_list_counts_as_success() -> None:
    orch = StrategyOrchestrator(deadline_s=1.0)

    result = await orch.run(REQUEST, [_StubStrategy("title", ids=())])

    assert isinstance(result.outcomes["title"], StrategyOk)
    assert result.degraded is False
