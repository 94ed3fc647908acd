# src/doc_rag/backend/pipelines/retrieval/orchestrator.py

"""
[职责] Strategy Orchestrator：每个启用的策略一个 asyncio task 并发执行，各自超时；请求级 deadline 统一截止。
[边界] 单策略失败/超时只产生标签化结果（StrategyTimedOut/StrategyFailed），不抛出、不影响其它策略；
       不响应取消的策略在超时后同样被排除，其迟到结果被丢弃。
[上游关系] pipeline 传入 StrategyRequest 与已启用策略列表。
[下游关系] OrchestrationResult.outcomes 按配置顺序（而非完成顺序）交给 fusion；error_counts 进入诊断。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from doc_rag.backend.pipelines.base.context import PipelineContext
from doc_rag.backend.utils.errors import error_kind
from doc_rag.backend.utils.logging_ import get_logger, log_event

from .strategies import RetrievalStrategy
from .types import StrategyFailed, StrategyOk, StrategyOutcome, StrategyRequest, StrategyTimedOut


logger = get_logger("retrieval.orchestrator")


@dataclass(frozen=True)
class OrchestrationResult:
    outcomes: Dict[str, StrategyOutcome]  # docstring: strategy -> 标签化结果（按配置顺序）
    error_counts: Dict[str, Dict[str, int]] = field(default_factory=dict)  # docstring: strategy -> error_kind -> count

    @property
    def ok(self) -> Dict[str, StrategyOk]:
        return {k: v for k, v in self.outcomes.items() if isinstance(v, StrategyOk)}

    @property
    def all_failed(self) -> bool:
        return not self.ok

    @property
    def degraded(self) -> bool:
        return len(self.ok) != len(self.outcomes)


def _discard_late(strategy: str, task: "asyncio.Future") -> None:
    """超时后仍在运行的策略最终结束时调用：取走结果/异常并记录，不回写任何状态。"""
    if task.cancelled():
        return
    exc = task.exception()
    log_event(
        logger,
        logging.INFO,
        "late strategy result discarded",
        fields={"strategy": strategy, "error_kind": error_kind(exc) if exc else None},
    )


def _abandon(strategy: str, task: "asyncio.Future") -> None:
    task.cancel()
    task.add_done_callback(lambda t: _discard_late(strategy, t))


class StrategyOrchestrator:
    """
    [职责] run(request, strategies) -> OrchestrationResult。
    [边界] 任务数 = 启用策略数；deadline_s 为整体截止时间（秒）。
    """

    def __init__(self, *, deadline_s: float) -> None:
        if deadline_s <= 0:
            raise ValueError("deadline_s must be > 0")
        self._deadline_s = float(deadline_s)

    async def _guarded(self, strategy: RetrievalStrategy, request: StrategyRequest) -> StrategyOutcome:
        loop = asyncio.get_running_loop()
        started = loop.time()
        inner = asyncio.ensure_future(strategy.run(request))
        try:
            done, _ = await asyncio.wait({inner}, timeout=strategy.timeout_s)
        except asyncio.CancelledError:
            _abandon(strategy.name, inner)  # docstring: deadline 触发时取消在途 I/O
            raise
        elapsed_ms = (loop.time() - started) * 1000.0

        if not done:
            _abandon(strategy.name, inner)
            return StrategyTimedOut(strategy=strategy.name, timeout_s=strategy.timeout_s)
        if inner.cancelled():
            return StrategyFailed(strategy=strategy.name, reason="cancelled", error_kind="cancelled", elapsed_ms=elapsed_ms)
        exc = inner.exception()
        if exc is not None:
            return StrategyFailed(
                strategy=strategy.name,
                reason=getattr(exc, "reason", None) or f"{exc.__class__.__name__}: {exc}",
                error_kind=error_kind(exc),
                elapsed_ms=elapsed_ms,
            )
        return StrategyOk(strategy=strategy.name, candidates=tuple(inner.result() or ()), elapsed_ms=elapsed_ms)

    async def run(
        self,
        request: StrategyRequest,
        strategies: Sequence[RetrievalStrategy],
        *,
        ctx: Optional[PipelineContext] = None,
    ) -> OrchestrationResult:
        names = [s.name for s in strategies]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate strategy names: {names}")
        if not strategies:
            return OrchestrationResult(outcomes={})

        tasks = {s.name: asyncio.ensure_future(self._guarded(s, request)) for s in strategies}
        try:
            _, pending = await asyncio.wait(tasks.values(), timeout=self._deadline_s)
        except asyncio.CancelledError:
            for t in tasks.values():
                t.cancel()
            raise
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)  # docstring: 等待取消传播（不等待底层 I/O）

        outcomes: Dict[str, StrategyOutcome] = {}
        error_counts: Dict[str, Dict[str, int]] = {}
        for name in names:
            task = tasks[name]
            if task.cancelled():
                outcome: StrategyOutcome = StrategyTimedOut(strategy=name, timeout_s=self._deadline_s, scope="deadline")
            else:
                outcome = task.result()
            outcomes[name] = outcome

            if isinstance(outcome, StrategyOk):
                if ctx is not None:
                    ctx.timing.add_ms(f"strategy.{name}", outcome.elapsed_ms)
                continue
            kind = outcome.error_kind
            error_counts.setdefault(name, {})
            error_counts[name][kind] = error_counts[name].get(kind, 0) + 1
            log_event(
                logger,
                logging.WARNING,
                "retrieval strategy degraded",
                context=ctx,
                fields={
                    "strategy": name,
                    "status": outcome.status,
                    "error_kind": kind,
                    "reason": getattr(outcome, "reason", None),
                },
            )

        return OrchestrationResult(outcomes=outcomes, error_counts=error_counts)


def ok_strategy_names(result: OrchestrationResult) -> List[str]:
    return [name for name, outcome in result.outcomes.items() if isinstance(outcome, StrategyOk)]
