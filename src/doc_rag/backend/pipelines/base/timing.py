# src/doc_rag/backend/pipelines/base/timing.py

"""
[职责] timing 基础设施：为检索 pipeline 提供阶段计时（ms）收集与导出。
[边界] 不做分布式 tracing；不负责日志落地；仅提供轻量计时器与可序列化的 timing_ms dict。
[上游关系] pipeline 在 keywords/orchestrate/fusion/score/dedupe 等阶段调用 stage(...)。
[下游关系] SearchDiagnostics.timing_ms 与日志字段直接消费。
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional

from doc_rag.backend.utils.constants import TIMING_TOTAL_KEY


def _now_ms() -> float:
    return time.perf_counter() * 1000.0


@dataclass
class TimingCollector:
    """
    [职责] 收集各阶段耗时并导出 dict[str, float]（ms）。
    [边界] 单请求内使用；并发策略只在 orchestrator 中按策略名写入各自 key。
    """

    _stages_ms: Dict[str, float] = field(default_factory=dict)
    _start_ms: float = field(default_factory=_now_ms)

    def add_ms(self, key: str, ms: float, *, accumulate: bool = True) -> None:
        k = str(key).strip()
        if not k:
            return
        v = max(float(ms), 0.0)  # docstring: 负数截断为 0
        if accumulate:
            self._stages_ms[k] = self._stages_ms.get(k, 0.0) + v
        else:
            self._stages_ms[k] = v

    @contextmanager
    def stage(self, key: str, *, accumulate: bool = False) -> Iterator[None]:
        """with timing.stage("fusion"): ... 退出时写入耗时。"""
        start = _now_ms()
        try:
            yield
        finally:
            self.add_ms(key, _now_ms() - start, accumulate=accumulate)

    def total_ms(self) -> float:
        return _now_ms() - self._start_ms

    def to_dict(self, *, include_total: bool = True) -> Dict[str, float]:
        out = {k: round(v, 3) for k, v in self._stages_ms.items()}
        if include_total:
            out[TIMING_TOTAL_KEY] = round(self.total_ms(), 3)
        return out

    def get(self, key: str, default: Optional[float] = None) -> Optional[float]:
        return self._stages_ms.get(key, default)
