# src/doc_rag/backend/kb/repo.py

"""
[职责] Milvus 向量索引适配：将 collection.search 结果归一为 {"id", "distance"}（距离越小越相似）。
[边界] 不负责向量写入/建索引（ingest 在仓库范围外）；不直接依赖 pymilvus，collection 句柄由调用方注入。
[上游关系] 调用方通过 pymilvus（或兼容客户端）拿到 collection 句柄后构造。
[下游关系] VectorRetrievalAdapter 通过 nearest_neighbors 调用（异步接口）。
"""

from __future__ import annotations

import inspect
from typing import Any, Dict, List, Literal, Optional, Sequence, cast


MetricType = Literal["IP", "L2", "COSINE"]


def _normalize_metric_type(metric_type: Optional[str]) -> MetricType:
    mt = str(metric_type or "COSINE").strip().upper()
    if mt not in {"IP", "L2", "COSINE"}:
        raise ValueError(f"unsupported metric_type: {metric_type}")
    return cast(MetricType, mt)


def score_to_distance(score: float, metric_type: MetricType) -> float:
    """
    Milvus 返回值转为非负距离：
      - L2：本身即距离
      - COSINE / IP：相似度，distance = 1 - score（截断到 >= 0）
    """
    s = float(score)
    if metric_type == "L2":
        return max(s, 0.0)
    return max(1.0 - s, 0.0)


class MilvusVectorIndex:
    """
    Milvus-backed vector index.

    `collection` is a pymilvus Collection (or any object exposing the same `search` signature);
    sync and async clients are both accepted.
    """

    def __init__(
        self,
        collection: Any,
        *,
        dimension: int,
        metric_type: str = "COSINE",
        anns_field: str = "embedding",
        id_field: str = "chunk_id",
        search_params: Optional[Dict[str, Any]] = None,
        expr: Optional[str] = None,
    ) -> None:
        self._collection = collection  # docstring: collection 句柄
        self.dimension = int(dimension)
        self._metric_type = _normalize_metric_type(metric_type)
        self._anns_field = anns_field
        self._id_field = id_field
        self._search_params = dict(search_params or {"ef": 128, "nprobe": 16})
        self._expr = expr  # docstring: 可选 scope 过滤表达式

    @classmethod
    def connect(
        cls,
        *,
        uri: str,
        collection_name: str,
        dimension: int,
        token: Optional[str] = None,
        alias: str = "default",
        **kwargs: Any,
    ) -> "MilvusVectorIndex":
        """
        通过 pymilvus 建立连接并加载 collection（需安装 milvus extra）。
        kwargs 透传给构造函数（metric_type/anns_field/id_field/search_params/expr）。
        """
        from pymilvus import Collection, connections  # type: ignore

        connections.connect(alias=alias, uri=uri, token=token or "")
        collection = Collection(collection_name, using=alias)
        collection.load()  # docstring: search 前必须 load 到内存
        return cls(collection, dimension=dimension, **kwargs)

    async def nearest_neighbors(self, vector: Sequence[float], k: int) -> List[Dict[str, Any]]:
        call = self._collection.search(
            data=[list(vector)],
            anns_field=self._anns_field,
            param={"metric_type": self._metric_type, "params": self._search_params},
            limit=int(k),
            expr=self._expr,
            output_fields=[self._id_field],
        )
        raw = await self._maybe_await(call)

        out: List[Dict[str, Any]] = []
        for hits in list(raw or [])[:1]:
            for h in hits:
                entity = getattr(h, "entity", None)
                cid = entity.get(self._id_field) if entity is not None else None
                if cid is None:
                    cid = getattr(h, "id", None)  # docstring: 无 payload 时回退为主键
                score = getattr(h, "score", getattr(h, "distance", None))
                if cid is None or score is None:
                    continue
                out.append({"id": str(cid), "distance": score_to_distance(score, self._metric_type)})
        return out

    @staticmethod
    async def _maybe_await(value: Any) -> Any:
        """Normalize pymilvus calls across versions: some return plain values, others return awaitables."""
        if inspect.isawaitable(value):
            return await value
        return value
