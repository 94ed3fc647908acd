# src/doc_rag/backend/pipelines/retrieval/embed.py

"""
[职责] query embedding：基于 LlamaIndex BaseEmbedding 抽象生成查询向量（vector 策略的上游）。
[边界] 不负责语料向量化（ingest 不在本仓库范围）；不缓存向量；任何 provider 异常统一映射为 RetrievalUnavailable。
[上游关系] SearchService 按 Settings 的 provider/model/dim 构造 embedder。
[下游关系] VectorStrategy 调用 embed(query) 后交给 VectorRetrievalAdapter。
"""

from __future__ import annotations

import hashlib
import inspect
from typing import Any, Dict, List, Optional, Protocol

from llama_index.core.base.embeddings.base import BaseEmbedding

from doc_rag.backend.utils.errors import RetrievalUnavailable


class QueryEmbedder(Protocol):
    """embed(text) -> float[D]；失败必须抛 RetrievalUnavailable。"""

    async def embed(self, text: str) -> List[float]: ...


class HashEmbedding(BaseEmbedding):
    """
    [职责] 本地确定性 embedding（sha256 展开到 dim 维，取值 [-1, 1]）。
    [边界] 非语义向量，仅用于离线环境/测试；同一文本总得到同一向量。
    """

    def __init__(self, *, dim: int, model_name: str = "hash") -> None:
        super().__init__(model_name=model_name)
        self._dim = int(dim)

    def _hash_to_vec(self, text: str) -> List[float]:
        vals: List[float] = []
        seed = hashlib.sha256(text.encode("utf-8")).digest()
        while len(vals) < self._dim:
            for b in seed:
                vals.append((b / 255.0) * 2.0 - 1.0)
                if len(vals) >= self._dim:
                    break
            seed = hashlib.sha256(seed).digest()  # docstring: 扩展伪随机序列
        return vals

    def _get_query_embedding(self, query: str) -> List[float]:
        return self._hash_to_vec(query)

    async def _aget_query_embedding(self, query: str) -> List[float]:
        return self._hash_to_vec(query)

    def _get_text_embedding(self, text: str) -> List[float]:
        return self._hash_to_vec(text)

    async def _aget_text_embedding(self, text: str) -> List[float]:
        return self._hash_to_vec(text)


def _filter_kwargs(fn: Any, kwargs: Dict[str, Any]) -> Dict[str, Any]:
    """仅保留目标构造函数支持的关键字（各 provider 参数名不一致）。"""
    try:
        sig = inspect.signature(fn)
    except (TypeError, ValueError):
        return {}
    return {k: v for k, v in kwargs.items() if k in sig.parameters and v is not None}


def resolve_embedding(
    *,
    provider: str,
    model: str,
    dim: Optional[int],
    embed_config: Optional[Dict[str, Any]] = None,
) -> BaseEmbedding:
    """
    [职责] 根据 provider/model 构造 LlamaIndex BaseEmbedding 实例。
    [边界] 未知 provider 直接 ValueError（配置错误，启动期暴露）。
    """

    provider_key = str(provider).strip().lower()
    model_name = str(model).strip()
    cfg = dict(embed_config or {})

    if provider_key in {"hash", "local", "mock"}:
        embedding: Any = HashEmbedding(dim=int(dim or 128), model_name=model_name or "hash")
    elif provider_key == "ollama":
        from llama_index.embeddings.ollama import OllamaEmbedding  # type: ignore

        kwargs = {"model_name": model_name, **cfg}
        embedding = OllamaEmbedding(**_filter_kwargs(OllamaEmbedding.__init__, kwargs))
    elif provider_key == "openai":
        from llama_index.embeddings.openai import OpenAIEmbedding  # type: ignore

        kwargs = {"model": model_name, "dimensions": dim, **cfg}
        embedding = OpenAIEmbedding(**_filter_kwargs(OpenAIEmbedding.__init__, kwargs))
    elif provider_key in {"huggingface", "hf"}:
        from llama_index.embeddings.huggingface import HuggingFaceEmbedding  # type: ignore

        kwargs = {"model_name": model_name, **cfg}
        embedding = HuggingFaceEmbedding(**_filter_kwargs(HuggingFaceEmbedding.__init__, kwargs))
    else:
        raise ValueError(f"unsupported embed provider: {provider}")

    if not isinstance(embedding, BaseEmbedding):
        raise TypeError("embedding must be BaseEmbedding")
    return embedding


class LlamaIndexQueryEmbedder:
    """
    [职责] QueryEmbedder 实现：包装 BaseEmbedding.aget_query_embedding 并校验维度。
    [边界] 维度不一致/空向量/provider 异常均抛 RetrievalUnavailable（仅影响 vector 策略）。
    """

    def __init__(self, embedding: BaseEmbedding, *, dim: Optional[int] = None, provider: str = "") -> None:
        self._embedding = embedding
        self._dim = int(dim) if dim else None
        self._provider = provider

    @classmethod
    def from_settings(cls, *, provider: str, model: str, dim: Optional[int]) -> "LlamaIndexQueryEmbedder":
        return cls(resolve_embedding(provider=provider, model=model, dim=dim), dim=dim, provider=provider)

    async def embed(self, text: str) -> List[float]:
        try:
            vector = await self._embedding.aget_query_embedding(text)
        except Exception as exc:
            raise RetrievalUnavailable(
                message="query embedding failed",
                strategy="vector",
                reason="embed_error",
                detail={"provider": self._provider, "type": exc.__class__.__name__},
                cause=exc,
            ) from exc
        vec = [float(x) for x in vector or []]
        if not vec:
            raise RetrievalUnavailable(message="empty query embedding", strategy="vector", reason="embed_empty")
        if self._dim is not None and len(vec) != self._dim:
            raise RetrievalUnavailable(
                message=f"embedding dim mismatch: {len(vec)} != {self._dim}",
                strategy="vector",
                reason="dimension_mismatch",
            )
        return vec
