# src/doc_rag/backend/pipelines/retrieval/keyword_llm.py

"""
[职责] 模型辅助关键词扩展：基于 LlamaIndex LLM（acomplete）为 query 补充系统功能名/表记揺れ关键词。
[边界] 只返回新增词（去除基础关键词、停用词与近重复），最多 max_terms 个；调用自带超时，超时/异常向上抛出。
[上游关系] build_search_service 按 Settings 的 provider/model 构造；KeywordExtractor.aextract 调用 expand。
[下游关系] 扩展词以低优先级追加到关键词列表，source 标记为 model_assisted。
"""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any, Dict, List, Optional, Sequence

from llama_index.core.llms import LLM
from llama_index.core.llms.mock import MockLLM

from .embed import _filter_kwargs
from .keywords import STOPWORDS, near_duplicate_key, normalize_text


DEFAULT_MAX_TERMS = 8  # docstring: 扩展词上限
_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")

PROMPT_TEMPLATE = "\n".join(
    [
        "あなたは社内ドキュメント検索のためのキーワード抽出補助を行います。",
        "以下の質問文に対し、実際のシステム機能名に基づいた具体的なキーワードを最大10件、JSON配列で返してください。",
        "汎用的すぎるキーワードは避け、実際の機能名（一覧、登録、編集、削除、コピーなど）を優先してください。",
        "抽出済みのキーワードは繰り返さないでください。",
        "出力はJSON配列のみ。",
        "質問文: {query}",
        "抽出済みキーワード: {keywords}",
    ]
)


def resolve_llm(*, provider: str, model: str, llm_config: Optional[Dict[str, Any]] = None) -> LLM:
    """
    [职责] 根据 provider/model 构造 LlamaIndex LLM 实例。
    [边界] 未知 provider 直接 ValueError；mock 为回显 prompt 的 MockLLM（离线/测试）。
    """
    provider_key = str(provider).strip().lower()
    model_name = str(model).strip()
    cfg = dict(llm_config or {})

    if provider_key in {"mock", "local"}:
        llm: Any = MockLLM()
    elif provider_key == "ollama":
        from llama_index.llms.ollama import Ollama  # type: ignore

        kwargs = {"model": model_name, **cfg}
        llm = Ollama(**_filter_kwargs(Ollama.__init__, kwargs))
    elif provider_key == "openai":
        from llama_index.llms.openai import OpenAI  # type: ignore

        kwargs = {"model": model_name or None, **cfg}
        llm = OpenAI(**_filter_kwargs(OpenAI.__init__, kwargs))
    else:
        raise ValueError(f"unsupported keyword llm provider: {provider}")

    if not isinstance(llm, LLM):
        raise TypeError("llm must be llama_index LLM")
    return llm


def parse_keyword_list(text: str, base_keywords: Sequence[str], *, max_terms: int = DEFAULT_MAX_TERMS) -> List[str]:
    """
    从模型输出中取 JSON 数组并清洗：规范化、去停用词/短词、去除与基础关键词近重复者。
    无数组时返回空列表；数组不是合法 JSON 时抛 ValueError。
    """
    match = _JSON_ARRAY_RE.search(text or "")
    if match is None:
        return []
    data = json.loads(match.group(0))
    if not isinstance(data, list):
        return []

    seen = {near_duplicate_key(k) for k in base_keywords}
    out: List[str] = []
    for item in data:
        term = normalize_text(str(item or ""))
        key = near_duplicate_key(term)
        if len(term) < 2 or term in STOPWORDS or key in seen:
            continue
        seen.add(key)
        out.append(term)
        if len(out) >= max_terms:
            break
    return out


class LlamaIndexKeywordAssistant:
    """
    [职责] KeywordAssistant 实现：prompt -> LLM.acomplete -> JSON 数组 -> 新增关键词。
    [边界] 每次调用受 timeout_s 约束（asyncio.wait_for）；不缓存模型输出。
    """

    def __init__(self, llm: LLM, *, timeout_s: float = 1.5, max_terms: int = DEFAULT_MAX_TERMS) -> None:
        if timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")
        self._llm = llm
        self.timeout_s = float(timeout_s)
        self._max_terms = max(int(max_terms), 1)

    @classmethod
    def from_settings(
        cls,
        *,
        provider: str,
        model: str,
        timeout_s: float,
        max_terms: int = DEFAULT_MAX_TERMS,
    ) -> "LlamaIndexKeywordAssistant":
        return cls(resolve_llm(provider=provider, model=model), timeout_s=timeout_s, max_terms=max_terms)

    async def expand(self, query: str, keywords: Sequence[str]) -> List[str]:
        prompt = PROMPT_TEMPLATE.format(query=query, keywords="、".join(keywords) or "なし")
        response = await asyncio.wait_for(self._llm.acomplete(prompt), timeout=self.timeout_s)
        return parse_keyword_list(getattr(response, "text", "") or "", keywords, max_terms=self._max_terms)
