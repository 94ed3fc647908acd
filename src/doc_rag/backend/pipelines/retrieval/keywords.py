# src/doc_rag/backend/pipelines/retrieval/keywords.py

"""
[职责] Keyword Extractor：将原始 query 转为有序关键词列表（复合词优先、单 token 兜底在后）。
[边界] 不访问 DB/索引；分词器可插拔（默认 janome 形态素解析，按品词保留内容词；失败时退回文字脚本切分）；永不抛异常。
[上游关系] pipeline 在编排检索策略前调用 aextract(query)。
[下游关系] lexical/title 策略使用 keywords；scoring 使用 keywords 计算标题/标签信号。
"""

from __future__ import annotations

import json
import logging
import re
import time
import unicodedata
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Protocol, Sequence, Tuple

from janome.tokenizer import Tokenizer

from doc_rag.backend.utils.constants import KEYWORD_SOURCE_MODEL, KEYWORD_SOURCE_RULE
from doc_rag.backend.utils.logging_ import get_logger, log_event, truncate_text


logger = get_logger("retrieval.keywords")

DEFAULT_MAX_KEYWORDS = 12  # docstring: 关键词上限，避免下游 LIKE/BM25 扇出

# docstring: 日文虚词/疑问表达 + 常见英文虚词（词法分词器之外的兜底过滤）。
JA_STOPWORDS = frozenset(
    {
        "の", "は", "が", "を", "に", "で", "と", "や", "から", "まで", "より", "へ", "も", "な", "だ",
        "です", "ます", "ください", "教えて", "件", "ですか", "とは", "こと", "もの", "ため", "など",
        "これ", "それ", "あれ", "どれ", "について", "における", "に関して", "関する", "について教えて",
        "何", "なに", "どう", "どの", "どこ", "いつ", "なぜ", "ありますか", "できますか", "したい",
        "知りたい", "したら", "する", "される", "ある", "いる", "なる", "よう",
    }
)
# docstring: 不作为关键词的动词原形（询问/请求用法）。
JA_STOP_VERBS = frozenset(
    {"する", "ある", "いる", "なる", "できる", "教える", "知る", "思う", "いう", "言う", "わかる", "分かる", "いただく", "くださる"}
)
EN_STOPWORDS = frozenset(
    {
        "a", "an", "the", "and", "or", "of", "to", "for", "in", "on", "at", "by", "with", "from", "as",
        "is", "are", "was", "were", "be", "this", "that", "these", "those", "it", "its", "about",
        "what", "how", "why", "when", "where", "which", "who", "do", "does", "can", "please", "tell", "me",
    }
)
STOPWORDS = JA_STOPWORDS | EN_STOPWORDS

# docstring: 机能性后缀（复合词 + 后缀 在词表中存在时展开）。
FUNCTIONAL_SUFFIXES: Tuple[str, ...] = ("機能", "管理", "一覧", "登録", "編集", "詳細", "設定", "画面")

_CONTENT_SCRIPTS = frozenset({"han", "katakana", "latin", "other"})
_NEAR_DUP_STRIP_RE = re.compile(r"[\s\-_・/]+")


@dataclass(frozen=True)
class Segment:
    text: str
    script: str  # docstring: han/hiragana/katakana/latin/other
    start: int  # docstring: 在规范化文本中的起始 offset
    kind: str = ""  # docstring: noun/verb（词法分词器给出）；脚本切分为空
    pos: str = ""  # docstring: 原始品词标签


class Segmenter(Protocol):
    """可插拔分词器：segment(text) -> 有序 Segment 列表。"""

    name: str

    def segment(self, text: str) -> List[Segment]: ...


class KeywordAssistant(Protocol):
    """模型辅助扩展（同义词/表记揺れ）；异步调用，失败时由 extractor 降级为规则版。"""

    async def expand(self, query: str, keywords: Sequence[str]) -> Sequence[str]: ...


def _char_script(ch: str) -> Optional[str]:
    code = ord(ch)
    if ch == "・":
        return None  # docstring: 中点为分隔符（片假名区块内）
    if 0x3040 <= code <= 0x309F:
        return "hiragana"
    if 0x30A0 <= code <= 0x30FF or 0x31F0 <= code <= 0x31FF:
        return "katakana"
    if 0x4E00 <= code <= 0x9FFF or 0x3400 <= code <= 0x4DBF or ch in "々〆":
        return "han"
    if not ch.isalnum():
        return None
    if ch.isascii() or unicodedata.name(ch, "").startswith("LATIN"):
        return "latin"
    return "other"


def _text_script(text: str) -> str:
    scripts = {s for s in (_char_script(ch) for ch in text) if s is not None}
    return scripts.pop() if len(scripts) == 1 else "other"


@lru_cache(maxsize=1)
def _janome_tokenizer() -> Tokenizer:
    return Tokenizer()  # docstring: 系统词典（IPADIC）加载较慢，进程内共享一份


class JanomeSegmenter:
    """
    [职责] 默认分词器：janome 形态素解析，按品词只保留内容词。
    [边界] 名词（含接头词/接尾）作为复合词部件；自立动词取汉字词干（振り替え -> 振替）；
           助词/助动词/副词/形容词/记号与代名词、非自立名词一律丢弃。
    """

    name = "janome"

    def __init__(self, tokenizer: Optional[Tokenizer] = None) -> None:
        self._tokenizer = tokenizer

    def segment(self, text: str) -> List[Segment]:
        tokenizer = self._tokenizer or _janome_tokenizer()
        segments: List[Segment] = []
        offset = 0
        prev_noun = False
        prev_verb = False
        for token in tokenizer.tokenize(text):
            surface = token.surface
            start = offset
            offset += len(surface)
            pos = token.part_of_speech.split(",")
            major, minor = pos[0], (pos[1] if len(pos) > 1 else "*")

            if major == "名詞" and minor not in ("非自立", "代名詞", "特殊") and (minor != "接尾" or prev_noun):
                kind = "noun"
            elif major == "接頭詞" and minor == "名詞接続":
                kind = "noun"
            elif major == "動詞" and minor == "自立" and token.base_form not in JA_STOP_VERBS:
                kind = "verb"
            elif surface.isalnum() and _text_script(surface) == "latin":
                kind = "noun"  # docstring: 未登录的英数词（API 名、画面 ID 等）
            else:
                prev_noun = prev_verb = False
                continue

            if kind == "verb":
                stem = "".join(ch for ch in surface if _char_script(ch) == "han")
                if prev_verb and segments and segments[-1].kind == "verb":
                    last = segments.pop()  # docstring: 复合动词（振り+替え）合并词干
                    segments.append(Segment(text=last.text + stem, script="han", start=last.start, kind=kind, pos=last.pos))
                elif stem:
                    segments.append(Segment(text=stem, script="han", start=start, kind=kind, pos=token.part_of_speech))
                prev_noun, prev_verb = False, bool(stem) or prev_verb
                continue

            prev_noun, prev_verb = True, False
            segments.append(
                Segment(text=surface, script=_text_script(surface), start=start, kind=kind, pos=token.part_of_speech)
            )
        return segments


class ScriptRunSegmenter:
    """
    [职责] 兜底分词器：按文字脚本（汉字/平假名/片假名/拉丁数字）切分连续片段。
    [边界] 无词典；平假名片段作为助词/送假名候选由上层过滤；标点与空白为硬边界。
    """

    name = "script_run"

    def segment(self, text: str) -> List[Segment]:
        segments: List[Segment] = []
        buf: List[str] = []
        cur_script: Optional[str] = None
        start = 0
        for i, ch in enumerate(text):
            script = _char_script(ch)
            if script != cur_script or script is None:
                if buf and cur_script is not None:
                    segments.append(Segment(text="".join(buf), script=cur_script, start=start))
                buf = []
                cur_script = script
                start = i
            if script is not None:
                buf.append(ch)
        if buf and cur_script is not None:
            segments.append(Segment(text="".join(buf), script=cur_script, start=start))
        return segments


@dataclass(frozen=True)
class DomainVocabulary:
    """
    [职责] 语料领域词表（规范化后的术语集合），用于复合词展开与部件识别。
    [边界] 只读快照；由调用方在进程启动时构造（文件或语料标题）。
    """

    terms: FrozenSet[str] = frozenset()

    @classmethod
    def from_terms(cls, terms: Iterable[str]) -> "DomainVocabulary":
        return cls(terms=frozenset(t for t in (normalize_text(x) for x in terms) if len(t) >= 2))

    @classmethod
    def from_keyword_lists(cls, path: str | Path) -> "DomainVocabulary":
        """
        读取关键词表 JSON：{"categories": [{"category": ..., "keywords": [...]}, ...]} 或纯字符串数组。
        """
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if isinstance(data, list):
            return cls.from_terms(str(x) for x in data)
        terms: List[str] = []
        for block in data.get("categories", []):
            terms.extend(str(x) for x in block.get("keywords", []))
        return cls.from_terms(terms)

    def __contains__(self, term: object) -> bool:
        return isinstance(term, str) and term in self.terms

    def parts_of(self, compound: str) -> List[str]:
        """返回词表中作为 compound 真子串出现的术语（按出现位置）。"""
        found = [t for t in self.terms if t != compound and t in compound]
        return sorted(found, key=lambda t: (compound.find(t), -len(t), t))


@dataclass(frozen=True)
class KeywordExtraction:
    keywords: Tuple[str, ...]
    source: str  # docstring: rule_based / model_assisted
    processing_time_ms: int
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def high_priority(self) -> Tuple[str, ...]:
        return self.keywords[:3]


@dataclass(frozen=True)
class _Term:
    text: str
    tier: int  # docstring: 0=复合词/展开词；1=部件/单 token
    pos: int


def normalize_text(text: str) -> str:
    """NFKC（全角→半角）+ 小写；日文不受 lower 影响。"""
    return unicodedata.normalize("NFKC", text or "").lower().strip()


def near_duplicate_key(term: str) -> str:
    return _NEAR_DUP_STRIP_RE.sub("", unicodedata.normalize("NFKC", term).casefold())


def _is_useful(term: str) -> bool:
    if len(term) < 2 or term in STOPWORDS:
        return False
    return not term.isdigit()


class KeywordExtractor:
    """
    [职责] 关键词抽取：形态素分词 → 品词/停用词过滤 → 复合词展开 → 近重复去除 → 长词优先排序；可选模型辅助扩展。
    [边界] 永不抛异常：分词失败时降级为文字脚本切分，assistant 失败/超时时保留规则版结果，并在 meta 标记 warning。
    [上游关系] SearchService 构造一次并在请求间复用（无可变状态）。
    [下游关系] pipeline.run_search_pipeline（aextract）。
    """

    def __init__(
        self,
        *,
        vocabulary: Optional[DomainVocabulary] = None,
        segmenter: Optional[Segmenter] = None,
        assistant: Optional[KeywordAssistant] = None,
        max_keywords: int = DEFAULT_MAX_KEYWORDS,
        suffixes: Sequence[str] = FUNCTIONAL_SUFFIXES,
    ) -> None:
        self._vocabulary = vocabulary or DomainVocabulary()
        self._segmenter: Segmenter = segmenter or JanomeSegmenter()
        self._fallback = ScriptRunSegmenter()
        self._assistant = assistant
        self._max_keywords = max(int(max_keywords), 1)
        self._suffixes = tuple(suffixes)

    def extract(self, query: str) -> KeywordExtraction:
        """规则版抽取（同步；不调用 assistant）。"""
        started = time.perf_counter()
        text = normalize_text(query)
        meta: Dict[str, Any] = {"segmenter": getattr(self._segmenter, "name", type(self._segmenter).__name__)}
        terms = self._segment_terms(query, text, meta)
        return self._build(terms, KEYWORD_SOURCE_RULE, meta, started)

    async def aextract(self, query: str) -> KeywordExtraction:
        """规则版抽取 + assistant 扩展（assistant 自带超时）。"""
        started = time.perf_counter()
        text = normalize_text(query)
        meta: Dict[str, Any] = {"segmenter": getattr(self._segmenter, "name", type(self._segmenter).__name__)}
        terms = self._segment_terms(query, text, meta)

        source = KEYWORD_SOURCE_RULE
        if self._assistant is not None and terms:
            try:
                assisted = await self._assistant.expand(text, [t.text for t in terms])
            except Exception as exc:
                meta["warning"] = meta.get("warning") or "assistant_failed"
                meta["assistant_error"] = f"{exc.__class__.__name__}: {exc}"
                log_event(
                    logger,
                    logging.WARNING,
                    "keyword assistant failed, using rule-based keywords",
                    fields={"query_preview": truncate_text(query), "error": meta["assistant_error"]},
                )
            else:
                extra = [t for t in (normalize_text(a) for a in assisted or ()) if t]
                if extra:
                    base = len(text)
                    terms.extend(_Term(t, 1, base + i) for i, t in enumerate(extra))
                    meta["assisted"] = extra
                    source = KEYWORD_SOURCE_MODEL

        return self._build(terms, source, meta, started)

    def _segment_terms(self, query: str, text: str, meta: Dict[str, Any]) -> List[_Term]:
        try:
            return self._rule_terms(self._segmenter.segment(text), meta)
        except Exception as exc:  # segmenter is pluggable; any failure degrades
            meta["warning"] = "segmentation_failed"
            meta["error"] = f"{exc.__class__.__name__}: {exc}"
            meta["fallback"] = self._fallback.name
            log_event(
                logger,
                logging.WARNING,
                "keyword segmentation failed, using script-run split",
                fields={"query_preview": truncate_text(query), "error": meta["error"]},
            )
            return self._rule_terms(self._fallback.segment(text), meta)

    def _build(self, terms: List[_Term], source: str, meta: Dict[str, Any], started: float) -> KeywordExtraction:
        keywords = self._finalize(terms)
        meta["high_priority"] = list(keywords[:3])
        return KeywordExtraction(
            keywords=keywords,
            source=source,
            processing_time_ms=int((time.perf_counter() - started) * 1000),
            meta=meta,
        )

    # --- rule-based path ---

    def _rule_terms(self, segments: Sequence[Segment], meta: Dict[str, Any]) -> List[_Term]:
        terms: List[_Term] = []
        expanded: List[str] = []

        for group in _compound_groups(segments):
            compound = "".join(s.text for s in group)
            pos = group[0].start
            if group[0].script == "hiragana" and not group[0].kind:
                if len(compound) >= 3 and compound not in STOPWORDS:
                    terms.append(_Term(compound, 1, pos))  # docstring: 脚本切分下平假名片段（多为助词）仅保留较长者
                continue

            terms.append(_Term(compound, 0, pos))
            for suffix in self._suffixes:
                if not compound.endswith(suffix) and compound + suffix in self._vocabulary:
                    terms.append(_Term(compound + suffix, 0, pos))
                    expanded.append(compound + suffix)
            for part in self._parts(compound, group):
                terms.append(_Term(part, 1, pos + max(compound.find(part), 0)))

        if expanded:
            meta["expanded"] = expanded
        return terms

    def _parts(self, compound: str, group: Sequence[Segment]) -> List[str]:
        parts: List[str] = []
        if len(group) > 1:
            parts.extend(s.text for s in group)  # docstring: 跨脚本复合词（如 教室+コピー）的各脚本片段
        for suffix in self._suffixes:
            stem = compound[: -len(suffix)]
            if compound.endswith(suffix) and len(stem) >= 2:
                parts.append(stem)
                break
        vocab_parts = self._vocabulary.parts_of(compound)
        parts.extend(vocab_parts)
        if not vocab_parts:
            for piece in [compound] + parts:
                if len(piece) == 4 and all(_char_script(c) == "han" for c in piece):
                    parts.extend((piece[:2], piece[2:]))  # docstring: 四字熟语按 2+2 拆分
        return [p for p in parts if p != compound]

    def _finalize(self, terms: List[_Term]) -> Tuple[str, ...]:
        ordered = sorted(
            (t for t in terms if _is_useful(t.text)),
            key=lambda t: (t.tier, -len(t.text), t.pos, t.text),
        )
        seen = set()
        out: List[str] = []
        for term in ordered:
            key = near_duplicate_key(term.text)
            if key in seen:
                continue
            seen.add(key)
            out.append(term.text)
            if len(out) >= self._max_keywords:
                break
        return tuple(out)


def _compound_groups(segments: Sequence[Segment]) -> List[List[Segment]]:
    """相邻（无间隔）的内容片段合并为一个复合词；平假名片段与动词词干单独成组。"""
    groups: List[List[Segment]] = []
    for seg in segments:
        prev = groups[-1][-1] if groups else None
        if (
            prev is not None
            and seg.script in _CONTENT_SCRIPTS
            and prev.script in _CONTENT_SCRIPTS
            and "verb" not in (prev.kind, seg.kind)
            and prev.start + len(prev.text) == seg.start
        ):
            groups[-1].append(seg)
        else:
            groups.append([seg])
    return groups
