# src/doc_rag/backend/utils/logging_.py

"""
[职责] 结构化日志：JSON formatter、统一 logger 获取、log_event 与安全文本 helper（截断/摘要）。
[边界] 不绑定日志后端；不记录原始 query 全文（调用方使用 truncate_text/hash_text）。
[上游关系] services/pipelines/api 通过 get_logger/log_event 输出检索过程事件。
[下游关系] 日志收集系统按 trace_id/strategy/error_kind 字段聚合降级次数。
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from .constants import TRACE_FIELD_KEYS


DEFAULT_LOGGER_NAME = "doc_rag"  # docstring: 统一 logger 根名称
DEFAULT_LOG_LEVEL = logging.INFO
DEFAULT_MAX_TEXT_LEN = 120  # docstring: query 预览长度

_HANDLER_NAME = "doc_rag_json"

_LOG_RECORD_RESERVED = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys() | {"message", "asctime", "taskName"}
)  # docstring: LogRecord 内置字段（不作为结构化额外字段）


class StructuredLogFormatter(logging.Formatter):
    """LogRecord -> 单行 JSON（基础字段 + extra 字段）。"""

    def __init__(self, *, ensure_ascii: bool = False) -> None:
        super().__init__()
        self._ensure_ascii = ensure_ascii  # docstring: 默认保留日文原文，便于排障

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _LOG_RECORD_RESERVED or value is None:
                continue
            payload[key] = value  # docstring: 合并 extra 字段（去除 None）

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=self._ensure_ascii, default=str)


def configure_logging(
    *,
    logger_name: str = DEFAULT_LOGGER_NAME,
    level: int = DEFAULT_LOG_LEVEL,
    json_output: bool = True,
) -> logging.Logger:
    """
    [职责] 配置项目根 logger（JSON 或纯文本 handler），幂等。
    [边界] 不触碰 root logger。
    [上游关系] 进程入口（create_app/脚本）或测试初始化时调用。
    """

    logger = logging.getLogger(logger_name)
    logger.setLevel(level)

    if not any(getattr(h, "name", "") == _HANDLER_NAME for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.name = _HANDLER_NAME  # docstring: 标记 handler，避免重复挂载
        if json_output:
            handler.setFormatter(StructuredLogFormatter())
        else:
            handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        logger.addHandler(handler)

    logger.propagate = False
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger mounted under the ``doc_rag`` root (configured on first use)."""
    root = logging.getLogger(DEFAULT_LOGGER_NAME)
    if not any(getattr(h, "name", "") == _HANDLER_NAME for h in root.handlers):
        configure_logging()
    if not name:
        return logging.getLogger(DEFAULT_LOGGER_NAME)
    if name == DEFAULT_LOGGER_NAME or name.startswith(DEFAULT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{DEFAULT_LOGGER_NAME}.{name}")


def build_log_fields(
    *,
    context: Optional[Any] = None,
    extra: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """
    [职责] 从上下文对象/映射提取 trace 字段，并合并调用方扩展字段。
    [边界] 不生成缺失 trace_id；None 值被丢弃。
    """

    fields: Dict[str, Any] = {}
    if context is not None:
        for key in TRACE_FIELD_KEYS:
            if isinstance(context, Mapping):
                value = context.get(key)
            else:
                value = getattr(context, key, None)
            if value is not None:
                fields[key] = str(value)
    for key, value in (extra or {}).items():
        if value is not None:
            fields[key] = value
    return fields


def log_event(
    logger: logging.Logger,
    level: int,
    message: str,
    *,
    context: Optional[Any] = None,
    fields: Optional[Mapping[str, Any]] = None,
    exc_info: Optional[Any] = None,
) -> None:
    """统一结构化日志入口。"""
    logger.log(level, message, extra=build_log_fields(context=context, extra=fields), exc_info=exc_info)


def truncate_text(text: Optional[str], *, max_len: int = DEFAULT_MAX_TEXT_LEN) -> Optional[str]:
    """截断长文本，避免日志记录 query/正文全文。"""
    if text is None:
        return None
    s = str(text)
    if len(s) <= max_len:
        return s
    return f"{s[:max_len]}...(truncated)"


def hash_text(text: Optional[str]) -> Optional[str]:
    """sha256 摘要（日志中用于定位同一 query，不作安全用途）。"""
    if text is None:
        return None
    return hashlib.sha256(str(text).encode("utf-8")).hexdigest()
