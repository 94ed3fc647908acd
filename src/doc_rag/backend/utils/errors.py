# src/doc_rag/backend/utils/errors.py

"""
[职责] 统一领域错误合同（error_code/message/detail/cause/http_status/retryable）与检索引擎错误分类。
[边界] 不依赖 FastAPI；不记录日志；仅表达错误语义与最小 HTTP 映射提示。
[上游关系] pipelines/services 抛出 DomainError 子类；strategy 层抛出 RetrievalUnavailable 由编排器吸收。
[下游关系] api/errors.py 将 DomainError 映射为 ErrorResponse；orchestrator 基于 error_kind 计数。
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional


ErrorDetail = Dict[str, Any]  # docstring: 错误细节类型（必须 JSON-safe）

ERROR_CODE_PATTERN_DOT = re.compile(r"^[a-z][a-z0-9]*(?:\.[a-z0-9_]+)+$")  # docstring: area.reason 规范

STANDARD_ERROR_CODES = {  # docstring: HTTP 层通用错误码集合
    "bad_request",
    "not_found",
    "internal_error",
}

ERROR_HTTP_STATUS_BY_CODE = {  # docstring: 错误码 -> HTTP status
    "bad_request": 400,
    "not_found": 404,
    "internal_error": 500,
    "search.invalid_config": 400,
    "retrieval.unavailable": 503,
    "retrieval.all_strategies_failed": 503,
    "cache.corruption": 500,
}

ERROR_RETRYABLE_BY_CODE = {  # docstring: 错误码 -> retryable 默认值
    "retrieval.unavailable": True,
    "retrieval.all_strategies_failed": True,
}

INTERNAL_ERROR_CODE = "internal_error"  # docstring: 未知异常统一错误码
INTERNAL_ERROR_MESSAGE = "internal error"  # docstring: 未知异常统一消息


def is_valid_error_code(error_code: str) -> bool:
    """
    [职责] 校验错误码是否为通用错误码或 area.reason 格式。
    [边界] 仅做格式校验，不保证全局唯一。
    """

    if not error_code:
        return False
    if error_code in STANDARD_ERROR_CODES:
        return True
    return bool(ERROR_CODE_PATTERN_DOT.match(error_code))


def ensure_json_safe_detail(detail: ErrorDetail) -> ErrorDetail:
    """Raise ValueError unless detail is a JSON-serializable dict."""
    if not isinstance(detail, dict):
        raise ValueError("detail must be a dict")
    try:
        json.dumps(detail)
    except TypeError as exc:
        raise ValueError("detail must be JSON-serializable") from exc
    return detail


class DomainError(Exception):
    """
    [职责] 领域错误最小合同：统一 error_code/message/detail/cause，并提供 http_status/retryable 提示。
    [边界] 仅表达语义，不承担日志、告警、HTTP 输出。
    [上游关系] services/pipelines 抛出本错误；必要时携带 cause。
    [下游关系] api/errors.py 根据本错误映射 HTTP status 与 ErrorResponse。
    """

    def __init__(
        self,
        *,
        error_code: str,
        message: str,
        detail: Optional[ErrorDetail] = None,
        cause: Optional[BaseException] = None,
        http_status: Optional[int] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        if not is_valid_error_code(error_code):
            raise ValueError(f"invalid error_code: {error_code}")  # docstring: 防止不规范错误码泄露
        normalized_detail = ensure_json_safe_detail(detail or {})

        super().__init__(message)
        self.error_code = error_code  # docstring: 稳定错误码
        self.message = message  # docstring: 用户可读错误信息
        self.detail = normalized_detail  # docstring: JSON-safe 细节
        self.cause = cause  # docstring: 上游异常引用
        self.http_status = (
            http_status if http_status is not None else ERROR_HTTP_STATUS_BY_CODE.get(error_code, 500)
        )  # docstring: HTTP 映射提示（优先显式值）
        self.retryable = (
            retryable if retryable is not None else ERROR_RETRYABLE_BY_CODE.get(error_code, False)
        )  # docstring: 可重试提示（优先显式值）

        if cause is not None:
            self.__cause__ = cause  # docstring: 保留异常链路

    def to_dict(self) -> Dict[str, Any]:
        """Return the ErrorResponse.error payload (without trace ids)."""
        return {
            "code": self.error_code,
            "message": self.message,
            "detail": self.detail,
        }


class InvalidConfigError(DomainError):
    """
    [职责] 检索配置非法（如 top_k <= 0、label filter 结构错误）。
    [边界] 必须在任何检索工作开始之前抛出；不重试。
    [上游关系] SearchService 校验 SearchConfig 时抛出。
    [下游关系] api/errors.py 映射为 400 + search.invalid_config。
    """

    def __init__(
        self,
        *,
        message: str = "invalid search config",
        detail: Optional[ErrorDetail] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(
            error_code="search.invalid_config",
            message=message,
            detail=detail,
            cause=cause,
            retryable=False,
        )


class RetrievalUnavailable(DomainError):
    """
    [职责] 单个检索策略的后端（向量索引/embedding/语料库）失败或不可用。
    [边界] 可恢复：由 orchestrator 吸收并排除该策略，不中断请求。
    [上游关系] vector adapter / embed / corpus store 将底层异常统一映射为本错误。
    [下游关系] orchestrator 记录 StrategyFailed(reason, error_kind)。
    """

    def __init__(
        self,
        *,
        message: str = "retrieval backend unavailable",
        strategy: Optional[str] = None,
        reason: str = "unavailable",
        detail: Optional[ErrorDetail] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        merged = dict(detail or {})
        merged.setdefault("reason", reason)
        if strategy:
            merged.setdefault("strategy", strategy)
        super().__init__(
            error_code="retrieval.unavailable",
            message=message,
            detail=merged,
            cause=cause,
        )
        self.strategy = strategy  # docstring: 出错策略名（可选）
        self.reason = reason  # docstring: 机器可读原因（dimension_mismatch/index_error/embed_error 等）


class AllStrategiesFailedError(DomainError):
    """
    [职责] 所有检索策略均失败/超时：对调用方表达“暂无可用结果”，区别于系统内部错误。
    [边界] 503 + retryable；detail 携带每个策略的状态摘要。
    """

    def __init__(
        self,
        *,
        message: str = "no results available: all retrieval strategies failed",
        detail: Optional[ErrorDetail] = None,
    ) -> None:
        super().__init__(
            error_code="retrieval.all_strategies_failed",
            message=message,
            detail=detail,
        )


class CacheCorruptionError(DomainError):
    """缓存值未通过结构校验；ResultCache 内部捕获并视为 miss。"""

    def __init__(self, *, message: str = "cache entry failed validation", detail: Optional[ErrorDetail] = None) -> None:
        super().__init__(error_code="cache.corruption", message=message, detail=detail)


def error_kind(exc: BaseException) -> str:
    """
    [职责] 将异常归一为可计数的 error_kind（DomainError 用 error_code，其它用类名）。
    [边界] 不吞异常；仅用于观测计数键。
    """

    if isinstance(exc, DomainError):
        return exc.error_code
    return exc.__class__.__name__


def to_http_error(exc: BaseException) -> DomainError:
    """Map any exception to a DomainError; unknown errors become internal_error."""
    if isinstance(exc, DomainError):
        return exc
    return DomainError(
        error_code=INTERNAL_ERROR_CODE,
        message=INTERNAL_ERROR_MESSAGE,
        detail={"type": exc.__class__.__name__},
        cause=exc,
        http_status=500,
        retryable=False,
    )
