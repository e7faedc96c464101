"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层统一捕获并转换为带机器可读 kind 的错误响应。

层次：
- ProviderError: 单次 Provider 调用失败（仅在编排器内部流转）。
- AllProvidersFailedError: 编排器尝试完所有 Provider 后的终态失败。
- StoreError: 会话存储读写失败。
- TurnError: 一次对话轮次对调用方暴露的错误。
"""

from typing import Any, Dict, List, Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_UNAVAILABLE"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、provider 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


# ---- Provider 调用错误 ----


class ProviderError(BusinessError):
    """单次 Provider 调用失败。

    transient=True 的错误（超时、限流、不可用）允许在同一 Provider 上重试；
    其余错误直接切换到下一个 Provider。
    """

    kind = "error"
    default_code = "PROVIDER_ERROR"
    transient = False

    def __init__(
        self,
        message: str,
        provider_id: Optional[str] = None,
        retry_after: Optional[float] = None,
        http_status: int = 502,
        code: Optional[str] = None,
        **extra,
    ):
        super().__init__(code=code or self.default_code, message=message, http_status=http_status, **extra)
        self.provider_id = provider_id
        # 仅限流错误使用：Provider 建议的等待秒数
        self.retry_after = retry_after

    def describe(self) -> Dict[str, Any]:
        return {"kind": self.kind, "code": self.code, "message": self.message}


class UnauthorizedError(ProviderError):
    """凭证缺失或被 Provider 拒绝。"""

    kind = "unauthorized"
    default_code = "UNAUTHORIZED"


class RateLimitError(ProviderError):
    """Provider 限流错误，由编排器负责延迟后重试。"""

    kind = "rate_limited"
    default_code = "RATE_LIMITED"
    transient = True


class InvalidResponseError(ProviderError):
    """响应体格式错误或生成文本为空。"""

    kind = "invalid_response"
    default_code = "INVALID_RESPONSE"


class ProviderUnavailableError(ProviderError):
    """网络层错误或 Provider 服务端不可用（连接失败、5xx、模型加载中）。"""

    kind = "unavailable"
    default_code = "UNAVAILABLE"
    transient = True


class ProviderTimeoutError(ProviderError):
    """单次调用超过 timeout_ms。"""

    kind = "timeout"
    default_code = "TIMEOUT"
    transient = True


class AllProvidersFailedError(BusinessError):
    """所有已配置 Provider 都耗尽了重试次数。

    failures 记录每个 Provider 的最后一次错误，attempts 为完整尝试日志。
    """

    def __init__(self, failures: Dict[str, ProviderError], attempts: Optional[List[Any]] = None):
        if failures:
            summary = ", ".join(f"{pid}: {err.kind}" for pid, err in failures.items())
        else:
            summary = "no providers configured"
        super().__init__(
            code="ALL_PROVIDERS_FAILED",
            message=f"All providers failed ({summary})",
            http_status=503,
        )
        self.failures = dict(failures)
        self.attempts = list(attempts or [])


# ---- 存储错误 ----


class StoreError(BusinessError):
    """会话存储错误基类。"""


class StoreUnavailableError(StoreError):
    def __init__(self, message: str, **extra):
        super().__init__(code="STORE_UNAVAILABLE", message=message, http_status=503, **extra)


class StoreInvalidError(StoreError):
    def __init__(self, message: str, **extra):
        super().__init__(code="STORE_INVALID", message=message, http_status=500, **extra)


# ---- 对话轮次错误（对调用方可见） ----


class TurnError(BusinessError):
    """对话轮次错误基类，kind 为调用方可依赖的机器可读类型。"""

    kind = "turn_error"

    def details(self) -> Dict[str, Any]:
        return dict(self.extra)


class InvalidInputError(TurnError):
    kind = "invalid_input"

    def __init__(self, message: str, **extra):
        super().__init__(code="INVALID_INPUT", message=message, http_status=400, **extra)


class StoreFailureError(TurnError):
    kind = "store_failure"

    def __init__(self, message: str, **extra):
        super().__init__(code="STORE_FAILURE", message=message, http_status=500, **extra)


class NoProviderAvailableError(TurnError):
    """降级响应：用户消息已保存，但没有 Provider 给出回复。"""

    kind = "no_provider_available"

    def __init__(self, message: str, failures: Dict[str, ProviderError], **extra):
        super().__init__(code="NO_PROVIDER_AVAILABLE", message=message, http_status=503, **extra)
        self.failures = dict(failures)

    def details(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data["providers"] = {pid: err.describe() for pid, err in self.failures.items()}
        return data


class TurnCancelledError(TurnError):
    """调用方断开或整轮超时，不会持久化 AI 消息。"""

    kind = "cancelled"

    def __init__(self, message: str = "Turn cancelled", **extra):
        super().__init__(code="CANCELLED", message=message, http_status=499, **extra)
