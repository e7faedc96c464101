"""Provider 抽象接口。

编排器不直接依赖具体厂商的 HTTP 格式，而是依赖此协议：

- 每个 Provider 家族实现一个 ProviderClient（chat/completions 或 text-generation）。
- 负责：把 prompt + GenerationContext 转成具体 API 请求，把响应解析为纯文本，
  并把各种失败归类为 domain.exceptions 中的 ProviderError 子类。

客户端本身无状态，所有厂商差异（地址、模型、凭证、超时）都来自 ProviderConfig。
"""

import json
import time
from typing import Dict, Optional, Protocol

import httpx

from companion_core.domain.exceptions import (
    InvalidResponseError,
    ProviderError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitError,
    UnauthorizedError,
)
from companion_core.domain.models import GenerationContext
from companion_core.providers.registry import ProviderConfig, ProviderFamily


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    - family: Provider 家族（"chat" / "prompt"）。
    - generate(config, prompt, context): 返回去除首尾空白后的回复文本，
      失败时抛出 ProviderError。
    """

    family: ProviderFamily

    def generate(self, config: ProviderConfig, prompt: str, context: Optional[GenerationContext] = None) -> str:
        ...


def auth_headers(config: ProviderConfig) -> Dict[str, str]:
    """构造认证与附加请求头；凭证缺失时直接判定为 Unauthorized。"""

    headers = {"Content-Type": "application/json"}
    if config.auth_mode == "bearer":
        if not config.api_key:
            raise UnauthorizedError("API key not configured", provider_id=config.provider_id)
        headers["Authorization"] = f"Bearer {config.api_key}"
    headers.update(config.extra_headers)
    return headers


def _retry_after(resp: httpx.Response) -> Optional[float]:
    value = resp.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def classify_status(resp: httpx.Response, config: ProviderConfig, body: str = "") -> Optional[ProviderError]:
    """把非 2xx 响应映射为 ProviderError，2xx 返回 None。"""

    status = resp.status_code
    if status < 400:
        return None
    pid = config.provider_id
    body = body[:500]
    if status in (401, 403):
        return UnauthorizedError(f"HTTP {status}: {body}", provider_id=pid)
    if status == 429:
        return RateLimitError(f"HTTP 429: {body}", provider_id=pid, retry_after=_retry_after(resp))
    if status in (408, 504):
        return ProviderTimeoutError(f"HTTP {status}: {body}", provider_id=pid)
    if status >= 500:
        return ProviderUnavailableError(f"HTTP {status}: {body}", provider_id=pid)
    return InvalidResponseError(f"HTTP {status}: {body}", provider_id=pid)


def post_json(config: ProviderConfig, url: str, payload: dict) -> object:
    """发送一次 POST 请求并返回解析后的 JSON，所有失败统一转换为 ProviderError。

    httpx 的 timeout 只约束单个阶段（连接、每次读取），这里以流式读取响应体，
    并在建立连接后与每个数据块之后检查整体截止时间。总耗时不超过
    timeout_ms 再加上一次被阻塞的 socket 操作（该操作本身也受 timeout_ms 约束）。
    """

    headers = auth_headers(config)
    timeout = config.timeout_ms / 1000.0
    deadline = time.monotonic() + timeout
    chunks = []
    try:
        with httpx.Client(timeout=timeout, trust_env=False) as client:
            with client.stream("POST", url, json=payload, headers=headers) as resp:
                _check_deadline(deadline, config)
                for chunk in resp.iter_bytes():
                    chunks.append(chunk)
                    _check_deadline(deadline, config)
    except httpx.TimeoutException as e:
        raise ProviderTimeoutError(f"Timed out after {config.timeout_ms}ms: {e}", provider_id=config.provider_id)
    except httpx.RequestError as e:
        # 网络错误：DNS 失败、连接被拒绝等
        raise ProviderUnavailableError(str(e) or type(e).__name__, provider_id=config.provider_id)
    body = b"".join(chunks).decode("utf-8", errors="replace")
    error = classify_status(resp, config, body)
    if error is not None:
        raise error
    try:
        return json.loads(body)
    except ValueError:
        raise InvalidResponseError("Response body is not valid JSON", provider_id=config.provider_id)


def _check_deadline(deadline: float, config: ProviderConfig) -> None:
    if time.monotonic() >= deadline:
        raise ProviderTimeoutError(f"Timed out after {config.timeout_ms}ms", provider_id=config.provider_id)


def clean_text(text: object, config: ProviderConfig) -> str:
    """去除首尾空白；非字符串或空文本视为 InvalidResponse。"""

    if not isinstance(text, str) or not text.strip():
        raise InvalidResponseError("Empty generation", provider_id=config.provider_id)
    return text.strip()
