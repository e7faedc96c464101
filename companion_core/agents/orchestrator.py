"""Provider 回退编排器。

按 priority 升序依次尝试 Provider，每个 Provider 最多尝试 max_retries + 1 次：

- 超时 / 限流 / 不可用属于瞬时错误，在同一 Provider 上立即重试；
  限流时先等待 rate_limit_delay_ms（或 Retry-After）再重试。
- 凭证错误 / 无效响应不重试，直接切换到下一个 Provider。
- 第一个成功的回复立即返回，并标注产生它的 provider_id。
- 全部失败时抛出 AllProvidersFailedError，附带每个 Provider 的最后一次错误。

同一轮次内同一时间只有一个请求在途。ProviderAttempt 记录只属于本次调用。
"""

import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence
from uuid import uuid4

from companion_core.domain.cancellation import CancelToken
from companion_core.domain.exceptions import (
    AllProvidersFailedError,
    ProviderError,
    RateLimitError,
    TurnCancelledError,
)
from companion_core.domain.models import AttemptOutcome, GenerationContext, OrchestrationResult, ProviderAttempt
from companion_core.infrastructure.logging.logger import logger
from companion_core.providers.base import ProviderClient
from companion_core.providers.registry import ProviderConfig


def _outcome(err: ProviderError) -> AttemptOutcome:
    if err.kind == "timeout":
        return "timeout"
    if err.kind in ("unauthorized", "rate_limited"):
        return "rejected"
    return "error"


class FallbackOrchestrator:
    def __init__(self, configs: Sequence[ProviderConfig], clients: Mapping[str, ProviderClient]):
        for cfg in configs:
            if cfg.family not in clients:
                raise ValueError(f"No client registered for provider family {cfg.family!r} ({cfg.provider_id})")
        # sorted 是稳定排序：priority 相同时保持配置顺序
        self._configs: List[ProviderConfig] = sorted(configs, key=lambda c: c.priority)
        self._clients = dict(clients)

    @property
    def configs(self) -> List[ProviderConfig]:
        return list(self._configs)

    def orchestrate(
        self,
        message: str,
        context: Optional[GenerationContext] = None,
        cancel: Optional[CancelToken] = None,
        trace_id: Optional[str] = None,
    ) -> OrchestrationResult:
        """为一条用户消息生成恰好一条回复。

        Raises:
            AllProvidersFailedError: 所有 Provider 都耗尽了尝试次数。
            TurnCancelledError: 调用被取消或整轮超时。
        """

        token = cancel or CancelToken()
        log_ctx: Dict[str, Any] = {"trace_id": trace_id or f"tr-{uuid4().hex}"}
        attempts: List[ProviderAttempt] = []
        failures: Dict[str, ProviderError] = {}

        for config in self._configs:
            client = self._clients[config.family]
            max_attempts = config.max_retries + 1
            for attempt_no in range(1, max_attempts + 1):
                self._check_cancelled(token, config, attempts, log_ctx)
                started_at = datetime.now(timezone.utc)
                t0 = time.monotonic()
                try:
                    text = client.generate(self._clip_timeout(config, token), message, context)
                except ProviderError as err:
                    elapsed_ms = int((time.monotonic() - t0) * 1000)
                    if err.provider_id is None:
                        err.provider_id = config.provider_id
                    attempts.append(
                        ProviderAttempt(
                            provider_id=config.provider_id,
                            attempt=attempt_no,
                            started_at=started_at,
                            outcome=_outcome(err),
                            detail=err.message,
                            elapsed_ms=elapsed_ms,
                        )
                    )
                    failures[config.provider_id] = err
                    self._log(
                        logging.WARNING,
                        "Provider attempt failed",
                        log_ctx,
                        provider_id=config.provider_id,
                        attempt=attempt_no,
                        max_attempts=max_attempts,
                        kind=err.kind,
                        detail=err.message,
                        elapsed_ms=elapsed_ms,
                    )
                    self._check_cancelled(token, config, attempts, log_ctx)
                    if not err.transient or attempt_no == max_attempts:
                        break
                    if isinstance(err, RateLimitError):
                        delay = max(config.rate_limit_delay_ms / 1000.0, err.retry_after or 0.0)
                        token.wait(delay)
                    continue

                elapsed_ms = int((time.monotonic() - t0) * 1000)
                # 取消之后到达的结果直接丢弃
                self._check_cancelled(token, config, attempts, log_ctx)
                attempts.append(
                    ProviderAttempt(
                        provider_id=config.provider_id,
                        attempt=attempt_no,
                        started_at=started_at,
                        outcome="success",
                        elapsed_ms=elapsed_ms,
                    )
                )
                self._log(
                    logging.INFO,
                    "Provider attempt succeeded",
                    log_ctx,
                    provider_id=config.provider_id,
                    attempt=attempt_no,
                    elapsed_ms=elapsed_ms,
                    total_attempts=len(attempts),
                )
                return OrchestrationResult(text=text, provider_id=config.provider_id, attempts=attempts)

            self._log(logging.INFO, "Falling back to next provider", log_ctx, provider_id=config.provider_id)

        self._log(
            logging.ERROR,
            "All providers failed",
            log_ctx,
            providers=len(self._configs),
            total_attempts=len(attempts),
            failures={pid: err.kind for pid, err in failures.items()},
        )
        raise AllProvidersFailedError(failures, attempts)

    @staticmethod
    def _clip_timeout(config: ProviderConfig, token: CancelToken) -> ProviderConfig:
        """单次超时不超过整轮剩余时间，到期时在途请求随之放弃。"""

        remaining = token.remaining()
        if remaining is None:
            return config
        remaining_ms = max(1, int(remaining * 1000))
        if remaining_ms >= config.timeout_ms:
            return config
        return replace(config, timeout_ms=remaining_ms)

    def _check_cancelled(
        self,
        token: CancelToken,
        config: ProviderConfig,
        attempts: List[ProviderAttempt],
        log_ctx: Dict[str, Any],
    ) -> None:
        if not token.cancelled:
            return
        self._log(
            logging.WARNING,
            "Orchestration cancelled",
            log_ctx,
            provider_id=config.provider_id,
            total_attempts=len(attempts),
        )
        raise TurnCancelledError(provider_id=config.provider_id, attempts=len(attempts))

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
