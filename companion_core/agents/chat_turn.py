"""对话轮次服务。

每个聊天请求的唯一入口：校验输入 → 持久化用户消息 → 构建上下文 →
调用回退编排器 → 持久化 AI 消息 → 返回两条消息。

轮次状态：Received → UserPersisted → Orchestrating →
{Completed（两条消息都存在）, PartiallyFailed（只有用户消息）, Cancelled}。
部分失败不会自动重试，重试由调用方发起新的轮次。
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from companion_core.agents.orchestrator import FallbackOrchestrator
from companion_core.domain.cancellation import CancelToken
from companion_core.domain.conversation import ConversationStore, Cursor, MessageRecord
from companion_core.domain.exceptions import (
    AllProvidersFailedError,
    InvalidInputError,
    NoProviderAvailableError,
    StoreError,
    StoreFailureError,
    StoreInvalidError,
    TurnCancelledError,
)
from companion_core.domain.models import GenerationContext, TurnResult
from companion_core.infrastructure.logging.logger import logger
from companion_core.prompts import load_system_prompt


MOOD_TAGS = ("😊", "😢", "😰", "😡", "😌", "🤔", "😴", "🥺", "💪", "😵")


@dataclass
class TurnConfig:
    history_window: int = 10  # 发送给 Provider 的历史消息条数
    max_message_length: int = 2000
    turn_timeout: Optional[float] = None  # 整轮超时（秒）
    system_prompt: Optional[str] = None


def conversation_id_for(user_id: str) -> str:
    """每个用户一条会话。"""

    return user_id


class ChatTurnService:
    def __init__(
        self,
        store: ConversationStore,
        orchestrator: FallbackOrchestrator,
        config: Optional[TurnConfig] = None,
    ):
        self._store = store
        self._orchestrator = orchestrator
        self._config = config or TurnConfig()

    def handle_turn(
        self,
        user_id: str,
        text: str,
        mood_tag: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> TurnResult:
        """执行一次对话轮次。

        Args:
            user_id: 上游已认证的用户 ID
            text: 用户输入
            mood_tag: 心情表情（可选）
            cancel: 取消令牌；为空时按 turn_timeout 创建

        Returns:
            TurnResult，包含已持久化的用户消息与 AI 消息

        Raises:
            InvalidInputError, StoreFailureError, NoProviderAvailableError, TurnCancelledError
        """
        start_time = time.time()
        text, mood_tag = self._validate(user_id, text, mood_tag)
        token = cancel or CancelToken(self._config.turn_timeout)
        conversation_id = conversation_id_for(user_id)
        log_ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "conversation_id": conversation_id,
        }
        if token.cancelled:
            raise TurnCancelledError("Turn cancelled before start")

        # 1. 持久化用户消息；失败则整轮失败，不调用任何 Provider
        try:
            user_rec = self._store.append(
                MessageRecord(
                    conversation_id=conversation_id,
                    author_kind="user",
                    text=text,
                    mood_tag=mood_tag,
                )
            )
        except StoreError as e:
            self._log(logging.ERROR, "Failed to store user message", log_ctx, error=e.message)
            raise StoreFailureError(f"Could not save message: {e.message}", store_code=e.code)
        self._log(logging.INFO, "Stored user message", log_ctx, message_id=user_rec.id, mood_tag=mood_tag)

        # 2. 构建上下文
        try:
            context = self._build_context(user_rec)
        except StoreError as e:
            self._log(logging.ERROR, "Failed to load context", log_ctx, error=e.message)
            raise StoreFailureError(
                f"Could not load conversation history: {e.message}",
                store_code=e.code,
                user_message_id=user_rec.id,
            )

        # 3. 调用编排器
        try:
            result = self._orchestrator.orchestrate(text, context, cancel=token, trace_id=log_ctx["trace_id"])
        except AllProvidersFailedError as e:
            self._log(
                logging.WARNING,
                "Turn partially failed",
                log_ctx,
                user_message_id=user_rec.id,
                attempts=[a.as_dict() for a in e.attempts],
            )
            raise NoProviderAvailableError(
                "The companion is unavailable right now. Your message was saved.",
                failures=e.failures,
                user_message_id=user_rec.id,
            )
        except TurnCancelledError as e:
            e.extra.setdefault("user_message_id", user_rec.id)
            self._log(logging.WARNING, "Turn cancelled", log_ctx, user_message_id=user_rec.id)
            raise
        if token.cancelled:
            self._log(logging.WARNING, "Turn cancelled", log_ctx, user_message_id=user_rec.id)
            raise TurnCancelledError(user_message_id=user_rec.id)

        # 4. 持久化 AI 消息，时间不早于用户消息
        now = datetime.now(timezone.utc)
        created_at = max(now, user_rec.created_at) if user_rec.created_at else now
        response_time_ms = int((time.time() - start_time) * 1000)
        try:
            ai_rec = self._store.append(
                MessageRecord(
                    conversation_id=conversation_id,
                    author_kind="assistant",
                    text=result.text,
                    created_at=created_at,
                    meta={"provider_id": result.provider_id, "response_time_ms": response_time_ms},
                )
            )
        except StoreError as e:
            self._log(logging.ERROR, "Failed to store assistant message", log_ctx, error=e.message)
            raise StoreFailureError(
                f"Could not save reply: {e.message}",
                store_code=e.code,
                user_message_id=user_rec.id,
            )

        self._log(
            logging.INFO,
            "Completed chat turn",
            log_ctx,
            user_message_id=user_rec.id,
            assistant_message_id=ai_rec.id,
            provider_id=result.provider_id,
            attempts=len(result.attempts),
            elapsed_seconds=round(time.time() - start_time, 2),
        )
        return TurnResult(user_message=user_rec, ai_message=ai_rec, provider_id=result.provider_id)

    def history(
        self,
        user_id: str,
        limit: Optional[int] = None,
        before: Optional[Cursor] = None,
    ) -> List[MessageRecord]:
        """分页读取用户的会话历史；游标或用户 id 无法识别时视为输入错误。"""

        if not user_id:
            raise InvalidInputError("User id is required")
        try:
            return self._store.history(conversation_id_for(user_id), limit=limit, before=before)
        except StoreInvalidError as e:
            extra = {"cursor": str(before)} if before is not None else {}
            raise InvalidInputError(f"Invalid history request: {e.message}", **extra)
        except StoreError as e:
            raise StoreFailureError(f"Could not load history: {e.message}", store_code=e.code)

    def _validate(self, user_id: str, text: str, mood_tag: Optional[str]):
        if not user_id:
            raise InvalidInputError("User id is required")
        if not isinstance(text, str) or not text.strip():
            raise InvalidInputError("Message is required")
        text = text.strip()
        if len(text) > self._config.max_message_length:
            raise InvalidInputError(
                f"Message exceeds {self._config.max_message_length} characters",
                length=len(text),
            )
        if mood_tag is not None:
            mood_tag = mood_tag.strip() or None
        if mood_tag is not None and mood_tag not in MOOD_TAGS:
            raise InvalidInputError(f"Unsupported mood: {mood_tag}", allowed=list(MOOD_TAGS))
        return text, mood_tag

    def _build_context(self, user_rec: MessageRecord) -> GenerationContext:
        window = self._config.history_window
        recent: List[MessageRecord] = []
        if window > 0:
            recent = self._store.history(user_rec.conversation_id, limit=window, before=user_rec.id)
        system_prompt = self._config.system_prompt
        if system_prompt is None:
            system_prompt = load_system_prompt()
        return GenerationContext(history=recent, mood_tag=user_rec.mood_tag, system_prompt=system_prompt)

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
