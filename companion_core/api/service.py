"""对外 API 服务模块。

提供简化的函数接口供 HTTP 层（认证、路由不在本包内）调用，
返回值均为可直接序列化为 JSON 的 dict。
"""

from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from companion_core.agents.chat_turn import ChatTurnService, TurnConfig
from companion_core.agents.orchestrator import FallbackOrchestrator
from companion_core.config.settings import settings
from companion_core.domain.cancellation import CancelToken
from companion_core.domain.conversation import Cursor, MessageRecord
from companion_core.domain.exceptions import BusinessError, TurnError
from companion_core.infrastructure.logging.logger import logger
from companion_core.infrastructure.storage.json_store import JsonConversationStore
from companion_core.providers import default_clients
from companion_core.providers.registry import build_provider_configs


_service: Optional[ChatTurnService] = None


def build_service(cfg=settings) -> ChatTurnService:
    """根据配置组装 存储 + 编排器 + 对话轮次服务。"""

    store = JsonConversationStore(root=cfg.storage_root, page_size=cfg.history_page_size)
    orchestrator = FallbackOrchestrator(build_provider_configs(cfg), default_clients())
    return ChatTurnService(
        store=store,
        orchestrator=orchestrator,
        config=TurnConfig(
            history_window=cfg.max_context_messages,
            max_message_length=cfg.max_message_length,
            turn_timeout=cfg.turn_timeout,
        ),
    )


def get_default_service() -> ChatTurnService:
    """获取默认的 ChatTurnService 实例（单例）。"""
    global _service
    if _service is None:
        _service = build_service()
    return _service


def message_to_dict(rec: MessageRecord) -> Dict[str, Any]:
    return {
        "id": rec.id,
        "conversationId": rec.conversation_id,
        "sender": rec.author_kind,
        "message": rec.text,
        "mood": rec.mood_tag,
        "createdAt": rec.created_at.isoformat() if rec.created_at else None,
        "providerId": rec.meta.get("provider_id"),
    }


def run_chat_turn(
    user_id: str,
    message: str,
    mood: Optional[str] = None,
    cancel: Optional[CancelToken] = None,
    service: Optional[ChatTurnService] = None,
) -> Dict[str, Any]:
    """运行一次聊天轮次。

    Returns:
        {"userMessage": ..., "aiMessage": ..., "providerId": ...}

    Raises:
        domain.exceptions 中的 TurnError 子类
    """
    svc = service or get_default_service()
    result = svc.handle_turn(user_id, message, mood_tag=mood, cancel=cancel)
    return {
        "userMessage": message_to_dict(result.user_message),
        "aiMessage": message_to_dict(result.ai_message),
        "providerId": result.provider_id,
    }


def parse_cursor(before: Optional[str]) -> Optional[Cursor]:
    """ISO 8601 时间戳解析为 datetime，其余原样作为消息 id。"""

    if not before:
        return None
    try:
        return datetime.fromisoformat(before.replace("Z", "+00:00"))
    except ValueError:
        return before


def get_chat_history(
    user_id: str,
    limit: Optional[int] = None,
    before: Optional[str] = None,
    service: Optional[ChatTurnService] = None,
) -> Dict[str, Any]:
    """获取用户的聊天记录（按时间升序），nextCursor 用于请求更早的一页。

    before 可以是上一页返回的 nextCursor（消息 id），也可以是 ISO 8601 时间戳。
    """

    svc = service or get_default_service()
    msgs = svc.history(user_id, limit=limit, before=parse_cursor(before))
    return {
        "messages": [message_to_dict(m) for m in msgs],
        "nextCursor": msgs[0].id if msgs else None,
    }


def error_response(exc: Exception) -> Tuple[int, Dict[str, Any]]:
    """把异常转换为 (HTTP 状态码, 错误响应体)。"""

    if isinstance(exc, TurnError):
        return exc.http_status, {
            "error": {
                "kind": exc.kind,
                "code": exc.code,
                "message": exc.message,
                "details": exc.details(),
            }
        }
    if isinstance(exc, BusinessError):
        return exc.http_status, {
            "error": {"kind": "server_error", "code": exc.code, "message": exc.message, "details": exc.extra}
        }
    logger.error(f"Unhandled error: {exc}", extra={"extra": {"error_type": type(exc).__name__}})
    return 500, {"error": {"kind": "server_error", "code": "INTERNAL", "message": "Internal server error", "details": {}}}
