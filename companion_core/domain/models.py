"""编排过程中使用的数据模型。

- ChatMessage: 发给 chat 类 Provider 的单条消息（system/user/assistant）。
- GenerationContext: 生成回复时附带的上下文（近期历史、心情标签、系统提示词）。
- ProviderAttempt: 单次 Provider 调用记录，只在一次编排调用内存在。
- OrchestrationResult / TurnResult: 编排器与对话轮次服务的返回值。

这些结构不依赖任何具体 Provider，各 Provider 适配器负责与自身 JSON 格式互转。
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from companion_core.domain.conversation import MessageRecord


Role = Literal["system", "user", "assistant"]

AttemptOutcome = Literal["success", "timeout", "rejected", "error"]


@dataclass
class ChatMessage:
    role: Role
    content: str


@dataclass
class GenerationContext:
    """一次生成请求的上下文。

    - history: 当前用户消息之前的若干条消息，按时间升序。
    - mood_tag: 用户附带的心情表情（可选）。
    - system_prompt: 伴侣角色的系统提示词。
    """

    history: List[MessageRecord] = field(default_factory=list)
    mood_tag: Optional[str] = None
    system_prompt: str = ""

    def to_chat_messages(self, prompt: str) -> List[ChatMessage]:
        """转换为 chat 类 Provider 需要的消息数组。"""

        messages: List[ChatMessage] = []
        system = self.system_prompt.strip()
        if self.mood_tag:
            mood_line = f"The user reports their current mood as {self.mood_tag}."
            system = f"{system}\n\n{mood_line}" if system else mood_line
        if system:
            messages.append(ChatMessage(role="system", content=system))
        for rec in self.history:
            messages.append(ChatMessage(role=rec.author_kind, content=rec.text))
        messages.append(ChatMessage(role="user", content=prompt))
        return messages

    def to_prompt(self, prompt: str) -> str:
        """转换为单字符串 prompt，供 text-generation 类 Provider 使用。"""

        lines: List[str] = []
        for msg in self.to_chat_messages(prompt):
            if msg.role == "system":
                lines.append(msg.content)
                lines.append("")
            elif msg.role == "user":
                lines.append(f"User: {msg.content}")
            else:
                lines.append(f"Assistant: {msg.content}")
        lines.append("Assistant:")
        return "\n".join(lines)


@dataclass
class ProviderAttempt:
    provider_id: str
    attempt: int
    started_at: datetime
    outcome: AttemptOutcome
    detail: Optional[str] = None
    elapsed_ms: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "attempt": self.attempt,
            "started_at": self.started_at.isoformat(),
            "outcome": self.outcome,
            "detail": self.detail,
            "elapsed_ms": self.elapsed_ms,
        }


@dataclass
class OrchestrationResult:
    text: str
    provider_id: str
    attempts: List[ProviderAttempt] = field(default_factory=list)


@dataclass
class TurnResult:
    """一次完整对话轮次的结果：两条都已持久化的消息。"""

    user_message: MessageRecord
    ai_message: MessageRecord
    provider_id: str
