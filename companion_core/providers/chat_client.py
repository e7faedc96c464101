"""chat/completions 家族 Provider 适配器（OpenRouter 及其他 OpenAI 兼容接口）。

- URL: {endpoint}/chat/completions
- 认证: Authorization: Bearer <api_key>，OpenRouter 另需 HTTP-Referer / X-Title
- 请求体: model/messages/max_tokens/temperature/top_p
- 回复: choices[0].message.content
"""

from typing import Any, Dict, Optional

from companion_core.domain.exceptions import InvalidResponseError
from companion_core.domain.models import GenerationContext
from companion_core.providers.base import clean_text, post_json
from companion_core.providers.registry import ProviderConfig


class ChatCompletionsClient:
    """chat 家族客户端，把对话上下文转换成 messages 数组。"""

    family = "chat"

    def generate(self, config: ProviderConfig, prompt: str, context: Optional[GenerationContext] = None) -> str:
        payload = self._build_payload(config, prompt, context or GenerationContext())
        data = post_json(config, f"{config.endpoint.rstrip('/')}/chat/completions", payload)
        return self._parse_response(data, config)

    def _build_payload(self, config: ProviderConfig, prompt: str, context: GenerationContext) -> Dict[str, Any]:
        messages = [{"role": m.role, "content": m.content} for m in context.to_chat_messages(prompt)]
        return {
            "model": config.model,
            "messages": messages,
            "max_tokens": config.max_tokens,
            "temperature": config.temperature,
            "top_p": config.top_p,
        }

    def _parse_response(self, data: Any, config: ProviderConfig) -> str:
        if not isinstance(data, dict):
            raise InvalidResponseError("Unexpected response shape", provider_id=config.provider_id)
        # OpenRouter 在 200 响应里也可能携带 error 字段（上游模型失败）
        if data.get("error") and not data.get("choices"):
            err = data["error"]
            detail = err.get("message") if isinstance(err, dict) else str(err)
            raise InvalidResponseError(f"Provider error: {detail}", provider_id=config.provider_id)
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            raise InvalidResponseError("Response has no choices", provider_id=config.provider_id)
        message = choices[0].get("message") or {}
        return clean_text(message.get("content"), config)
