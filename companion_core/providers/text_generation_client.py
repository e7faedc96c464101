"""text-generation 家族 Provider 适配器（Hugging Face Inference API 风格）。

与 chat 家族不同，这类接口只接收单个字符串 prompt：

- URL: {endpoint}/models/{model}
- 请求体: {"inputs": "...", "parameters": {...}, "options": {...}}
- 回复: [{"generated_text": "..."}] 或 {"generated_text": "..."}
- 模型冷启动时返回 {"error": "...", "estimated_time": 20.0}，归类为 Unavailable。
"""

from typing import Any, Dict, Optional

from companion_core.domain.exceptions import InvalidResponseError, ProviderUnavailableError
from companion_core.domain.models import GenerationContext
from companion_core.providers.base import clean_text, post_json
from companion_core.providers.registry import ProviderConfig


class TextGenerationClient:
    family = "prompt"

    def generate(self, config: ProviderConfig, prompt: str, context: Optional[GenerationContext] = None) -> str:
        payload = self._build_payload(config, prompt, context or GenerationContext())
        data = post_json(config, f"{config.endpoint.rstrip('/')}/models/{config.model}", payload)
        return self._parse_response(data, config)

    def _build_payload(self, config: ProviderConfig, prompt: str, context: GenerationContext) -> Dict[str, Any]:
        return {
            "inputs": context.to_prompt(prompt),
            "parameters": {
                "max_new_tokens": config.max_tokens,
                "temperature": config.temperature,
                "top_p": config.top_p,
                "return_full_text": False,
            },
            "options": {"wait_for_model": False},
        }

    def _parse_response(self, data: Any, config: ProviderConfig) -> str:
        if isinstance(data, list):
            first = data[0] if data else None
            if not isinstance(first, dict):
                raise InvalidResponseError("Response list is empty", provider_id=config.provider_id)
            return clean_text(first.get("generated_text"), config)
        if isinstance(data, dict):
            if "error" in data:
                if "estimated_time" in data:
                    raise ProviderUnavailableError(
                        f"Model loading: {data['error']}",
                        provider_id=config.provider_id,
                    )
                raise InvalidResponseError(f"Provider error: {data['error']}", provider_id=config.provider_id)
            return clean_text(data.get("generated_text"), config)
        raise InvalidResponseError("Unexpected response shape", provider_id=config.provider_id)
