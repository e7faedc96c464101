"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口与公共的 HTTP/错误归类逻辑 (base)。
- 维护 Provider 配置 (registry)。
- 提供各家族的具体实现 (chat_client、text_generation_client)。
"""

from typing import Dict

from companion_core.providers.base import ProviderClient
from companion_core.providers.chat_client import ChatCompletionsClient
from companion_core.providers.registry import ProviderFamily
from companion_core.providers.text_generation_client import TextGenerationClient


def create_provider(family: str) -> ProviderClient:
    """根据家族名称创建 Provider 客户端。"""

    key = family.lower()
    if key == "chat":
        return ChatCompletionsClient()
    if key == "prompt":
        return TextGenerationClient()
    raise KeyError(f"Unknown provider family: {family!r}")


def default_clients() -> Dict[ProviderFamily, ProviderClient]:
    return {"chat": create_provider("chat"), "prompt": create_provider("prompt")}
