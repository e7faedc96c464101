"""Provider 配置与注册表。

本模块把配置项（settings / config.yaml）转换为有序的 ProviderConfig 列表：

- 默认链：按 openrouter_models 的顺序依次生成 chat 类 Provider（priority 1..n），
  然后追加 Hugging Face text-generation Provider 作为最后的候选。
- 显式链：若 settings.providers 非空，则完全按其内容构建，凭证通过
  api_key_env 指定的环境变量读取。

ProviderConfig 在进程启动时构建一次，之后只读。
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional


ProviderFamily = Literal["chat", "prompt"]
AuthMode = Literal["bearer", "none"]


@dataclass(frozen=True)
class ProviderConfig:
    """单个 Provider（厂商 + 模型）的调用配置。"""

    provider_id: str
    priority: int
    family: ProviderFamily
    endpoint: str
    model: str
    api_key: Optional[str] = field(default=None, repr=False)
    auth_mode: AuthMode = "bearer"
    timeout_ms: int = 15000
    max_retries: int = 1
    rate_limit_delay_ms: int = 500
    max_tokens: int = 150
    temperature: float = 0.7
    top_p: float = 0.9
    extra_headers: Mapping[str, str] = field(default_factory=dict)


def default_provider_configs(cfg) -> List[ProviderConfig]:
    common = {
        "timeout_ms": int(cfg.provider_timeout * 1000),
        "max_retries": cfg.provider_max_retries,
        "rate_limit_delay_ms": int(cfg.rate_limit_delay * 1000),
        "max_tokens": cfg.max_tokens,
        "temperature": cfg.temperature,
        "top_p": cfg.top_p,
    }
    configs: List[ProviderConfig] = []
    for i, model in enumerate(cfg.openrouter_models, start=1):
        configs.append(
            ProviderConfig(
                provider_id=f"openrouter:{model}",
                priority=i,
                family="chat",
                endpoint=cfg.openrouter_base_url,
                model=model,
                api_key=cfg.openrouter_api_key,
                extra_headers={
                    "HTTP-Referer": cfg.openrouter_referer,
                    "X-Title": cfg.openrouter_title,
                },
                **common,
            )
        )
    configs.append(
        ProviderConfig(
            provider_id=f"huggingface:{cfg.huggingface_model}",
            priority=len(configs) + 1,
            family="prompt",
            endpoint=cfg.huggingface_base_url,
            model=cfg.huggingface_model,
            api_key=cfg.huggingface_api_key,
            **common,
        )
    )
    return configs


def provider_config_from_dict(data: Dict[str, Any], index: int, cfg) -> ProviderConfig:
    """根据 config.yaml 中的单个条目构建 ProviderConfig。"""

    try:
        provider_id = str(data["provider_id"])
        family = data["family"]
        endpoint = str(data["endpoint"]).rstrip("/")
    except KeyError as e:
        raise ValueError(f"Provider entry #{index} is missing {e.args[0]!r}")
    if family not in ("chat", "prompt"):
        raise ValueError(f"Provider {provider_id!r} has unknown family {family!r}")
    api_key = data.get("api_key")
    key_env = data.get("api_key_env")
    if not api_key and key_env:
        api_key = os.getenv(key_env)
    return ProviderConfig(
        provider_id=provider_id,
        priority=int(data.get("priority", index + 1)),
        family=family,
        endpoint=endpoint,
        model=str(data.get("model", "")),
        api_key=api_key or None,
        auth_mode=data.get("auth_mode", "bearer"),
        timeout_ms=int(data.get("timeout_ms", cfg.provider_timeout * 1000)),
        max_retries=int(data.get("max_retries", cfg.provider_max_retries)),
        rate_limit_delay_ms=max(500, int(data.get("rate_limit_delay_ms", cfg.rate_limit_delay * 1000))),
        max_tokens=int(data.get("max_tokens", cfg.max_tokens)),
        temperature=float(data.get("temperature", cfg.temperature)),
        top_p=float(data.get("top_p", cfg.top_p)),
        extra_headers=dict(data.get("extra_headers") or {}),
    )


def build_provider_configs(cfg) -> List[ProviderConfig]:
    """构建进程级的 Provider 列表（保持配置顺序，排序交给编排器）。"""

    if cfg.providers:
        return [provider_config_from_dict(item, i, cfg) for i, item in enumerate(cfg.providers)]
    return default_provider_configs(cfg)
