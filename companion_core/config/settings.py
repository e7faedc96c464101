"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置，优先级依次降低。
Provider 凭证只从这里读取，核心代码中不出现任何硬编码密钥。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("COMPANION_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


DEFAULT_OPENROUTER_MODELS = [
    "google/gemma-2-9b-it:free",
    "meta-llama/llama-3.1-8b-instruct:free",
    "microsoft/phi-3-mini-128k-instruct:free",
    "huggingface/microsoft/Phi-3-mini-4k-instruct:free",
]


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- OpenRouter（chat/completions 类 Provider） ----
    openrouter_api_key: Optional[str] = Field(default=None, description="OpenRouter API 密钥")
    openrouter_base_url: str = Field(
        default="https://openrouter.ai/api/v1",
        description="OpenRouter API 基础URL",
    )
    openrouter_models: List[str] = Field(
        default_factory=lambda: list(DEFAULT_OPENROUTER_MODELS),
        description="按优先级排列的 OpenRouter 模型",
    )
    openrouter_referer: str = Field(
        default="https://mental-health-companion-seven.vercel.app/",
        description="OpenRouter 归属统计使用的 HTTP-Referer",
    )
    openrouter_title: str = Field(default="Mental Health Companion", description="OpenRouter X-Title")

    # ---- Hugging Face（text-generation 类 Provider） ----
    huggingface_api_key: Optional[str] = Field(default=None, description="Hugging Face API 密钥")
    huggingface_base_url: str = Field(
        default="https://api-inference.huggingface.co",
        description="Hugging Face Inference API 基础URL",
    )
    huggingface_model: str = Field(default="google/flan-t5-small", description="Hugging Face 模型 ID")

    # ---- 编排策略 ----
    provider_timeout: float = Field(default=15.0, gt=0, description="单次 Provider 调用超时（秒）")
    provider_max_retries: int = Field(default=1, ge=0, le=5, description="每个 Provider 的重试次数")
    rate_limit_delay: float = Field(default=0.5, ge=0.5, description="限流后重试前的等待时间（秒）")
    max_tokens: int = Field(default=150, ge=1, description="单次回复最大 token 数")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    top_p: float = Field(default=0.9, gt=0.0, le=1.0)
    providers: Optional[List[Dict[str, Any]]] = Field(
        default=None,
        description="显式 Provider 列表，设置后覆盖默认的 OpenRouter/Hugging Face 链",
    )
    turn_timeout: Optional[float] = Field(default=None, gt=0, description="整轮对话超时（秒），为空则不限制")

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")
    max_context_messages: int = Field(default=10, ge=0, le=100, description="发送给 Provider 的历史消息数")
    history_page_size: int = Field(default=50, ge=1, le=500, description="历史记录默认分页大小")
    max_message_length: int = Field(default=2000, ge=1, description="单条用户消息最大长度")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("openrouter_api_key", "huggingface_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v or None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
