import pytest

from companion_core.config.settings import DEFAULT_OPENROUTER_MODELS, Settings
from companion_core.providers.registry import build_provider_configs


def make_settings(**kw):
    kw.setdefault("openrouter_api_key", "sk-or-1234567890")
    kw.setdefault("huggingface_api_key", "hf_1234567890")
    return Settings(_env_file=None, **kw)


def test_default_chain_orders_openrouter_models_then_huggingface():
    configs = build_provider_configs(make_settings())
    assert [c.model for c in configs[:-1]] == DEFAULT_OPENROUTER_MODELS
    assert [c.priority for c in configs] == list(range(1, len(configs) + 1))
    assert all(c.family == "chat" for c in configs[:-1])
    last = configs[-1]
    assert last.family == "prompt"
    assert last.provider_id == "huggingface:google/flan-t5-small"
    first = configs[0]
    assert first.api_key == "sk-or-1234567890"
    assert first.timeout_ms == 15000
    assert first.max_retries == 1
    assert first.rate_limit_delay_ms == 500
    assert first.extra_headers["X-Title"] == "Mental Health Companion"


def test_explicit_provider_list_reads_key_from_env(monkeypatch):
    monkeypatch.setenv("MY_PROVIDER_KEY", "secret-key-123456")
    cfg = make_settings(
        providers=[
            {
                "provider_id": "local",
                "family": "chat",
                "endpoint": "http://localhost:8080/v1/",
                "model": "llama",
                "priority": 5,
                "api_key_env": "MY_PROVIDER_KEY",
                "max_retries": 3,
            },
            {
                "provider_id": "open",
                "family": "prompt",
                "endpoint": "http://localhost:9000",
                "auth_mode": "none",
                "rate_limit_delay_ms": 100,
            },
        ]
    )
    configs = build_provider_configs(cfg)
    assert [c.provider_id for c in configs] == ["local", "open"]
    assert configs[0].api_key == "secret-key-123456"
    assert configs[0].endpoint == "http://localhost:8080/v1"
    assert configs[0].max_retries == 3
    assert configs[1].priority == 2
    assert configs[1].auth_mode == "none"
    # 限流等待时间下限 500ms
    assert configs[1].rate_limit_delay_ms == 500


def test_explicit_provider_entry_requires_family():
    cfg = make_settings(providers=[{"provider_id": "x", "endpoint": "http://x"}])
    with pytest.raises(ValueError):
        build_provider_configs(cfg)
