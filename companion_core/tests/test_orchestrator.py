import pytest

from companion_core.agents.orchestrator import FallbackOrchestrator
from companion_core.domain.cancellation import CancelToken
from companion_core.domain.exceptions import (
    AllProvidersFailedError,
    InvalidResponseError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitError,
    TurnCancelledError,
    UnauthorizedError,
)
from companion_core.providers.registry import ProviderConfig


def cfg(provider_id, priority, max_retries=2, **kw):
    return ProviderConfig(
        provider_id=provider_id,
        priority=priority,
        family="chat",
        endpoint=f"https://{provider_id}.example/v1",
        model="m",
        api_key="key-1234567890",
        max_retries=max_retries,
        **kw,
    )


class ScriptedClient:
    """按 provider_id 返回预设结果：字符串表示成功，异常表示失败。

    列表会依次消费，最后一个元素重复使用。
    """

    family = "chat"

    def __init__(self, script):
        self.script = {k: list(v) if isinstance(v, list) else [v] for k, v in script.items()}
        self.calls = []
        self.configs = []

    def generate(self, config, prompt, context=None):
        self.calls.append(config.provider_id)
        self.configs.append(config)
        queue = self.script[config.provider_id]
        action = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(action, Exception):
            raise action
        if callable(action):
            return action()
        return action


def test_timeout_provider_retried_then_falls_back():
    client = ScriptedClient({"A": ProviderTimeoutError("slow"), "B": "hello from B"})
    orch = FallbackOrchestrator([cfg("A", 1, max_retries=2), cfg("B", 2)], {"chat": client})
    result = orch.orchestrate("hi")
    assert result.text == "hello from B"
    assert result.provider_id == "B"
    assert client.calls.count("A") == 3
    assert client.calls == ["A", "A", "A", "B"]
    assert [a.outcome for a in result.attempts] == ["timeout", "timeout", "timeout", "success"]


def test_unauthorized_is_attempted_once():
    client = ScriptedClient({"A": UnauthorizedError("bad key"), "B": "ok"})
    orch = FallbackOrchestrator([cfg("A", 1, max_retries=3), cfg("B", 2)], {"chat": client})
    result = orch.orchestrate("hi")
    assert result.provider_id == "B"
    assert client.calls == ["A", "B"]
    assert result.attempts[0].outcome == "rejected"


def test_invalid_response_is_not_retried():
    client = ScriptedClient({"A": InvalidResponseError("empty"), "B": "ok"})
    orch = FallbackOrchestrator([cfg("A", 1, max_retries=3), cfg("B", 2)], {"chat": client})
    orch.orchestrate("hi")
    assert client.calls == ["A", "B"]


def test_priority_order_and_ties_keep_config_order():
    client = ScriptedClient({"low": "low", "first-tie": "first", "second-tie": "second"})
    orch = FallbackOrchestrator(
        [cfg("low", 9), cfg("first-tie", 1), cfg("second-tie", 1)],
        {"chat": client},
    )
    assert [c.provider_id for c in orch.configs] == ["first-tie", "second-tie", "low"]
    assert orch.orchestrate("hi").provider_id == "first-tie"


def test_transient_error_then_success_on_same_provider():
    client = ScriptedClient({"A": [ProviderUnavailableError("down"), "recovered"]})
    orch = FallbackOrchestrator([cfg("A", 1, max_retries=1)], {"chat": client})
    result = orch.orchestrate("hi")
    assert result.text == "recovered"
    assert client.calls == ["A", "A"]


def test_rate_limit_waits_before_retry(monkeypatch):
    waits = []
    monkeypatch.setattr(CancelToken, "wait", lambda self, seconds: waits.append(seconds) or False)
    client = ScriptedClient({"A": [RateLimitError("429", retry_after=None), "ok"]})
    orch = FallbackOrchestrator([cfg("A", 1, max_retries=1, rate_limit_delay_ms=500)], {"chat": client})
    assert orch.orchestrate("hi").text == "ok"
    assert waits == [0.5]


def test_rate_limit_honours_longer_retry_after(monkeypatch):
    waits = []
    monkeypatch.setattr(CancelToken, "wait", lambda self, seconds: waits.append(seconds) or False)
    client = ScriptedClient({"A": [RateLimitError("429", retry_after=2.0), "ok"]})
    orch = FallbackOrchestrator([cfg("A", 1, max_retries=1)], {"chat": client})
    orch.orchestrate("hi")
    assert waits == [2.0]


def test_timeout_retry_is_immediate(monkeypatch):
    waits = []
    monkeypatch.setattr(CancelToken, "wait", lambda self, seconds: waits.append(seconds) or False)
    client = ScriptedClient({"A": [ProviderTimeoutError("slow"), "ok"]})
    FallbackOrchestrator([cfg("A", 1, max_retries=1)], {"chat": client}).orchestrate("hi")
    assert waits == []


def test_all_providers_failed_carries_last_error_per_provider():
    last_a = ProviderUnavailableError("still down")
    client = ScriptedClient(
        {
            "A": [ProviderTimeoutError("slow"), last_a],
            "B": UnauthorizedError("bad key"),
        }
    )
    orch = FallbackOrchestrator([cfg("A", 1, max_retries=1), cfg("B", 2)], {"chat": client})
    with pytest.raises(AllProvidersFailedError) as info:
        orch.orchestrate("hi")
    err = info.value
    assert set(err.failures) == {"A", "B"}
    assert err.failures["A"] is last_a
    assert err.failures["B"].kind == "unauthorized"
    assert len(err.attempts) == 3


def test_no_providers_configured_fails():
    with pytest.raises(AllProvidersFailedError):
        FallbackOrchestrator([], {"chat": ScriptedClient({})}).orchestrate("hi")


def test_missing_client_for_family_is_rejected():
    with pytest.raises(ValueError):
        FallbackOrchestrator([cfg("A", 1)], {})


def test_cancel_before_start_makes_no_calls():
    client = ScriptedClient({"A": "ok"})
    token = CancelToken()
    token.cancel()
    with pytest.raises(TurnCancelledError):
        FallbackOrchestrator([cfg("A", 1)], {"chat": client}).orchestrate("hi", cancel=token)
    assert client.calls == []


def test_result_arriving_after_cancel_is_discarded():
    token = CancelToken()

    def cancel_then_reply():
        token.cancel()
        return "too late"

    client = ScriptedClient({"A": cancel_then_reply, "B": "never"})
    orch = FallbackOrchestrator([cfg("A", 1), cfg("B", 2)], {"chat": client})
    with pytest.raises(TurnCancelledError):
        orch.orchestrate("hi", cancel=token)
    assert client.calls == ["A"]


def test_turn_deadline_clips_attempt_timeout():
    client = ScriptedClient({"A": "ok"})
    orch = FallbackOrchestrator([cfg("A", 1, timeout_ms=15000)], {"chat": client})
    orch.orchestrate("hi", cancel=CancelToken(timeout=5.0))
    assert 0 < client.configs[0].timeout_ms <= 5000
