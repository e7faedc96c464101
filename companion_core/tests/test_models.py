from datetime import datetime, timezone

from companion_core.domain.cancellation import CancelToken
from companion_core.domain.conversation import MessageRecord, normalize_limit
from companion_core.domain.models import GenerationContext, ProviderAttempt
from companion_core.prompts import load_system_prompt


def test_context_to_chat_messages():
    ctx = GenerationContext(
        history=[MessageRecord(conversation_id="u1", author_kind="assistant", text="welcome")],
        mood_tag="😌",
        system_prompt="sys",
    )
    msgs = ctx.to_chat_messages("hi")
    assert [m.role for m in msgs] == ["system", "assistant", "user"]
    assert msgs[0].content.startswith("sys")
    assert "😌" in msgs[0].content


def test_context_without_system_prompt_or_mood():
    msgs = GenerationContext().to_chat_messages("hi")
    assert [(m.role, m.content) for m in msgs] == [("user", "hi")]
    assert GenerationContext().to_prompt("hi") == "User: hi\nAssistant:"


def test_normalize_limit():
    assert normalize_limit(None) == 50
    assert normalize_limit(0) == 50
    assert normalize_limit(-1, default=7) == 7
    assert normalize_limit(3) == 3


def test_attempt_as_dict():
    now = datetime.now(timezone.utc)
    attempt = ProviderAttempt(provider_id="A", attempt=1, started_at=now, outcome="timeout", detail="slow")
    data = attempt.as_dict()
    assert data["outcome"] == "timeout"
    assert data["started_at"] == now.isoformat()


def test_cancel_token_deadline():
    assert CancelToken().remaining() is None
    expired = CancelToken(timeout=0)
    assert expired.cancelled
    assert expired.wait(10) is True
    token = CancelToken()
    assert not token.cancelled
    token.cancel()
    assert token.cancelled


def test_companion_system_prompt_is_packaged():
    assert "Luna" in load_system_prompt()
