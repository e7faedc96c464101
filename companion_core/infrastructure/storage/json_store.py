import json
import threading
from dataclasses import asdict, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from companion_core.config.settings import settings
from companion_core.domain.conversation import (
    ConversationStore,
    Cursor,
    MessageRecord,
    normalize_limit,
)
from companion_core.domain.exceptions import StoreInvalidError, StoreUnavailableError
from companion_core.infrastructure.logging.logger import logger


AUTHOR_KINDS = ("user", "assistant")

# 会话内相邻两条消息的最小时间间隔，保证 created_at 严格递增
TICK = timedelta(microseconds=1)

# 同一进程内指向同一 root 的所有实例共用一把写锁
_ROOT_LOCKS: Dict[Path, threading.Lock] = {}
_ROOT_LOCKS_GUARD = threading.Lock()


def _lock_for(root: Path) -> threading.Lock:
    with _ROOT_LOCKS_GUARD:
        return _ROOT_LOCKS.setdefault(root, threading.Lock())


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _format_ts(value: datetime) -> str:
    return _to_utc(value).isoformat().replace("+00:00", "Z")


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class JsonConversationStore(ConversationStore):
    """以 JSONL 文件持久化会话消息，每个会话一个文件，只追加不修改。

    会话内 created_at 严格递增（时间相同或回拨时顺延 1 微秒），seq 为插入序号。
    每次写入都在锁内重新读取文件末尾，同一进程内的多个实例可以共享一个 root；
    不支持多个进程同时写同一个 root。
    """

    def __init__(self, root: str | Path | None = None, page_size: Optional[int] = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._page_size = page_size or settings.history_page_size
        self._lock = _lock_for(self._root)

    def append(self, message: MessageRecord) -> MessageRecord:
        self._validate(message)
        with self._lock:
            try:
                last_seq, last_ts = self._tail(message.conversation_id)
                created_at = _to_utc(message.created_at or datetime.now(timezone.utc))
                if last_ts is not None and created_at <= last_ts:
                    # 时间戳游标分页依赖会话内时间无并列
                    created_at = last_ts + TICK
                stored = replace(
                    message,
                    id=message.id or f"m-{uuid4().hex}",
                    created_at=created_at,
                    seq=last_seq + 1,
                    meta=dict(message.meta),
                )
                cdir = self._conv_root / message.conversation_id
                cdir.mkdir(parents=True, exist_ok=True)
                payload = asdict(stored)
                payload["created_at"] = _format_ts(created_at)
                line = json.dumps(payload, ensure_ascii=False)
                with (cdir / "messages.jsonl").open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
            except OSError as e:
                raise StoreUnavailableError(str(e), conversation_id=message.conversation_id)
        return stored

    def history(
        self,
        conversation_id: str,
        limit: Optional[int] = None,
        before: Optional[Cursor] = None,
    ) -> List[MessageRecord]:
        """返回游标之前最近的 limit 条消息，按时间升序排列。

        before 可以是消息 id（不包含该消息本身）或时间戳（早于该时间）。
        """

        self._check_conversation_id(conversation_id)
        limit = normalize_limit(limit, self._page_size)
        items = self._read_all(conversation_id)
        if isinstance(before, datetime):
            cutoff = _to_utc(before)
            items = [m for m in items if m.created_at < cutoff]
        elif before:
            idx = next((i for i, m in enumerate(items) if m.id == before), None)
            if idx is None:
                raise StoreInvalidError(f"Unknown cursor: {before}", conversation_id=conversation_id)
            items = items[:idx]
        return items[-limit:]

    def _tail(self, conversation_id: str) -> Tuple[int, Optional[datetime]]:
        items = self._read_all(conversation_id)
        if not items:
            return 0, None
        return max(m.seq for m in items), items[-1].created_at

    def _read_all(self, conversation_id: str) -> List[MessageRecord]:
        msgs_path = self._conv_root / conversation_id / "messages.jsonl"
        items: List[MessageRecord] = []
        try:
            if not msgs_path.exists():
                return items
            lines = msgs_path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise StoreUnavailableError(str(e), conversation_id=conversation_id)
        for line in lines:
            if not line.strip():
                continue
            try:
                items.append(self._to_message(json.loads(line)))
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.warning(
                    "Skipped corrupted message line",
                    extra={"extra": {"conversation_id": conversation_id, "error": str(e)}},
                )
        items.sort(key=lambda m: (m.created_at, m.seq))
        return items

    def _validate(self, message: MessageRecord) -> None:
        self._check_conversation_id(message.conversation_id)
        if message.author_kind not in AUTHOR_KINDS:
            raise StoreInvalidError(f"Invalid author_kind: {message.author_kind!r}")
        if not message.text:
            raise StoreInvalidError("Message text is required")

    @staticmethod
    def _check_conversation_id(conversation_id: str) -> None:
        if not conversation_id:
            raise StoreInvalidError("conversation_id is required")
        if "/" in conversation_id or "\\" in conversation_id or conversation_id in (".", ".."):
            raise StoreInvalidError(f"Invalid conversation_id: {conversation_id!r}")

    def _to_message(self, data: Dict[str, Any]) -> MessageRecord:
        return MessageRecord(
            id=data["id"],
            conversation_id=data["conversation_id"],
            author_kind=data["author_kind"],
            text=data.get("text") or "",
            created_at=_parse_ts(data["created_at"]),
            mood_tag=data.get("mood_tag"),
            seq=int(data.get("seq", 0)),
            meta=data.get("meta") or {},
        )
