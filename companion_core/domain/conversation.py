from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Literal, Optional, Protocol, Union


AuthorKind = Literal["user", "assistant"]

DEFAULT_PAGE_SIZE = 50


@dataclass(frozen=True)
class MessageRecord:
    """会话中的一条消息，写入后不可变。

    id / created_at / seq 由存储层在 append 时分配；
    seq 为会话内插入序号，用于 created_at 相同时的排序。
    """

    conversation_id: str
    author_kind: AuthorKind
    text: str
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    mood_tag: Optional[str] = None
    seq: int = 0
    meta: Dict[str, Any] = field(default_factory=dict)


Cursor = Union[str, datetime]


class ConversationStore(Protocol):
    def append(self, message: MessageRecord) -> MessageRecord:
        ...

    def history(
        self,
        conversation_id: str,
        limit: Optional[int] = None,
        before: Optional[Cursor] = None,
    ) -> List[MessageRecord]:
        ...


def normalize_limit(limit: Optional[int], default: int = DEFAULT_PAGE_SIZE) -> int:
    """非正数或缺省的 limit 回退到默认页大小，不视为错误。"""

    if limit is None or limit <= 0:
        return default
    return int(limit)


def iter_history(
    store: ConversationStore,
    conversation_id: str,
    page_size: int = DEFAULT_PAGE_SIZE,
    before: Optional[Cursor] = None,
) -> Iterator[List[MessageRecord]]:
    """从新到旧逐页遍历会话历史。

    每页内部按时间升序；下一页以本页最旧消息的 id 作为游标。
    生成器是惰性的，重新调用即可从头开始。
    """

    cursor = before
    while True:
        page = store.history(conversation_id, limit=page_size, before=cursor)
        if not page:
            return
        yield page
        cursor = page[0].id
