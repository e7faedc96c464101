"""单轮对话的取消令牌。

调用方断开连接时调用 cancel()；设置 deadline 后到期也视为取消。
编排器在每次尝试前后检查令牌，并用 remaining() 裁剪单次调用的超时。
"""

import threading
import time
from typing import Optional


class CancelToken:
    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def cancel(self) -> None:
        self._event.set()

    def remaining(self) -> Optional[float]:
        """距离 deadline 的剩余秒数，未设置 deadline 时返回 None。"""

        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def wait(self, seconds: float) -> bool:
        """最多等待 seconds 秒，期间被取消则提前返回 True。"""

        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        if seconds > 0:
            self._event.wait(seconds)
        return self.cancelled
