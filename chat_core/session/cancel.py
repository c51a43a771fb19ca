"""Cancellation token threaded through the transport read loop."""

from __future__ import annotations

import threading

from chat_core.domain.exceptions import StreamCancelledError


class CancelToken:
    """可跨线程设置的取消标记；读取循环在每次读取前检查。"""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = "Request cancelled"

    def cancel(self, reason: str | None = None) -> None:
        if reason:
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise StreamCancelledError(self.reason)
