"""
协作式取消令牌
同一取消原语同时服务于调用方取消和超时，通过 reason 区分
"""

import asyncio
from enum import Enum
from typing import Callable, List, Optional


class AbortReason(str, Enum):
    """Why a token fired."""

    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class CancellationToken:
    """Cooperative cancellation signal for one logical request."""

    def __init__(self):
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[AbortReason], None]] = []
        self.reason: Optional[AbortReason] = None

    @property
    def is_cancelled(self) -> bool:
        return self.reason is not None

    def cancel(self, reason: AbortReason = AbortReason.CANCELLED) -> None:
        """Fire the token. Only the first reason is kept."""
        if self.reason is not None:
            return
        self.reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(reason)

    def add_callback(self, callback: Callable[[AbortReason], None]) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        if self.reason is not None:
            callback(self.reason)
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    async def wait(self) -> AbortReason:
        await self._event.wait()
        return self.reason  # type: ignore[return-value]
