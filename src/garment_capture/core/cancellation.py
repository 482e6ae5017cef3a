"""Cooperative cancellation shared by the pipeline stages."""

import asyncio
from typing import Callable, List, Optional

from .exceptions import ProcessingError, ProcessingErrorCode


class CancellationToken:
    """
    One-shot cancellation signal observed at every suspension point.

    Tokens can be linked: a token created with ``CancellationToken.linked``
    fires as soon as any of its parents fires. Call ``detach`` once the linked
    token's work is over so long-lived parents do not keep its callback.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[Optional[str]], None]] = []
        self._parents: List["CancellationToken"] = []
        self.reason: Optional[str] = None

    @classmethod
    def linked(cls, *parents: Optional["CancellationToken"]) -> "CancellationToken":
        """Create a token that fires when any non-None parent fires."""
        token = cls()
        for parent in parents:
            if parent is None:
                continue
            if parent.is_cancelled:
                token.cancel(parent.reason)
                break
            parent.add_callback(token.cancel)
            token._parents.append(parent)
        return token

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        """Fire the token; later calls are no-ops."""
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(reason)
        self.detach()

    def cancel_after(self, delay: float) -> asyncio.TimerHandle:
        """Fire the token after ``delay`` seconds on the running loop."""
        loop = asyncio.get_running_loop()
        return loop.call_later(delay, self.cancel, "deadline")

    def add_callback(self, callback: Callable[[Optional[str]], None]) -> None:
        if self.is_cancelled:
            callback(self.reason)
        else:
            self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[Optional[str]], None]) -> None:
        """Forget ``callback``; unknown callbacks are ignored."""
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def detach(self) -> None:
        """Stop listening to parent tokens; this token's own state is kept."""
        parents, self._parents = self._parents, []
        for parent in parents:
            parent.remove_callback(self.cancel)

    async def wait(self) -> None:
        """Block until the token fires."""
        await self._event.wait()

    async def sleep(self, delay: float) -> bool:
        """Sleep up to ``delay`` seconds; return True if the token fired first."""
        if delay <= 0:
            return self.is_cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise ProcessingError(
                ProcessingErrorCode.CANCELLED, self.reason or "Processing cancelled"
            )
