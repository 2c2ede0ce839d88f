from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any, TypeVar

from cipdip_orch.errors import CancellationError

T = TypeVar("T")


class RunContext:
    """Root cancellation signal for one run, with an optional deadline.

    Every suspension point of the controller and of the transports goes
    through :meth:`wait`, which returns as soon as either the awaited work
    completes or the context is cancelled.
    """

    def __init__(self, timeout: float | None = None) -> None:
        self.timeout = timeout
        self.reason: str | None = None
        self.timed_out = False
        self._cancelled = asyncio.Event()
        self._deadline: asyncio.TimerHandle | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def start(self) -> RunContext:
        if self.timeout is not None and self.timeout > 0 and self._deadline is None:
            loop = asyncio.get_running_loop()
            self._deadline = loop.call_later(self.timeout, self._expire)
        return self

    def _expire(self) -> None:
        if not self.cancelled:
            self.timed_out = True
            self.cancel(f"run deadline of {self.timeout:g}s exceeded")

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if self.cancelled:
            return
        self.reason = reason
        self._cancelled.set()
        if self._deadline is not None:
            self._deadline.cancel()
            self._deadline = None

    def close(self) -> None:
        if self._deadline is not None:
            self._deadline.cancel()
            self._deadline = None

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancellationError(self.reason or "cancelled")

    async def cancelled_wait(self) -> None:
        await self._cancelled.wait()

    async def wait(self, awaitable: Awaitable[T], *, timeout: float | None = None) -> T:
        """Await ``awaitable`` unless the context is cancelled first.

        Raises :class:`CancellationError` on cancellation and ``TimeoutError``
        when ``timeout`` elapses. Coroutines are cancelled on either outcome;
        futures handed in by the caller are left untouched.
        """
        self.raise_if_cancelled()
        owned = asyncio.iscoroutine(awaitable)
        work: asyncio.Future[Any] = asyncio.ensure_future(awaitable)
        watcher = asyncio.ensure_future(self._cancelled.wait())
        try:
            done, _ = await asyncio.wait(
                {work, watcher},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            if owned:
                work.cancel()
            raise
        finally:
            watcher.cancel()

        if work in done:
            return work.result()
        if owned:
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
        if self.cancelled:
            raise CancellationError(self.reason or "cancelled")
        raise TimeoutError(f"timed out after {timeout:g}s")

    async def sleep(self, delay: float) -> None:
        await self.wait(asyncio.sleep(delay))
