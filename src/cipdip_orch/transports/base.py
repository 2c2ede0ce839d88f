from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from cipdip_orch.context import RunContext

EventHook = Callable[[dict[str, Any]], None]

STDOUT = "stdout"
STDERR = "stderr"


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class OutputEvent:
    role: str
    stream: str
    line: str
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "stream": self.stream,
            "line": self.line,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True)
class RoleSpec:
    role: str
    argv: list[str]
    workdir: str | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ExitResult:
    exit_code: int
    stop_requested: bool = False
    signal: str | None = None
    error: str | None = None


class OutputStream:
    """Single-consumer async stream of items, closed exactly once.

    Producers call :meth:`put` without ever blocking; items put after
    :meth:`close` are ignored.
    """

    _CLOSED = object()

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._exhausted = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, item: Any) -> None:
        if self._closed:
            return
        self._queue.put_nowait(item)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(self._CLOSED)

    def discard(self) -> int:
        """Drop buffered items; returns how many were dropped."""
        dropped = 0
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is self._CLOSED:
                self._queue.put_nowait(item)
                break
            dropped += 1
        return dropped

    def __aiter__(self) -> OutputStream:
        return self

    async def __anext__(self) -> Any:
        if self._exhausted:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is self._CLOSED:
            self._exhausted = True
            raise StopAsyncIteration
        return item


@dataclass(slots=True)
class RoleHandle:
    role: str
    events: OutputStream
    done: asyncio.Future[ExitResult]

    async def wait(self) -> ExitResult:
        return await asyncio.shield(self.done)


class Transport(ABC):
    """Uniform way to stage, run and stop one role's process."""

    kind = "abstract"

    def __init__(
        self,
        role: str,
        *,
        cancel_grace: float = 5.0,
        event_hook: EventHook | None = None,
    ) -> None:
        self.role = role
        self.cancel_grace = cancel_grace
        self.event_hook = event_hook
        self._watcher: asyncio.Task[None] | None = None

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is None:
            return
        self.event_hook({"role": self.role, "transport": self.kind, **payload})

    def _watch_cancellation(self, ctx: RunContext, done: asyncio.Future[ExitResult]) -> None:
        async def watch() -> None:
            waiter = asyncio.ensure_future(ctx.cancelled_wait())
            try:
                await asyncio.wait({waiter, done}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                waiter.cancel()
            if ctx.cancelled and not done.done():
                self._emit({"event": "transport_cancel", "reason": ctx.reason})
                await self.stop(self.cancel_grace)

        self._watcher = asyncio.create_task(watch())

    @property
    @abstractmethod
    def workdir(self) -> str:
        """Directory the role process runs in."""

    @abstractmethod
    async def stage(self, ctx: RunContext, workdir: str, files: Mapping[str, Path]) -> None:
        """Prepare ``workdir`` and copy ``files`` (remote name -> local path) into it."""

    @abstractmethod
    async def start(self, ctx: RunContext, spec: RoleSpec) -> RoleHandle:
        """Start the role; returns once the process or session exists."""

    @abstractmethod
    async def stop(self, grace: float) -> None:
        """Terminate gracefully, forcing after ``grace`` seconds. Idempotent."""

    @abstractmethod
    async def fetch(self, name: str, dest: Path) -> bool:
        """Copy ``name`` from the working directory to ``dest``."""

    @abstractmethod
    async def probe(self, ctx: RunContext) -> str:
        """Check the agent can run commands; returns a short status line."""

    @abstractmethod
    def describe(self) -> str:
        """Canonical agent string for this transport."""

    async def close(self) -> None:
        if self._watcher is not None and not self._watcher.done():
            self._watcher.cancel()
            await asyncio.gather(self._watcher, return_exceptions=True)
        self._watcher = None
