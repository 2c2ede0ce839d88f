from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable
from typing import Any

from cipdip_orch.context import RunContext
from cipdip_orch.errors import ReadinessError, ReadinessTimeoutError
from cipdip_orch.transports.base import STDOUT, EventHook, OutputEvent

READY_EVENT = "server_ready"
COMPACT_READY_MARKER = '"event":"server_ready"'
TCP_POLL_INTERVAL = 0.5


class ReadinessStrategy(ABC):
    name = "abstract"
    poll_interval: float | None = None

    @abstractmethod
    def observe(self, event: OutputEvent) -> bool:
        """Return True once ``event`` proves the server is ready."""

    async def poll(self) -> bool:
        return False


class StructuredStdoutStrategy(ReadinessStrategy):
    """Waits for the server's JSON ``server_ready`` status line."""

    name = "structured_stdout"

    def __init__(self) -> None:
        self.listen: str | None = None

    def observe(self, event: OutputEvent) -> bool:
        if event.stream != STDOUT:
            return False
        line = event.line.strip()
        if not line.startswith("{"):
            return False
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            return COMPACT_READY_MARKER in line
        if isinstance(payload, dict) and payload.get("event") == READY_EVENT:
            listen = payload.get("listen")
            self.listen = listen if isinstance(listen, str) else None
            return True
        return False


class LineMarkerStrategy(ReadinessStrategy):
    name = "line_marker"

    def __init__(self, marker: str = READY_EVENT) -> None:
        self.marker = marker or READY_EVENT

    def observe(self, event: OutputEvent) -> bool:
        return self.marker in event.line


class TcpConnectStrategy(ReadinessStrategy):
    name = "tcp_connect"
    poll_interval = TCP_POLL_INTERVAL

    def __init__(self, host: str, port: int, connect_timeout: float = 1.0) -> None:
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout

    def observe(self, event: OutputEvent) -> bool:
        return False

    async def poll(self) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=self.connect_timeout
            )
        except (OSError, TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True


def build_strategy(
    method: str, *, marker: str = "", host: str = "", port: int = 0
) -> ReadinessStrategy:
    if method == StructuredStdoutStrategy.name:
        return StructuredStdoutStrategy()
    if method == LineMarkerStrategy.name:
        return LineMarkerStrategy(marker)
    if method == TcpConnectStrategy.name:
        return TcpConnectStrategy(host, port)
    raise ValueError(f"unknown readiness method: {method}")


async def _first(*awaitables: Awaitable[Any]) -> Any:
    tasks = [asyncio.ensure_future(item) for item in awaitables]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        return next(iter(done)).result()
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


async def wait_ready(
    ctx: RunContext,
    events: AsyncIterator[OutputEvent],
    strategy: ReadinessStrategy,
    timeout: float,
    *,
    event_hook: EventHook | None = None,
) -> OutputEvent | None:
    """Block until the server is ready, its output ends, or ``timeout`` elapses.

    Returns the event that satisfied the strategy (None for active probes).
    """

    async def consume() -> OutputEvent:
        async for event in events:
            if strategy.observe(event):
                return event
        raise ReadinessError("server output ended before readiness was reported")

    async def probe() -> None:
        interval = strategy.poll_interval or TCP_POLL_INTERVAL
        while not await strategy.poll():
            await asyncio.sleep(interval)

    watchers: list[Awaitable[Any]] = [consume()]
    if strategy.poll_interval is not None:
        watchers.append(probe())
    try:
        result = await ctx.wait(_first(*watchers), timeout=timeout)
    except TimeoutError:
        raise ReadinessTimeoutError(timeout, strategy.name) from None
    if event_hook is not None:
        event_hook({"event": "readiness_ok", "method": strategy.name})
    return result
