from __future__ import annotations

import asyncio
import json
import time
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from cipdip_orch.transports.base import EventHook, OutputEvent, OutputStream

STATS_FIELDS = ("total_requests", "successful_requests", "failed_requests", "timeouts")


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class StatsSnapshot:
    role: str
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    timeouts: int = 0
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "timeouts": self.timeouts,
            "timestamp": self.timestamp.isoformat(),
        }


def parse_stats_line(line: str) -> dict[str, int] | None:
    """Decode a ``{"type": "stats", "stats": {...}}`` line, or return None."""
    stripped = line.strip()
    if not stripped.startswith("{") or '"stats"' not in stripped:
        return None
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict) or payload.get("type") != "stats":
        return None
    stats = payload.get("stats")
    if not isinstance(stats, dict):
        return None
    counters: dict[str, int] = {}
    for name in STATS_FIELDS:
        value = stats.get(name, 0)
        if isinstance(value, bool) or not isinstance(value, int | float):
            value = 0
        counters[name] = int(value)
    return counters


class Tee:
    """Copies every item of one stream into independent branches."""

    def __init__(self, source: AsyncIterator[Any], branches: int = 2, name: str = "") -> None:
        self.source = source
        self.branches = [OutputStream(name) for _ in range(branches)]
        self._task: asyncio.Task[None] | None = None

    def start(self) -> list[OutputStream]:
        if self._task is None:
            self._task = asyncio.create_task(self._run())
        return self.branches

    async def _run(self) -> None:
        try:
            async for item in self.source:
                for branch in self.branches:
                    branch.put(item)
        finally:
            for branch in self.branches:
                branch.close()

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)


class OutputMultiplexer:
    """Fan-in of role output streams into one consumer-facing stream.

    Log lines are queued without bound and never dropped. Stats snapshots are
    rate-limited per role and held in a bounded buffer that drops its oldest
    entry when a slow consumer lets it fill up.
    """

    def __init__(
        self,
        *,
        stats_interval: float = 1.0,
        stats_buffer: int = 64,
        event_hook: EventHook | None = None,
    ) -> None:
        self.stats_interval = stats_interval
        self.event_hook = event_hook
        self.dropped_stats = 0
        # every line once, in arrival order; the consumer reads it through a cursor
        self.history: list[OutputEvent] = []
        self._cursor = 0
        self._stats: deque[StatsSnapshot] = deque(maxlen=max(1, stats_buffer))
        self._latest: dict[str, StatsSnapshot] = {}
        self._last_emit: dict[str, float] = {}
        self._pumps: set[asyncio.Task[None]] = set()
        self._wakeup = asyncio.Event()
        self._finished = False

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def attach(self, stream: AsyncIterator[OutputEvent]) -> None:
        if self._finished:
            raise RuntimeError("multiplexer already finished")
        task = asyncio.create_task(self._pump(stream))
        self._pumps.add(task)

    def merge(self, *streams: AsyncIterator[OutputEvent], final: bool = True) -> OutputMultiplexer:
        for stream in streams:
            self.attach(stream)
        if final:
            self.finish()
        return self

    def finish(self) -> None:
        self._finished = True
        self._wakeup.set()

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait until every attached stream has ended; False on timeout."""
        if not self._pumps:
            return True
        _, pending = await asyncio.wait(list(self._pumps), timeout=timeout)
        return not pending

    def latest_stats(self, role: str) -> StatsSnapshot | None:
        return self._latest.get(role)

    def transcript(self, role: str) -> list[OutputEvent]:
        return [event for event in self.history if event.role == role]

    async def _pump(self, stream: AsyncIterator[OutputEvent]) -> None:
        try:
            async for event in stream:
                self._accept(event)
        finally:
            self._pumps.discard(asyncio.current_task())
            self._wakeup.set()

    def _accept(self, event: OutputEvent) -> None:
        self.history.append(event)
        counters = parse_stats_line(event.line)
        if counters is not None:
            snapshot = StatsSnapshot(role=event.role, timestamp=event.timestamp, **counters)
            self._latest[event.role] = snapshot
            now = time.monotonic()
            last = self._last_emit.get(event.role)
            if last is None or now - last >= self.stats_interval:
                self._last_emit[event.role] = now
                if len(self._stats) == self._stats.maxlen:
                    self.dropped_stats += 1
                    self._emit({"event": "stats_dropped", "role": event.role, "dropped": self.dropped_stats})
                self._stats.append(snapshot)
        self._wakeup.set()

    def __aiter__(self) -> OutputMultiplexer:
        return self

    async def __anext__(self) -> OutputEvent | StatsSnapshot:
        while True:
            if self._cursor < len(self.history):
                self._cursor += 1
                return self.history[self._cursor - 1]
            if self._stats:
                return self._stats.popleft()
            if self._finished and not self._pumps:
                raise StopAsyncIteration
            self._wakeup.clear()
            await self._wakeup.wait()
