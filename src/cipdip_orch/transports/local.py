from __future__ import annotations

import asyncio
import os
import shutil
from collections.abc import Mapping
from pathlib import Path

from cipdip_orch.context import RunContext
from cipdip_orch.errors import TransportError, TransportErrorKind
from cipdip_orch.transports.base import (
    STDERR,
    STDOUT,
    EventHook,
    ExitResult,
    OutputEvent,
    OutputStream,
    RoleHandle,
    RoleSpec,
    Transport,
)


class LocalTransport(Transport):
    kind = "local"

    def __init__(
        self,
        role: str,
        *,
        work_dir: Path | None = None,
        cancel_grace: float = 5.0,
        event_hook: EventHook | None = None,
    ) -> None:
        super().__init__(role, cancel_grace=cancel_grace, event_hook=event_hook)
        self.work_dir = work_dir
        self._process: asyncio.subprocess.Process | None = None
        self._handle: RoleHandle | None = None
        self._supervisor: asyncio.Task[None] | None = None
        self._stop_task: asyncio.Task[None] | None = None
        self._stop_requested = False

    @property
    def workdir(self) -> str:
        return str(self.work_dir or Path.cwd())

    def describe(self) -> str:
        return "local"

    async def stage(self, ctx: RunContext, workdir: str, files: Mapping[str, Path]) -> None:
        ctx.raise_if_cancelled()
        self._emit({"event": "stage_skip", "workdir": workdir, "files": sorted(files)})

    async def probe(self, ctx: RunContext) -> str:
        ctx.raise_if_cancelled()
        return "local host"

    async def start(self, ctx: RunContext, spec: RoleSpec) -> RoleHandle:
        ctx.raise_if_cancelled()
        if self._process is not None:
            raise TransportError(
                TransportErrorKind.START_FAILED, "role already started", role=self.role
            )
        if not spec.argv:
            raise TransportError(
                TransportErrorKind.START_FAILED, "empty command line", role=self.role
            )

        env = os.environ.copy()
        env.update(spec.env)
        cwd = spec.workdir or (str(self.work_dir) if self.work_dir else None)
        try:
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise TransportError(
                TransportErrorKind.START_FAILED,
                f"executable not found: {spec.argv[0]}",
                role=self.role,
            ) from exc
        except OSError as exc:
            raise TransportError(
                TransportErrorKind.START_FAILED,
                f"cannot start {spec.argv[0]}: {exc}",
                role=self.role,
            ) from exc

        self._process = process
        self._emit({"event": "transport_start", "pid": process.pid, "argv": spec.argv})

        events = OutputStream(self.role)
        done: asyncio.Future[ExitResult] = asyncio.get_running_loop().create_future()
        self._handle = RoleHandle(role=self.role, events=events, done=done)
        self._supervisor = asyncio.create_task(self._supervise(process, events, done))
        self._watch_cancellation(ctx, done)
        return self._handle

    async def _pump(
        self, reader: asyncio.StreamReader | None, stream: str, events: OutputStream
    ) -> None:
        if reader is None:
            return
        async for raw_line in reader:
            line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
            events.put(OutputEvent(role=self.role, stream=stream, line=line))

    async def _supervise(
        self,
        process: asyncio.subprocess.Process,
        events: OutputStream,
        done: asyncio.Future[ExitResult],
    ) -> None:
        error: str | None = None
        try:
            await asyncio.gather(
                self._pump(process.stdout, STDOUT, events),
                self._pump(process.stderr, STDERR, events),
            )
        except (OSError, ValueError) as exc:
            error = f"output read failed: {exc}"
        return_code = await process.wait()
        events.close()
        signal_name = None
        if return_code < 0:
            signal_name = f"signal {-return_code}"
        self._emit({"event": "transport_exit", "exit_code": return_code})
        if not done.done():
            done.set_result(
                ExitResult(
                    exit_code=return_code,
                    stop_requested=self._stop_requested,
                    signal=signal_name,
                    error=error,
                )
            )

    async def stop(self, grace: float) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        if self._stop_task is None:
            self._stop_requested = True
            self._stop_task = asyncio.create_task(self._terminate(process, grace))
        await asyncio.shield(self._stop_task)

    async def _terminate(self, process: asyncio.subprocess.Process, grace: float) -> None:
        try:
            process.terminate()
        except ProcessLookupError:
            return
        self._emit({"event": "transport_stop", "signal": "SIGTERM", "grace": grace})
        try:
            await asyncio.wait_for(asyncio.shield(process.wait()), timeout=grace)
            return
        except TimeoutError:
            pass
        try:
            process.kill()
        except ProcessLookupError:
            return
        self._emit({"event": "transport_stop", "signal": "SIGKILL"})
        await process.wait()

    async def fetch(self, name: str, dest: Path) -> bool:
        source = Path(self.workdir) / name
        if not source.is_file():
            return False
        dest.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.copy2, source, dest)
        return True

    async def close(self) -> None:
        await self.stop(self.cancel_grace)
        if self._supervisor is not None:
            await asyncio.gather(self._supervisor, return_exceptions=True)
        await super().close()
