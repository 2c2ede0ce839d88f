from __future__ import annotations

import asyncio
import posixpath
import shlex
import socket
import time
from collections import deque
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from cipdip_orch import __version__
from cipdip_orch.bundle import ROLE_FILES, Bundle, BundleBuilder, RoleArtifacts
from cipdip_orch.context import RunContext
from cipdip_orch.errors import (
    BundleError,
    CancellationError,
    ExecutionError,
    OrchestrationError,
    TransportError,
    ValidationError,
)
from cipdip_orch.manifest import (
    AUTO_RUN_ID,
    BUNDLE_FORMATS,
    AgentMapping,
    AgentStatus,
    Manifest,
    resolve_agents,
)
from cipdip_orch.multiplex import OutputMultiplexer, StatsSnapshot, Tee
from cipdip_orch.readiness import build_strategy, wait_ready
from cipdip_orch.resolve import ResolvedManifest, resolve_manifest
from cipdip_orch.transports import (
    AgentSpec,
    EventHook,
    ExitResult,
    LocalAgent,
    OutputEvent,
    OutputStream,
    RoleHandle,
    RoleSpec,
    SSHAgent,
    Transport,
    build_transport,
    format_agent,
)

EVENT_HISTORY = 200
UNSPECIFIED_ADDRESSES = {"", "0.0.0.0", "::"}


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def generate_run_id() -> str:
    return f"{datetime.now(UTC).strftime('%Y-%m-%d_%H-%M-%S')}-{uuid4().hex[:6]}"


class Phase(StrEnum):
    INIT = "init"
    STAGE = "stage"
    SERVER_START = "server_start"
    SERVER_READY = "server_ready"
    CLIENT_START = "client_start"
    CLIENT_DONE = "client_done"
    SERVER_STOP = "server_stop"
    COLLECT = "collect"
    BUNDLE = "bundle"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


PHASE_ORDER = (
    Phase.INIT,
    Phase.STAGE,
    Phase.SERVER_START,
    Phase.SERVER_READY,
    Phase.CLIENT_START,
    Phase.CLIENT_DONE,
    Phase.SERVER_STOP,
    Phase.COLLECT,
    Phase.BUNDLE,
)
TERMINAL_PHASES = (Phase.DONE, Phase.ERROR, Phase.CANCELLED)


class RunStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class PhaseUpdate:
    phase: Phase
    message: str
    at: str = field(default_factory=_utcnow_iso)
    error: str | None = None


class PhaseObserver(Protocol):
    def on_phase(self, update: PhaseUpdate) -> None: ...


class _CallbackObserver:
    def __init__(self, callback: Callable[[Phase, str], Any]) -> None:
        self.callback = callback

    def on_phase(self, update: PhaseUpdate) -> None:
        self.callback(update.phase, update.message)


@dataclass(slots=True)
class Options:
    bundle_dir: Path | str = "runs"
    bundle_format: str | None = None
    timeout: float | None = 1800.0
    dry_run: bool = False
    verbose: bool = False
    agents: dict[str, str] = field(default_factory=dict)
    role_command: list[str] = field(default_factory=lambda: ["cipdip"])
    remote_command: list[str] = field(default_factory=lambda: ["cipdip"])
    stop_grace: float = 10.0
    cancel_grace: float = 5.0
    finalize_grace: float = 15.0
    client_backstop_grace: float = 10.0
    stats_interval: float = 1.0
    work_dir: Path | None = None
    event_hook: EventHook | None = None


@dataclass(frozen=True, slots=True)
class Result:
    run_id: str
    status: RunStatus
    per_role_exit_code: dict[str, int]
    bundle_path: Path | None
    error: str | None = None
    role_errors: dict[str, str] = field(default_factory=dict)
    phases_completed: tuple[Phase, ...] = ()
    started_at: str = ""
    finished_at: str = ""
    dry_run: bool = False
    bundle_error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "per_role_exit_code": dict(self.per_role_exit_code),
            "bundle_path": str(self.bundle_path) if self.bundle_path else None,
            "error": self.error,
            "role_errors": dict(self.role_errors),
            "phases_completed": [phase.value for phase in self.phases_completed],
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "dry_run": self.dry_run,
            "bundle_error": self.bundle_error,
        }


@dataclass(slots=True)
class _RoleRun:
    name: str
    agent: AgentSpec
    transport: Transport
    argv: list[str] = field(default_factory=list)
    staged: dict[str, Path] = field(default_factory=dict)
    handle: RoleHandle | None = None
    exit: ExitResult | None = None
    error: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    collected: dict[str, Path] = field(default_factory=dict)

    @property
    def remote(self) -> bool:
        return isinstance(self.agent, SSHAgent)

    @property
    def running(self) -> bool:
        return self.handle is not None and not self.handle.done.done()


class Controller:
    """Runs one manifest through the phase sequence and bundles the outcome.

    Construction validates the manifest and builds one transport per present
    role; nothing is started until :meth:`run`. A controller runs once.
    """

    def __init__(self, manifest: Manifest, options: Options | None = None) -> None:
        self.manifest = manifest
        self.options = options or Options()
        manifest.validate()
        self.bundle_format = self.options.bundle_format or manifest.artifacts.bundle_format
        if self.bundle_format not in BUNDLE_FORMATS:
            raise ValidationError("bundle_format", f"unknown format {self.bundle_format!r}")

        agents = resolve_agents(manifest, self.options.agents)
        self._roles: dict[str, _RoleRun] = {}
        for name, agent in agents.items():
            transport = build_transport(
                name,
                agent,
                work_dir=self.options.work_dir,
                cancel_grace=self.options.cancel_grace,
                event_hook=self._transport_event,
            )
            self._roles[name] = _RoleRun(name=name, agent=agent, transport=transport)

        self.run_id: str | None = None
        self.result: Result | None = None
        self.events_log: deque[dict[str, Any]] = deque(maxlen=EVENT_HISTORY)
        self.updates: list[PhaseUpdate] = []
        self._observers: list[PhaseObserver] = []
        self._callback: _CallbackObserver | None = None
        self._ctx: RunContext | None = None
        self._pending_cancel: str | None = None
        self._started = False
        self._closed = False
        self._current: Phase | None = None
        self._completed: list[Phase] = []
        self._terminal_emitted = False
        self._resolved: ResolvedManifest | None = None
        self._mux = OutputMultiplexer(
            stats_interval=self.options.stats_interval, event_hook=self._record
        )

    # telemetry

    def _record(self, payload: dict[str, Any]) -> None:
        event = {"run_id": self.run_id, "at": _utcnow_iso(), **payload}
        self.events_log.append(event)
        if self.options.event_hook is not None:
            self.options.event_hook(event)

    def _transport_event(self, payload: dict[str, Any]) -> None:
        name = str(payload.get("event", ""))
        if self.options.verbose or name.endswith("_failed"):
            self._record(payload)

    def set_phase_callback(self, callback: Callable[[Phase, str], Any] | None) -> None:
        if self._callback is not None:
            self._observers.remove(self._callback)
            self._callback = None
        if callback is not None:
            self._callback = _CallbackObserver(callback)
            self._observers.append(self._callback)

    def add_observer(self, observer: PhaseObserver) -> None:
        self._observers.append(observer)

    def _notify(self, phase: Phase, message: str, error: str | None = None) -> None:
        update = PhaseUpdate(phase=phase, message=message, error=error)
        self.updates.append(update)
        payload: dict[str, Any] = {"event": "phase", "phase": phase.value, "message": message}
        if error:
            payload["error"] = error
        self._record(payload)
        for observer in list(self._observers):
            try:
                observer.on_phase(update)
            except Exception as exc:
                self._record(
                    {"event": "observer_error", "phase": phase.value, "error": repr(exc)}
                )

    # public surface

    @property
    def roles(self) -> list[str]:
        return list(self._roles)

    def transport(self, role: str) -> Transport:
        return self._roles[role].transport

    def events(self) -> AsyncIterator[OutputEvent | StatsSnapshot]:
        """Merged role output and stats snapshots; single consumer per run."""
        return self._mux

    def latest_stats(self, role: str) -> StatsSnapshot | None:
        return self._mux.latest_stats(role)

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if self._ctx is not None:
            self._ctx.cancel(reason)
        elif self._pending_cancel is None:
            self._pending_cancel = reason

    def agent_mappings(self) -> list[AgentMapping]:
        return [
            AgentMapping(role=name, transport=format_agent(state.agent))
            for name, state in self._roles.items()
        ]

    async def validate_agents(self, timeout: float = 15.0) -> list[AgentMapping]:
        """Probe every role's agent; local agents always report ok."""
        mappings: list[AgentMapping] = []
        for mapping in self.agent_mappings():
            state = self._roles[mapping.role]
            self._record({"event": "agent_check", "role": mapping.role, "status": AgentStatus.CHECKING.value})
            ctx = RunContext(timeout).start()
            try:
                await state.transport.probe(ctx)
            except (TransportError, CancellationError, TimeoutError) as exc:
                mapping = mapping.with_status(AgentStatus.ERROR, str(exc) or type(exc).__name__)
            else:
                mapping = mapping.with_status(AgentStatus.OK)
            finally:
                ctx.close()
            self._record(
                {"event": "agent_check", "role": mapping.role, "status": mapping.status.value, "error": mapping.error}
            )
            mappings.append(mapping)
        return mappings

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for state in self._roles.values():
            await state.transport.close()
        if self._ctx is not None:
            self._ctx.close()

    # run

    async def run(self) -> Result:
        if self._started:
            raise RuntimeError("controller has already run")
        self._started = True

        self.run_id = self.manifest.run_id
        if self.run_id == AUTO_RUN_ID:
            self.run_id = generate_run_id()
        self._resolved = resolve_manifest(
            self.manifest,
            self.run_id,
            work_dir=self.options.work_dir,
            tool_version=__version__,
        )
        for state in self._roles.values():
            state.argv = self._role_argv(state)

        ctx = RunContext(self.options.timeout)
        self._ctx = ctx
        ctx.start()
        if self._pending_cancel is not None:
            ctx.cancel(self._pending_cancel)

        started_at = _utcnow_iso()
        started_clock = time.monotonic()
        run_dir = Path(self.options.bundle_dir) / self.run_id
        failure: BaseException | None = None
        interrupted = False

        try:
            await self._execute(ctx, run_dir)
        except asyncio.CancelledError:
            interrupted = True
            ctx.cancel("run task cancelled")
            failure = CancellationError("run task cancelled")
        except (OrchestrationError, OSError) as exc:
            failure = exc

        if failure is not None:
            error_text = self._describe_failure(ctx, failure)
            phase = self._current or Phase.INIT
            self._notify(phase, f"{phase.value} failed: {error_text}", error=error_text)

        result = await self._finalize(ctx, run_dir, failure, started_at, started_clock)
        self.result = result
        ctx.close()
        if interrupted:
            raise asyncio.CancelledError()
        return result

    def _describe_failure(self, ctx: RunContext, failure: BaseException) -> str:
        if ctx.timed_out:
            return f"TimeoutError: {ctx.reason}"
        return str(failure) or type(failure).__name__

    def _role_argv(self, state: _RoleRun) -> list[str]:
        assert self._resolved is not None
        if not state.remote:
            return [*self.options.role_command, *self._resolved.role_args(state.name)]
        profile_path = None
        staged = self._staged_profile(state)
        if staged is not None:
            name, _ = staged
            profile_path = posixpath.join(state.transport.workdir, name)
            state.staged = {name: Path(self._resolved.profile_path)}
        return [*self.options.remote_command, *self._resolved.role_args(state.name, profile_path)]

    def _staged_profile(self, state: _RoleRun) -> tuple[str, Path] | None:
        assert self._resolved is not None
        if not self._resolved.profile_path:
            return None
        if self.manifest.profile.distribution not in ("inline", "push"):
            return None
        path = Path(self._resolved.profile_path)
        if not path.is_file():
            return None
        return path.name, path

    async def _step(self, ctx: RunContext, phase: Phase, message: str) -> None:
        ctx.raise_if_cancelled()
        self._current = phase
        self._notify(phase, message)

    def _done(self, phase: Phase) -> None:
        self._completed.append(phase)

    async def _execute(self, ctx: RunContext, run_dir: Path) -> None:
        dry_run = self.options.dry_run
        server = self._roles.get("server")
        client = self._roles.get("client")

        await self._step(ctx, Phase.INIT, f"run {self.run_id} -> {run_dir}")
        run_dir.mkdir(parents=True, exist_ok=True)
        self._done(Phase.INIT)

        await self._step(ctx, Phase.STAGE, "staging remote working directories")
        for state in self._roles.values():
            if not state.remote:
                continue
            if dry_run:
                self._record({"event": "stage_skipped", "role": state.name, "reason": "dry run"})
                continue
            try:
                await state.transport.stage(ctx, state.transport.workdir, state.staged)
            except TransportError as exc:
                state.error = str(exc)
                raise
        self._done(Phase.STAGE)

        if dry_run:
            for phase in (
                Phase.SERVER_START,
                Phase.SERVER_READY,
                Phase.CLIENT_START,
                Phase.CLIENT_DONE,
                Phase.SERVER_STOP,
            ):
                await self._step(ctx, phase, "dry run: skipped")
                self._done(phase)
            return

        readiness_branch: OutputStream | None = None
        await self._step(ctx, Phase.SERVER_START, self._start_message(server))
        if server is not None:
            handle = await self._start_role(ctx, server)
            mux_branch, readiness_branch = Tee(handle.events, 2, name="server").start()
            self._mux.attach(mux_branch)
        self._done(Phase.SERVER_START)

        await self._step(ctx, Phase.SERVER_READY, self._readiness_message(server))
        if server is not None and readiness_branch is not None:
            try:
                await self._wait_server_ready(ctx, server, readiness_branch)
            finally:
                readiness_branch.close()
                readiness_branch.discard()
        self._done(Phase.SERVER_READY)

        await self._step(ctx, Phase.CLIENT_START, self._start_message(client))
        if client is not None:
            handle = await self._start_role(ctx, client)
            self._mux.attach(handle.events)
        self._done(Phase.CLIENT_START)

        await self._step(ctx, Phase.CLIENT_DONE, "waiting for client to finish")
        if client is not None:
            await self._wait_client(ctx, client)
        self._done(Phase.CLIENT_DONE)

        await self._step(ctx, Phase.SERVER_STOP, "stopping server")
        if server is not None:
            await self._stop_server(ctx, server)
        self._done(Phase.SERVER_STOP)

    def _start_message(self, state: _RoleRun | None) -> str:
        if state is None:
            return "role not present"
        return f"starting {state.name} on {format_agent(state.agent)}"

    def _readiness_message(self, state: _RoleRun | None) -> str:
        if state is None:
            return "no server role"
        readiness = self.manifest.readiness
        return f"waiting for server readiness ({readiness.method}, {readiness.timeout_seconds}s)"

    async def _start_role(self, ctx: RunContext, state: _RoleRun) -> RoleHandle:
        spec = RoleSpec(
            role=state.name,
            argv=list(state.argv),
            workdir=state.transport.workdir if state.remote else None,
        )
        try:
            handle = await state.transport.start(ctx, spec)
        except TransportError as exc:
            state.error = str(exc)
            raise
        state.handle = handle
        state.started_at = _utcnow_iso()
        handle.done.add_done_callback(lambda _: self._role_finished(state))
        return handle

    def _role_finished(self, state: _RoleRun) -> None:
        assert state.handle is not None
        state.finished_at = _utcnow_iso()
        if not state.handle.done.cancelled():
            state.exit = state.handle.done.result()

    def _readiness_host(self, state: _RoleRun) -> str:
        listen_ip = self.manifest.network.data_plane.server_listen_ip
        if listen_ip not in UNSPECIFIED_ADDRESSES:
            return listen_ip
        if isinstance(state.agent, LocalAgent):
            return "127.0.0.1"
        return state.agent.host

    async def _wait_server_ready(
        self, ctx: RunContext, state: _RoleRun, branch: OutputStream
    ) -> None:
        readiness = self.manifest.readiness
        strategy = build_strategy(
            readiness.method,
            marker=readiness.marker,
            host=self._readiness_host(state),
            port=self.manifest.network.data_plane.target_port,
        )
        try:
            await wait_ready(
                ctx, branch, strategy, float(readiness.timeout_seconds), event_hook=self._record
            )
        except OrchestrationError as exc:
            if not isinstance(exc, CancellationError):
                state.error = str(exc)
            raise

    async def _wait_client(self, ctx: RunContext, state: _RoleRun) -> None:
        assert state.handle is not None
        client = self.manifest.roles.client
        duration = client.duration_seconds if client is not None else 0
        backstop = duration + self.options.client_backstop_grace if duration > 0 else None
        try:
            exit_result = await ctx.wait(state.handle.done, timeout=backstop)
        except TimeoutError:
            self._record({"event": "client_backstop", "after_seconds": backstop})
            await ctx.wait(state.transport.stop(self.options.stop_grace))
            await ctx.wait(state.handle.done)
            return
        if exit_result.exit_code != 0:
            error = ExecutionError(state.name, exit_result.exit_code, exit_result.error or "")
            state.error = str(error)
            raise error

    async def _stop_server(self, ctx: RunContext, state: _RoleRun) -> None:
        assert state.handle is not None
        done = state.handle.done
        if done.done():
            exit_result = done.result()
            if exit_result.exit_code != 0 and not exit_result.stop_requested:
                error = ExecutionError(
                    state.name, exit_result.exit_code, "exited before it was stopped"
                )
                state.error = str(error)
                raise error
            return
        await ctx.wait(state.transport.stop(self.options.stop_grace))
        await ctx.wait(done)

    # finalization

    async def _stop_running(self, grace: float) -> None:
        running = [state for state in self._roles.values() if state.running]
        if not running:
            return
        await asyncio.gather(
            *(state.transport.stop(grace) for state in running), return_exceptions=True
        )

    async def _collect(self, run_dir: Path) -> None:
        await self._stop_running(self.options.cancel_grace)
        self._mux.finish()
        if not await self._mux.drain(self.options.cancel_grace):
            self._record({"event": "collect_incomplete", "reason": "output streams still open"})
        if self.options.dry_run:
            return
        for state in self._roles.values():
            if state.handle is None:
                continue
            for name in self.manifest.artifacts.include:
                target_name = Path(name).name
                if target_name in ROLE_FILES:
                    self._record({"event": "collect_skipped", "role": state.name, "file": name})
                    continue
                dest = run_dir / state.name / target_name
                if await state.transport.fetch(name, dest):
                    state.collected[target_name] = dest
                    self._record({"event": "collect_file", "role": state.name, "file": name})

    def _stdout_text(self, role: str) -> str:
        lines = []
        for event in self._mux.transcript(role):
            prefix = "[stderr] " if event.stream == "stderr" else ""
            lines.append(f"{prefix}{event.line}\n")
        return "".join(lines)

    def _role_artifacts(self, state: _RoleRun) -> RoleArtifacts:
        assert self._resolved is not None
        agent = format_agent(state.agent)
        workdir = state.transport.workdir
        command = f"# agent: {agent}\n# workdir: {workdir}\n{shlex.join(state.argv)}\n"
        transcript = self._mux.transcript(state.name)
        latest = self._mux.latest_stats(state.name)
        summary = {
            "role": state.name,
            "agent": agent,
            "transport": state.transport.kind,
            "argv": list(state.argv),
            "dry_run": self.options.dry_run,
            "started": state.handle is not None,
            "started_at": state.started_at,
            "finished_at": state.finished_at,
            "exit_code": state.exit.exit_code if state.exit else None,
            "stop_requested": state.exit.stop_requested if state.exit else False,
            "error": state.error,
        }
        metrics = {
            "role": state.name,
            "output_lines": sum(1 for event in transcript if event.stream == "stdout"),
            "stderr_lines": sum(1 for event in transcript if event.stream == "stderr"),
            "stats": latest.to_dict() if latest else None,
            "stats_dropped": self._mux.dropped_stats,
        }
        return RoleArtifacts(
            role=state.name,
            command=command,
            stdout=self._stdout_text(state.name),
            resolved=self._resolved.role_document(state.name, agent, state.argv),
            summary=summary,
            metrics=metrics,
            extra_files=dict(state.collected),
        )

    def _status_for(self, ctx: RunContext, failure: BaseException | None) -> RunStatus:
        if failure is None:
            return RunStatus.SUCCESS
        if isinstance(failure, CancellationError) and not ctx.timed_out:
            return RunStatus.CANCELLED
        return RunStatus.FAILED

    async def _finalize(
        self,
        ctx: RunContext,
        run_dir: Path,
        failure: BaseException | None,
        started_at: str,
        started_clock: float,
    ) -> Result:
        status = self._status_for(ctx, failure)
        error = self._describe_failure(ctx, failure) if failure is not None else None
        if failure is not None:
            await self._stop_running(self.options.cancel_grace)

        finalize_ctx = RunContext(self.options.finalize_grace).start()
        bundle_path: Path | None = None
        bundle_error: str | None = None
        try:
            self._current = Phase.COLLECT
            self._notify(Phase.COLLECT, "collecting role output")
            try:
                await finalize_ctx.wait(self._collect(run_dir))
                self._completed.append(Phase.COLLECT)
            except (OrchestrationError, OSError, TimeoutError) as exc:
                bundle_error = f"collect: {exc}"
                self._notify(Phase.COLLECT, f"collect failed: {exc}", error=str(exc))

            self._current = Phase.BUNDLE
            self._notify(Phase.BUNDLE, f"writing {self.bundle_format} bundle")
            finished_at = _utcnow_iso()
            summary = self._run_summary(
                status, error, started_at, finished_at, time.monotonic() - started_clock
            )
            builder = BundleBuilder(self.bundle_format, event_hook=self._record)
            artifacts = [self._role_artifacts(state) for state in self._roles.values()]
            try:
                bundle_path = await asyncio.to_thread(
                    builder.build,
                    run_dir,
                    artifacts,
                    summary,
                    manifest_text=self.manifest.to_yaml(),
                )
                await asyncio.to_thread(self._verify_bundle, bundle_path)
                self._notify(Phase.BUNDLE, "bundle verified successfully")
                self._completed.append(Phase.BUNDLE)
            except (BundleError, OSError) as exc:
                bundle_error = str(exc)
                self._notify(Phase.BUNDLE, f"bundle failed: {exc}", error=str(exc))
        finally:
            finalize_ctx.close()

        if bundle_error is not None and status is RunStatus.SUCCESS:
            status = RunStatus.FAILED
            error = bundle_error

        terminal = {
            RunStatus.SUCCESS: Phase.DONE,
            RunStatus.FAILED: Phase.ERROR,
            RunStatus.CANCELLED: Phase.CANCELLED,
        }[status]
        self._current = terminal
        if not self._terminal_emitted:
            self._terminal_emitted = True
            self._notify(terminal, error or f"run {self.run_id} {status.value}", error=error)

        return Result(
            run_id=self.run_id or "",
            status=status,
            per_role_exit_code={
                name: state.exit.exit_code
                for name, state in self._roles.items()
                if state.exit is not None
            },
            bundle_path=bundle_path,
            error=error,
            role_errors={
                name: state.error for name, state in self._roles.items() if state.error
            },
            phases_completed=tuple(self._completed),
            started_at=started_at,
            finished_at=_utcnow_iso(),
            dry_run=self.options.dry_run,
            bundle_error=bundle_error,
        )

    def _verify_bundle(self, bundle_path: Path) -> None:
        verification = Bundle.open(bundle_path).verify()
        self._record(
            {"event": "bundle_verified", "path": str(bundle_path), "ok": verification.ok}
        )
        if not verification.ok:
            raise BundleError(
                str(bundle_path), "verification failed: " + "; ".join(verification.problems())
            )

    def _run_summary(
        self,
        status: RunStatus,
        error: str | None,
        started_at: str,
        finished_at: str,
        duration: float,
    ) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": status.value,
            "dry_run": self.options.dry_run,
            "started_at": started_at,
            "finished_at": finished_at,
            "duration_seconds": round(duration, 3),
            "controller_host": socket.gethostname(),
            "phases_completed": [phase.value for phase in self._completed],
            "roles": list(self._roles),
            "per_role_exit_code": {
                name: state.exit.exit_code
                for name, state in self._roles.items()
                if state.exit is not None
            },
            "role_errors": {
                name: state.error for name, state in self._roles.items() if state.error
            },
            "error": error,
            "tool_version": __version__,
        }
