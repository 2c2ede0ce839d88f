from __future__ import annotations

import asyncio
import posixpath
import shlex
from collections.abc import Mapping
from pathlib import Path
from typing import IO

import paramiko

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
from cipdip_orch.transports.parse import SSHAgent

PID_MARKER = "__cipdip_pid__"
DEFAULT_KNOWN_HOSTS = Path("~/.ssh/known_hosts")


def remote_workdir(role: str, agent: SSHAgent) -> str:
    if agent.is_windows:
        return f"C:/Windows/Temp/cipdip-{role}"
    return f"/tmp/cipdip-{role}"


class _UntrustedHostKeyPolicy(paramiko.MissingHostKeyPolicy):
    def __init__(self, role: str) -> None:
        self.role = role

    def missing_host_key(self, client: paramiko.SSHClient, hostname: str, key: paramiko.PKey) -> None:
        raise TransportError(
            TransportErrorKind.HOST_KEY_UNTRUSTED,
            f"host key for {hostname} ({key.get_name()}) is not in known_hosts",
            role=self.role,
        )


class SSHTransport(Transport):
    """Runs a role on a remote host through one paramiko session.

    Blocking paramiko calls run in worker threads; output lines cross back
    to the event loop through ``call_soon_threadsafe``.
    """

    kind = "ssh"

    def __init__(
        self,
        role: str,
        agent: SSHAgent,
        *,
        connect_timeout: float = 10.0,
        cancel_grace: float = 5.0,
        event_hook: EventHook | None = None,
    ) -> None:
        super().__init__(role, cancel_grace=cancel_grace, event_hook=event_hook)
        self.agent = agent
        self.connect_timeout = connect_timeout
        self._client: paramiko.SSHClient | None = None
        self._channel: paramiko.Channel | None = None
        self._handle: RoleHandle | None = None
        self._supervisor: asyncio.Task[None] | None = None
        self._stop_task: asyncio.Task[None] | None = None
        self._stop_requested = False
        self._remote_pid: int | None = None

    @property
    def workdir(self) -> str:
        return remote_workdir(self.role, self.agent)

    def describe(self) -> str:
        return self.agent.to_string()

    def _known_hosts_path(self) -> Path | None:
        candidate = Path(self.agent.known_hosts or DEFAULT_KNOWN_HOSTS).expanduser()
        return candidate if candidate.is_file() else None

    def _error(self, kind: TransportErrorKind, message: str) -> TransportError:
        return TransportError(kind, message, role=self.role, agent=self.describe())

    def _connect_sync(self) -> paramiko.SSHClient:
        agent = self.agent
        key_file = str(Path(agent.key_file).expanduser()) if agent.key_file else None
        if key_file is not None and not Path(key_file).is_file():
            raise self._error(TransportErrorKind.AUTH_FAILED, f"key file not found: {agent.key_file}")

        client = paramiko.SSHClient()
        known_hosts = self._known_hosts_path()
        if agent.insecure or known_hosts is None:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        else:
            client.load_host_keys(str(known_hosts))
            client.set_missing_host_key_policy(_UntrustedHostKeyPolicy(self.role))

        target = f"{agent.host}:{agent.port}"
        try:
            client.connect(
                agent.host,
                port=agent.port,
                username=agent.user or None,
                key_filename=key_file,
                allow_agent=agent.use_agent,
                look_for_keys=key_file is None,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
            )
        except TransportError as exc:
            client.close()
            exc.agent = self.describe()
            raise
        except paramiko.BadHostKeyException as exc:
            client.close()
            raise self._error(TransportErrorKind.HOST_KEY_UNTRUSTED, str(exc)) from exc
        except paramiko.AuthenticationException as exc:
            client.close()
            raise self._error(
                TransportErrorKind.AUTH_FAILED, f"authentication to {target} failed: {exc}"
            ) from exc
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise self._error(
                TransportErrorKind.UNREACHABLE, f"cannot reach {target}: {exc}"
            ) from exc
        return client

    async def _ensure_client(self, ctx: RunContext) -> paramiko.SSHClient:
        if self._client is not None:
            return self._client
        self._emit({"event": "ssh_connect", "host": self.agent.host, "port": self.agent.port})
        connecting = asyncio.ensure_future(asyncio.to_thread(self._connect_sync))
        try:
            client = await ctx.wait(connecting)
        except TransportError as exc:
            self._emit({"event": "ssh_connect_failed", "kind": exc.kind.value, "error": str(exc)})
            raise
        except BaseException:
            # the worker thread outlives the wait; close whatever it connects
            connecting.add_done_callback(self._close_abandoned)
            raise
        self._client = client
        return client

    def _close_abandoned(self, connecting: asyncio.Future[paramiko.SSHClient]) -> None:
        if connecting.cancelled() or connecting.exception() is not None:
            return
        connecting.result().close()
        self._emit({"event": "ssh_connect_abandoned", "host": self.agent.host})

    def _run_sync(self, client: paramiko.SSHClient, command: str) -> tuple[int, str, str]:
        _, stdout, stderr = client.exec_command(command, timeout=self.connect_timeout)
        out = stdout.read().decode("utf-8", errors="replace")
        err = stderr.read().decode("utf-8", errors="replace")
        return stdout.channel.recv_exit_status(), out, err

    def _mkdir_sync(self, sftp: paramiko.SFTPClient, path: str) -> None:
        current = ""
        for part in path.split("/"):
            if not part:
                current = "/"
                continue
            current = posixpath.join(current, part) if current else part
            if current.endswith(":"):
                continue
            try:
                sftp.stat(current)
            except FileNotFoundError:
                sftp.mkdir(current)

    def _stage_sync(self, client: paramiko.SSHClient, workdir: str, files: Mapping[str, Path]) -> None:
        with client.open_sftp() as sftp:
            self._mkdir_sync(sftp, workdir)
            for name, local_path in files.items():
                sftp.put(str(local_path), posixpath.join(workdir, name))

    async def stage(self, ctx: RunContext, workdir: str, files: Mapping[str, Path]) -> None:
        client = await self._ensure_client(ctx)
        self._emit({"event": "stage_mkdir", "workdir": workdir})
        try:
            await ctx.wait(asyncio.to_thread(self._stage_sync, client, workdir, files))
        except (OSError, paramiko.SSHException) as exc:
            raise self._error(
                TransportErrorKind.STAGE_FAILED, f"staging {workdir} failed: {exc}"
            ) from exc
        for name in files:
            self._emit({"event": "stage_push", "file": name})

    async def probe(self, ctx: RunContext) -> str:
        client = await self._ensure_client(ctx)
        try:
            code, out, err = await ctx.wait(asyncio.to_thread(self._run_sync, client, "echo OK"))
        except (OSError, paramiko.SSHException) as exc:
            raise self._error(TransportErrorKind.START_FAILED, f"probe failed: {exc}") from exc
        if code != 0 or out.strip() != "OK":
            raise self._error(
                TransportErrorKind.START_FAILED,
                f"probe returned {code}: {(err or out).strip()}",
            )
        return f"{self.agent.host} ok"

    def build_command(self, spec: RoleSpec) -> str:
        workdir = spec.workdir or self.workdir
        argv = list(spec.argv)
        if self.agent.is_windows:
            return f'cd /d "{workdir}" && ' + " ".join(f'"{arg}"' if " " in arg else arg for arg in argv)
        if spec.env:
            argv = ["env", *(f"{key}={value}" for key, value in spec.env.items()), *argv]
        if self.agent.elevate:
            argv = ["sudo", "-n", *argv]
        return f"cd {shlex.quote(workdir)} && echo {PID_MARKER} $$ && exec {shlex.join(argv)}"

    def _open_sync(self, client: paramiko.SSHClient, command: str) -> paramiko.Channel:
        transport = client.get_transport()
        if transport is None or not transport.is_active():
            raise paramiko.SSHException("session is not active")
        channel = transport.open_session()
        channel.exec_command(command)
        return channel

    async def start(self, ctx: RunContext, spec: RoleSpec) -> RoleHandle:
        ctx.raise_if_cancelled()
        if self._channel is not None:
            raise self._error(TransportErrorKind.START_FAILED, "role already started")
        client = await self._ensure_client(ctx)
        command = self.build_command(spec)
        try:
            channel = await ctx.wait(asyncio.to_thread(self._open_sync, client, command))
        except (OSError, paramiko.SSHException) as exc:
            raise self._error(
                TransportErrorKind.START_FAILED, f"remote exec failed: {exc}"
            ) from exc
        self._channel = channel
        self._emit({"event": "transport_start", "host": self.agent.host, "command": command})

        loop = asyncio.get_running_loop()
        events = OutputStream(self.role)
        done: asyncio.Future[ExitResult] = loop.create_future()
        self._handle = RoleHandle(role=self.role, events=events, done=done)
        self._supervisor = asyncio.create_task(self._supervise(channel, events, done))
        self._watch_cancellation(ctx, done)
        return self._handle

    def _pump_sync(
        self,
        loop: asyncio.AbstractEventLoop,
        handle: IO[bytes],
        stream: str,
        events: OutputStream,
    ) -> None:
        expect_marker = stream == STDOUT and not self.agent.is_windows
        for raw_line in handle:
            line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
            if expect_marker:
                expect_marker = False
                if line.startswith(PID_MARKER):
                    pid = line[len(PID_MARKER):].strip()
                    if pid.isdigit():
                        self._remote_pid = int(pid)
                    continue
            event = OutputEvent(role=self.role, stream=stream, line=line)
            loop.call_soon_threadsafe(events.put, event)

    async def _supervise(
        self,
        channel: paramiko.Channel,
        events: OutputStream,
        done: asyncio.Future[ExitResult],
    ) -> None:
        loop = asyncio.get_running_loop()
        error: str | None = None
        try:
            await asyncio.gather(
                asyncio.to_thread(self._pump_sync, loop, channel.makefile("rb"), STDOUT, events),
                asyncio.to_thread(
                    self._pump_sync, loop, channel.makefile_stderr("rb"), STDERR, events
                ),
            )
        except (OSError, paramiko.SSHException) as exc:
            error = f"output read failed: {exc}"
        exit_code = await asyncio.to_thread(channel.recv_exit_status)
        events.close()
        self._emit({"event": "transport_exit", "exit_code": exit_code})
        if not done.done():
            done.set_result(
                ExitResult(exit_code=exit_code, stop_requested=self._stop_requested, error=error)
            )

    async def stop(self, grace: float) -> None:
        if self._channel is None or self._handle is None or self._handle.done.done():
            return
        if self._stop_task is None:
            self._stop_requested = True
            self._stop_task = asyncio.create_task(self._terminate(grace))
        await asyncio.shield(self._stop_task)

    async def _signal(self, name: str) -> None:
        if self._client is None or self._remote_pid is None:
            return
        self._emit({"event": "transport_stop", "signal": name, "pid": self._remote_pid})
        command = f"kill -{name} {self._remote_pid}"
        if self.agent.elevate:
            command = f"sudo -n {command}"
        try:
            await asyncio.to_thread(self._run_sync, self._client, command)
        except (OSError, paramiko.SSHException) as exc:
            self._emit({"event": "transport_stop_failed", "signal": name, "error": str(exc)})

    async def _terminate(self, grace: float) -> None:
        assert self._handle is not None and self._channel is not None
        done = self._handle.done
        if not self.agent.is_windows:
            await self._signal("TERM")
            try:
                await asyncio.wait_for(asyncio.shield(done), timeout=grace)
                return
            except TimeoutError:
                await self._signal("KILL")
        self._emit({"event": "transport_stop", "signal": "close"})
        await asyncio.to_thread(self._channel.close)
        try:
            await asyncio.wait_for(asyncio.shield(done), timeout=grace)
        except TimeoutError:
            self._handle.events.close()
            if not done.done():
                done.set_result(
                    ExitResult(exit_code=-1, stop_requested=True, error="session did not close")
                )

    def _fetch_sync(self, client: paramiko.SSHClient, remote: str, dest: Path) -> bool:
        with client.open_sftp() as sftp:
            try:
                sftp.get(remote, str(dest))
            except FileNotFoundError:
                return False
        return True

    async def fetch(self, name: str, dest: Path) -> bool:
        if self._client is None:
            return False
        dest.parent.mkdir(parents=True, exist_ok=True)
        remote = posixpath.join(self.workdir, name)
        try:
            return await asyncio.to_thread(self._fetch_sync, self._client, remote, dest)
        except (OSError, paramiko.SSHException) as exc:
            self._emit({"event": "fetch_failed", "file": name, "error": str(exc)})
            return False

    async def close(self) -> None:
        await self.stop(self.cancel_grace)
        if self._supervisor is not None:
            await asyncio.gather(self._supervisor, return_exceptions=True)
        await super().close()
        if self._channel is not None:
            self._channel.close()
            self._channel = None
        if self._client is not None:
            self._client.close()
            self._client = None
