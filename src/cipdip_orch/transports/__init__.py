from __future__ import annotations

from pathlib import Path

from cipdip_orch.transports.base import (
    EventHook,
    ExitResult,
    OutputEvent,
    OutputStream,
    RoleHandle,
    RoleSpec,
    Transport,
)
from cipdip_orch.transports.local import LocalTransport
from cipdip_orch.transports.parse import (
    AgentSpec,
    LocalAgent,
    SSHAgent,
    format_agent,
    is_local,
    parse_agent,
)
from cipdip_orch.transports.ssh import SSHTransport, remote_workdir


def build_transport(
    role: str,
    agent: AgentSpec,
    *,
    work_dir: Path | None = None,
    cancel_grace: float = 5.0,
    event_hook: EventHook | None = None,
) -> Transport:
    if isinstance(agent, LocalAgent):
        return LocalTransport(
            role, work_dir=work_dir, cancel_grace=cancel_grace, event_hook=event_hook
        )
    if isinstance(agent, SSHAgent):
        return SSHTransport(role, agent, cancel_grace=cancel_grace, event_hook=event_hook)
    raise TypeError(f"unsupported agent spec: {agent!r}")


__all__ = [
    "AgentSpec",
    "ExitResult",
    "LocalAgent",
    "LocalTransport",
    "OutputEvent",
    "OutputStream",
    "RoleHandle",
    "RoleSpec",
    "SSHAgent",
    "SSHTransport",
    "Transport",
    "build_transport",
    "format_agent",
    "is_local",
    "parse_agent",
    "remote_workdir",
]
