from __future__ import annotations

import platform
import sys
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml

from cipdip_orch.bundle import hash_file
from cipdip_orch.errors import ValidationError
from cipdip_orch.manifest import ClientRole, Manifest, ServerRole


def _extra_args(args: dict[str, Any]) -> list[str]:
    rendered: list[str] = []
    for key, value in args.items():
        if key == "pcap":
            continue
        flag = f"--{key}"
        if isinstance(value, bool):
            if value:
                rendered.append(flag)
        elif isinstance(value, int):
            rendered.extend([flag, str(value)])
        elif isinstance(value, float):
            rendered.extend([flag, str(int(value))])
        elif isinstance(value, str):
            if value:
                rendered.extend([flag, value])
    return rendered


def _pcap_args(args: dict[str, Any]) -> list[str]:
    pcap = args.get("pcap")
    if isinstance(pcap, str) and pcap:
        return ["--pcap", pcap]
    return []


def server_args(manifest: Manifest, server: ServerRole) -> list[str]:
    data_plane = manifest.network.data_plane
    argv = ["server", "--listen-ip", data_plane.server_listen_ip]
    argv += ["--listen-port", str(data_plane.target_port)]
    if server.personality:
        argv += ["--personality", server.personality]
    if server.mode:
        argv += ["--mode", server.mode]
    argv += _pcap_args(server.args)
    argv.append("--tui-stats")
    argv += _extra_args(server.args)
    return argv


def client_args(manifest: Manifest, client: ClientRole, profile_path: str) -> list[str]:
    data_plane = manifest.network.data_plane
    argv = ["client", "--ip", data_plane.target_ip, "--port", str(data_plane.target_port)]
    if client.scenario == "profile":
        argv += ["--profile", profile_path]
        if client.profile_role:
            argv += ["--role", client.profile_role]
    else:
        argv += ["--scenario", client.scenario]
    argv += ["--duration-seconds", str(client.duration_seconds)]
    if client.interval_ms > 0:
        argv += ["--interval-ms", str(client.interval_ms)]
    argv += _pcap_args(client.args)
    argv.append("--tui-stats")
    argv += _extra_args(client.args)
    return argv


@dataclass(slots=True)
class ResolvedManifest:
    manifest: Manifest
    run_id: str
    resolved_at: str
    profile_path: str = ""
    profile_checksum: str = ""
    profile_content: str = ""
    server_args: list[str] = field(default_factory=list)
    client_args: list[str] = field(default_factory=list)
    tool_version: str = "dev"
    controller_os: str = field(default_factory=lambda: sys.platform)
    controller_arch: str = field(default_factory=platform.machine)

    def role_args(self, role: str, profile_path: str | None = None) -> list[str]:
        """Role argv; ``profile_path`` replaces the local path for remote roles."""
        if role == "server":
            return list(self.server_args)
        if role != "client":
            raise KeyError(role)
        client = self.manifest.roles.client
        if profile_path is not None and client is not None and client.scenario == "profile":
            return client_args(self.manifest, client, profile_path)
        return list(self.client_args)

    def to_dict(self) -> dict:
        data = self.manifest.to_dict()
        data["run_id"] = self.run_id
        data.update(
            {
                "resolved_at": self.resolved_at,
                "profile_path": self.profile_path,
                "profile_checksum": self.profile_checksum,
            }
        )
        if self.profile_content:
            data["profile_content"] = self.profile_content
        if self.server_args:
            data["server_args"] = list(self.server_args)
        if self.client_args:
            data["client_args"] = list(self.client_args)
        data.update(
            {
                "tool_version": self.tool_version,
                "controller_os": self.controller_os,
                "controller_arch": self.controller_arch,
            }
        )
        return data

    def role_document(self, role: str, agent: str, argv: list[str]) -> str:
        data = {"role": role, "agent": agent, "argv": list(argv), **self.to_dict()}
        header = (
            f"# resolved manifest for role '{role}' of run {self.run_id}\n"
            f"# generated {self.resolved_at} by cipdip-orch {self.tool_version}\n"
        )
        return header + yaml.safe_dump(data, sort_keys=False, allow_unicode=True)


def resolve_manifest(
    manifest: Manifest,
    run_id: str,
    *,
    work_dir: Path | None = None,
    tool_version: str = "dev",
) -> ResolvedManifest:
    """Expand a validated manifest with run-time values and role argv."""
    base = work_dir or Path.cwd()
    resolved = ResolvedManifest(
        manifest=manifest,
        run_id=run_id,
        resolved_at=datetime.now(UTC).replace(microsecond=0).isoformat(),
        tool_version=tool_version,
    )

    if manifest.profile.path:
        profile_path = Path(manifest.profile.path).expanduser()
        if not profile_path.is_absolute():
            profile_path = base / profile_path
        resolved.profile_path = str(profile_path)
        if profile_path.is_file():
            checksum = hash_file(profile_path)
            resolved.profile_checksum = checksum
            if manifest.profile.checksum and manifest.profile.checksum != checksum:
                raise ValidationError(
                    "profile.checksum",
                    f"mismatch: expected {manifest.profile.checksum}, got {checksum}",
                )
            if manifest.profile.distribution == "inline":
                resolved.profile_content = profile_path.read_text(encoding="utf-8", errors="replace")

    if manifest.roles.server is not None:
        resolved.server_args = server_args(manifest, manifest.roles.server)
    if manifest.roles.client is not None:
        resolved.client_args = client_args(manifest, manifest.roles.client, resolved.profile_path)
    return resolved
