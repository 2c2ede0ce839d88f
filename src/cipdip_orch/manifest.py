from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal

import yaml

from cipdip_orch.errors import ParseError, ValidationError
from cipdip_orch.transports.parse import AgentSpec, format_agent, parse_agent

API_VERSION = "v1"
AUTO_RUN_ID = "auto"
DEFAULT_TARGET_PORT = 44818
DEFAULT_READINESS_METHOD = "structured_stdout"
DEFAULT_READINESS_TIMEOUT = 30
DEFAULT_BUNDLE_FORMAT = "dir"
DEFAULT_DISTRIBUTION = "inline"

READINESS_METHODS = ("structured_stdout", "line_marker", "tcp_connect")
BUNDLE_FORMATS = ("dir", "zip")
DISTRIBUTIONS = ("inline", "push", "preinstalled")
PERSONALITIES = ("", "adapter", "logix_like")
ROLE_NAMES = ("server", "client")

ReadinessMethod = Literal["structured_stdout", "line_marker", "tcp_connect"]
BundleFormat = Literal["dir", "zip"]


@dataclass(slots=True)
class ProfileConfig:
    path: str = ""
    distribution: str = DEFAULT_DISTRIBUTION
    checksum: str = ""


@dataclass(slots=True)
class DataPlaneConfig:
    client_bind_ip: str = ""
    server_listen_ip: str = ""
    target_ip: str = ""
    target_port: int = DEFAULT_TARGET_PORT


@dataclass(slots=True)
class NetworkConfig:
    control_plane: str = ""
    data_plane: DataPlaneConfig = field(default_factory=DataPlaneConfig)


@dataclass(slots=True)
class ServerRole:
    agent: str = ""
    mode: str = ""
    personality: str = ""
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ClientRole:
    agent: str = ""
    scenario: str = ""
    profile_role: str = ""
    duration_seconds: int = 0
    interval_ms: int = 0
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RolesConfig:
    server: ServerRole | None = None
    client: ClientRole | None = None

    def present(self) -> list[tuple[str, ServerRole | ClientRole]]:
        roles: list[tuple[str, ServerRole | ClientRole]] = []
        if self.server is not None:
            roles.append(("server", self.server))
        if self.client is not None:
            roles.append(("client", self.client))
        return roles


@dataclass(slots=True)
class ReadinessConfig:
    method: str = DEFAULT_READINESS_METHOD
    timeout_seconds: int = DEFAULT_READINESS_TIMEOUT
    marker: str = ""


@dataclass(slots=True)
class ArtifactsConfig:
    bundle_format: str = DEFAULT_BUNDLE_FORMAT
    include: list[str] = field(default_factory=list)


def _section(data: dict, key: str) -> dict:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ParseError(key, f"expected a mapping, got {type(value).__name__}")
    return value


def _text(data: dict, key: str, default: str = "") -> str:
    value = data.get(key)
    if value is None or value == "":
        return default
    return str(value)


def _integer(data: dict, key: str, default: int, where: str) -> int:
    value = data.get(key)
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ParseError(f"{where}.{key}", "expected an integer")
    if isinstance(value, float) and not value.is_integer():
        raise ParseError(f"{where}.{key}", f"expected an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ParseError(f"{where}.{key}", f"expected an integer, got {value!r}") from exc


def _args(data: dict, where: str) -> dict[str, Any]:
    value = data.get("args")
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ParseError(f"{where}.args", "expected a mapping")
    return {str(key): item for key, item in value.items()}


@dataclass(slots=True)
class Manifest:
    api_version: str = API_VERSION
    run_id: str = AUTO_RUN_ID
    seed: int = 0
    profile: ProfileConfig = field(default_factory=ProfileConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    roles: RolesConfig = field(default_factory=RolesConfig)
    readiness: ReadinessConfig = field(default_factory=ReadinessConfig)
    artifacts: ArtifactsConfig = field(default_factory=ArtifactsConfig)

    @classmethod
    def from_dict(cls, data: dict) -> Manifest:
        if not isinstance(data, dict):
            raise ParseError("<document>", "manifest must be a mapping")
        profile = _section(data, "profile")
        network = _section(data, "network")
        data_plane = _section(network, "data_plane")
        roles = _section(data, "roles")
        readiness = _section(data, "readiness")
        artifacts = _section(data, "artifacts")

        server: ServerRole | None = None
        if roles.get("server") is not None:
            raw = _section(roles, "server")
            server = ServerRole(
                agent=_text(raw, "agent"),
                mode=_text(raw, "mode"),
                personality=_text(raw, "personality"),
                args=_args(raw, "roles.server"),
            )
        client: ClientRole | None = None
        if roles.get("client") is not None:
            raw = _section(roles, "client")
            client = ClientRole(
                agent=_text(raw, "agent"),
                scenario=_text(raw, "scenario"),
                profile_role=_text(raw, "profile_role"),
                duration_seconds=_integer(raw, "duration_seconds", 0, "roles.client"),
                interval_ms=_integer(raw, "interval_ms", 0, "roles.client"),
                args=_args(raw, "roles.client"),
            )

        include = artifacts.get("include") or []
        if not isinstance(include, list):
            raise ParseError("artifacts.include", "expected a list")

        return cls(
            api_version=_text(data, "api_version", API_VERSION),
            run_id=_text(data, "run_id", AUTO_RUN_ID),
            seed=_integer(data, "seed", 0, "manifest"),
            profile=ProfileConfig(
                path=_text(profile, "path"),
                distribution=_text(profile, "distribution", DEFAULT_DISTRIBUTION),
                checksum=_text(profile, "checksum"),
            ),
            network=NetworkConfig(
                control_plane=_text(network, "control_plane"),
                data_plane=DataPlaneConfig(
                    client_bind_ip=_text(data_plane, "client_bind_ip"),
                    server_listen_ip=_text(data_plane, "server_listen_ip"),
                    target_ip=_text(data_plane, "target_ip"),
                    target_port=_integer(
                        data_plane, "target_port", DEFAULT_TARGET_PORT, "network.data_plane"
                    ),
                ),
            ),
            roles=RolesConfig(server=server, client=client),
            readiness=ReadinessConfig(
                method=_text(readiness, "method", DEFAULT_READINESS_METHOD),
                timeout_seconds=_integer(
                    readiness, "timeout_seconds", DEFAULT_READINESS_TIMEOUT, "readiness"
                ),
                marker=_text(readiness, "marker"),
            ),
            artifacts=ArtifactsConfig(
                bundle_format=_text(artifacts, "bundle_format", DEFAULT_BUNDLE_FORMAT),
                include=[str(item) for item in include],
            ),
        )

    def to_dict(self) -> dict:
        roles: dict[str, Any] = {}
        if self.roles.server is not None:
            roles["server"] = {
                "agent": self.roles.server.agent,
                "mode": self.roles.server.mode,
                "personality": self.roles.server.personality,
                "args": dict(self.roles.server.args),
            }
        if self.roles.client is not None:
            roles["client"] = {
                "agent": self.roles.client.agent,
                "scenario": self.roles.client.scenario,
                "profile_role": self.roles.client.profile_role,
                "duration_seconds": self.roles.client.duration_seconds,
                "interval_ms": self.roles.client.interval_ms,
                "args": dict(self.roles.client.args),
            }
        return {
            "api_version": self.api_version,
            "run_id": self.run_id,
            "seed": self.seed,
            "profile": {
                "path": self.profile.path,
                "distribution": self.profile.distribution,
                "checksum": self.profile.checksum,
            },
            "network": {
                "control_plane": self.network.control_plane,
                "data_plane": {
                    "client_bind_ip": self.network.data_plane.client_bind_ip,
                    "server_listen_ip": self.network.data_plane.server_listen_ip,
                    "target_ip": self.network.data_plane.target_ip,
                    "target_port": self.network.data_plane.target_port,
                },
            },
            "roles": roles,
            "readiness": {
                "method": self.readiness.method,
                "timeout_seconds": self.readiness.timeout_seconds,
                "marker": self.readiness.marker,
            },
            "artifacts": {
                "bundle_format": self.artifacts.bundle_format,
                "include": list(self.artifacts.include),
            },
        }

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False, allow_unicode=True)

    def validate(self) -> None:
        validate_manifest(self)


def parse_manifest(text: str, source: str = "<string>") -> Manifest:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ParseError(source, f"invalid YAML: {exc}") from exc
    if data is None:
        raise ParseError(source, "manifest is empty")
    if not isinstance(data, dict):
        raise ParseError(source, "manifest must be a mapping")
    return Manifest.from_dict(data)


def load_manifest(path: Path) -> Manifest:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ParseError(str(path), f"cannot read manifest: {exc}") from exc
    return parse_manifest(text, str(path))


def save_manifest(path: Path, manifest: Manifest) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(manifest.to_yaml(), encoding="utf-8")


def _check_ip(value: str, field_name: str, *, allow_unspecified: bool = False) -> None:
    if not value:
        raise ValidationError(field_name, "required")
    try:
        address = ipaddress.ip_address(value)
    except ValueError as exc:
        raise ValidationError(field_name, f"invalid IP address: {value}") from exc
    if address.is_unspecified and not allow_unspecified:
        raise ValidationError(field_name, f"unspecified address not allowed: {value}")


def _check_agent(value: str, field_name: str) -> None:
    if not value.strip():
        raise ValidationError(field_name, "required")
    try:
        parse_agent(value)
    except ValueError as exc:
        raise ValidationError(field_name, f"invalid agent: {exc}") from exc


def validate_manifest(manifest: Manifest) -> None:
    """Check manifest invariants, raising on the first violation found."""
    if manifest.api_version != API_VERSION:
        raise ValidationError(
            "api_version", f"unsupported version {manifest.api_version!r} (expected {API_VERSION})"
        )
    run_id = manifest.run_id.strip()
    if not run_id:
        raise ValidationError("run_id", "required")
    if "/" in run_id or "\\" in run_id or run_id in (".", ".."):
        raise ValidationError(
            "run_id", f"must be a single path component, got {manifest.run_id!r}"
        )

    roles = manifest.roles
    if roles.server is None and roles.client is None:
        raise ValidationError("roles", "at least one of server or client is required")

    data_plane = manifest.network.data_plane
    if roles.server is not None:
        _check_agent(roles.server.agent, "roles.server.agent")
        _check_ip(
            data_plane.server_listen_ip,
            "network.data_plane.server_listen_ip",
            allow_unspecified=True,
        )
        if roles.server.personality not in PERSONALITIES:
            raise ValidationError(
                "roles.server.personality",
                f"unknown personality {roles.server.personality!r} "
                "(expected adapter or logix_like)",
            )
    if roles.client is not None:
        _check_agent(roles.client.agent, "roles.client.agent")
        _check_ip(data_plane.target_ip, "network.data_plane.target_ip")
        if data_plane.client_bind_ip:
            _check_ip(data_plane.client_bind_ip, "network.data_plane.client_bind_ip")
        if not roles.client.scenario:
            raise ValidationError("roles.client.scenario", "required")
        if roles.client.duration_seconds < 0:
            raise ValidationError("roles.client.duration_seconds", "must be >= 0")
        if roles.client.interval_ms < 0:
            raise ValidationError("roles.client.interval_ms", "must be >= 0")
        if roles.client.scenario == "profile":
            if not roles.client.profile_role:
                raise ValidationError(
                    "roles.client.profile_role", "required when scenario is 'profile'"
                )
            if not manifest.profile.path:
                raise ValidationError("profile.path", "required when scenario is 'profile'")

    if not 1 <= data_plane.target_port <= 65535:
        raise ValidationError(
            "network.data_plane.target_port", f"out of range: {data_plane.target_port}"
        )
    if manifest.readiness.method not in READINESS_METHODS:
        raise ValidationError(
            "readiness.method",
            f"unknown method {manifest.readiness.method!r} "
            f"(expected one of {', '.join(READINESS_METHODS)})",
        )
    if manifest.readiness.timeout_seconds <= 0:
        raise ValidationError("readiness.timeout_seconds", "must be > 0")
    if manifest.artifacts.bundle_format not in BUNDLE_FORMATS:
        raise ValidationError(
            "artifacts.bundle_format",
            f"unknown format {manifest.artifacts.bundle_format!r} (expected dir or zip)",
        )
    if manifest.profile.distribution not in DISTRIBUTIONS:
        raise ValidationError(
            "profile.distribution",
            f"unknown distribution {manifest.profile.distribution!r} "
            f"(expected one of {', '.join(DISTRIBUTIONS)})",
        )


class AgentStatus(StrEnum):
    PENDING = "pending"
    CHECKING = "checking"
    OK = "ok"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class AgentMapping:
    role: str
    transport: str
    status: AgentStatus = AgentStatus.PENDING
    error: str = ""

    def with_status(self, status: AgentStatus, error: str = "") -> AgentMapping:
        return AgentMapping(role=self.role, transport=self.transport, status=status, error=error)


def resolve_agents(
    manifest: Manifest, overrides: dict[str, str] | None = None
) -> dict[str, AgentSpec]:
    """Parse each present role's agent once; ``overrides`` take precedence."""
    overrides = overrides or {}
    unknown = sorted(set(overrides) - set(ROLE_NAMES))
    if unknown:
        raise ValidationError("agents", f"unknown role(s): {', '.join(unknown)}")
    agents: dict[str, AgentSpec] = {}
    for name, role in manifest.roles.present():
        raw = overrides.get(name) or role.agent
        try:
            agents[name] = parse_agent(raw)
        except ValueError as exc:
            raise ValidationError(f"roles.{name}.agent", f"invalid agent: {exc}") from exc
    return agents


def extract_agent_mappings(
    manifest: Manifest, overrides: dict[str, str] | None = None
) -> list[AgentMapping]:
    agents = resolve_agents(manifest, overrides)
    return [AgentMapping(role=name, transport=format_agent(agent)) for name, agent in agents.items()]


def template_manifest() -> Manifest:
    return Manifest(
        run_id=AUTO_RUN_ID,
        network=NetworkConfig(
            data_plane=DataPlaneConfig(server_listen_ip="0.0.0.0", target_ip="127.0.0.1")
        ),
        roles=RolesConfig(
            server=ServerRole(agent="local", personality="adapter"),
            client=ClientRole(agent="local", scenario="baseline", duration_seconds=60),
        ),
    )
