from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import parse_qs, urlencode, urlsplit

LOCAL_SPECS = {"", "local", "local://"}
TRUE_VALUES = {"1", "true", "yes"}
FALSE_VALUES = {"0", "false", "no"}
DEFAULT_SSH_PORT = 22


@dataclass(frozen=True, slots=True)
class LocalAgent:
    kind = "local"

    def to_string(self) -> str:
        return "local"


@dataclass(frozen=True, slots=True)
class SSHAgent:
    host: str
    user: str = ""
    port: int = DEFAULT_SSH_PORT
    key_file: str = ""
    remote_os: str = "linux"
    known_hosts: str = ""
    insecure: bool = False
    use_agent: bool = True
    elevate: bool = False

    kind = "ssh"

    @property
    def is_windows(self) -> bool:
        return self.remote_os == "windows"

    def to_string(self) -> str:
        netloc = self.host
        if ":" in netloc:
            netloc = f"[{netloc}]"
        if self.user:
            netloc = f"{self.user}@{netloc}"
        if self.port != DEFAULT_SSH_PORT:
            netloc = f"{netloc}:{self.port}"
        query: dict[str, str] = {}
        if self.key_file:
            query["key"] = self.key_file
        if self.remote_os != "linux":
            query["os"] = self.remote_os
        if self.known_hosts:
            query["known_hosts"] = self.known_hosts
        if self.insecure:
            query["insecure"] = "true"
        if not self.use_agent:
            query["agent"] = "false"
        if self.elevate:
            query["elevate"] = "true"
        rendered = f"ssh://{netloc}"
        if query:
            rendered = f"{rendered}?{urlencode(query, safe='/:~')}"
        return rendered


AgentSpec = LocalAgent | SSHAgent


def _flag(query: dict[str, list[str]], name: str, default: bool) -> bool:
    values = query.get(name)
    if not values:
        return default
    value = values[-1].strip().lower()
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    raise ValueError(f"invalid boolean for '{name}': {values[-1]!r}")


def _parse_port(raw: str) -> int:
    try:
        port = int(raw)
    except ValueError as exc:
        raise ValueError(f"invalid port: {raw!r}") from exc
    if not 1 <= port <= 65535:
        raise ValueError(f"port out of range: {port}")
    return port


def _parse_ssh_url(spec: str) -> SSHAgent:
    parts = urlsplit(spec)
    try:
        host = parts.hostname or ""
        port = parts.port
    except ValueError as exc:
        raise ValueError(f"invalid SSH address in {spec!r}: {exc}") from exc
    if not host:
        raise ValueError("SSH host is required")
    query = parse_qs(parts.query, keep_blank_values=False)
    remote_os = (query.get("os") or ["linux"])[-1].strip().lower() or "linux"
    return SSHAgent(
        host=host,
        user=parts.username or "",
        port=port if port is not None else DEFAULT_SSH_PORT,
        key_file=(query.get("key") or [""])[-1],
        remote_os=remote_os,
        known_hosts=(query.get("known_hosts") or [""])[-1],
        insecure=_flag(query, "insecure", False),
        use_agent=_flag(query, "agent", True),
        elevate=_flag(query, "elevate", False),
    )


def _parse_bare_host(spec: str) -> SSHAgent:
    user = ""
    # usernames may themselves contain '@'
    if "@" in spec:
        user, spec = spec.rsplit("@", 1)
    host = spec
    port = DEFAULT_SSH_PORT
    if spec.count(":") == 1:
        candidate_host, raw_port = spec.split(":", 1)
        if raw_port.isdigit():
            host = candidate_host
            port = _parse_port(raw_port)
    if not host:
        raise ValueError("SSH host is required")
    return SSHAgent(host=host, user=user, port=port)


def parse_agent(spec: str) -> AgentSpec:
    """Parse a transport descriptor into a tagged agent spec.

    Accepted forms are ``local``, ``ssh://[user@]host[:port][?key=..&os=..]``
    and the bare ``[user@]host[:port]`` shorthand.
    """
    normalized = (spec or "").strip()
    if normalized in LOCAL_SPECS:
        return LocalAgent()
    if "://" in normalized:
        scheme = normalized.split("://", 1)[0].lower()
        if scheme == "local":
            return LocalAgent()
        if scheme != "ssh":
            raise ValueError(f"unsupported transport scheme: {scheme}")
        return _parse_ssh_url(normalized)
    return _parse_bare_host(normalized)


def format_agent(agent: AgentSpec) -> str:
    return agent.to_string()


def is_local(spec: str) -> bool:
    return (spec or "").strip() in LOCAL_SPECS
