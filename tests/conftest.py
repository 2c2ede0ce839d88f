import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from cipdip_orch.manifest import (
    ClientRole,
    DataPlaneConfig,
    Manifest,
    NetworkConfig,
    ReadinessConfig,
    RolesConfig,
    ServerRole,
)

FAKE_ROLE_SCRIPT = r'''
import argparse
import json
import signal
import sys
import time
from datetime import datetime, timezone

parser = argparse.ArgumentParser()
parser.add_argument("role")
parser.add_argument("--listen-ip", default="0.0.0.0")
parser.add_argument("--listen-port", default="44818")
parser.add_argument("--duration-seconds", type=float, default=1.0)
parser.add_argument("--exit-code", type=int, default=0)
parser.add_argument("--never-ready", action="store_true")
parser.add_argument("--exit-after-ready", action="store_true")
parser.add_argument("--ignore-duration", action="store_true")
args, _ = parser.parse_known_args()

stopping = False


def handle_term(signum, frame):
    global stopping
    stopping = True


signal.signal(signal.SIGTERM, handle_term)


def stats(count):
    payload = {
        "type": "stats",
        "stats": {
            "total_requests": count,
            "successful_requests": count,
            "failed_requests": 0,
            "timeouts": 0,
        },
    }
    print(json.dumps(payload), flush=True)


if args.role == "server":
    print("server booting", flush=True)
    print("server warning", file=sys.stderr, flush=True)
    if not args.never_ready:
        ready = {
            "event": "server_ready",
            "listen": f"{args.listen_ip}:{args.listen_port}",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        print(json.dumps(ready), flush=True)
    if args.exit_after_ready:
        time.sleep(0.2)
        sys.exit(args.exit_code)
    while not stopping:
        time.sleep(0.05)
    stats(7)
    print("server stopped", flush=True)
    sys.exit(args.exit_code)

count = 0
deadline = time.monotonic() + args.duration_seconds
while not stopping and (args.ignore_duration or time.monotonic() < deadline):
    count += 1
    stats(count)
    time.sleep(0.1)
print(f"client finished after {count} requests", flush=True)
sys.exit(args.exit_code)
'''


@pytest.fixture
def fake_role(tmp_path: Path) -> Path:
    script = tmp_path / "fake_cipdip.py"
    script.write_text(FAKE_ROLE_SCRIPT, encoding="utf-8")
    return script


@pytest.fixture
def role_command(fake_role: Path) -> list[str]:
    return [sys.executable, "-u", str(fake_role)]


@pytest.fixture
def make_manifest() -> Callable[..., Manifest]:
    def factory(
        *,
        duration: int = 1,
        readiness_timeout: int = 5,
        server_args: dict[str, Any] | None = None,
        client_args: dict[str, Any] | None = None,
        server_agent: str = "local",
        client_agent: str = "local",
        with_server: bool = True,
        with_client: bool = True,
    ) -> Manifest:
        server = None
        if with_server:
            server = ServerRole(
                agent=server_agent, personality="adapter", args=dict(server_args or {})
            )
        client = None
        if with_client:
            client = ClientRole(
                agent=client_agent,
                scenario="baseline",
                duration_seconds=duration,
                args=dict(client_args or {}),
            )
        return Manifest(
            run_id="auto",
            network=NetworkConfig(
                data_plane=DataPlaneConfig(
                    server_listen_ip="0.0.0.0", target_ip="127.0.0.1", target_port=44818
                )
            ),
            roles=RolesConfig(server=server, client=client),
            readiness=ReadinessConfig(timeout_seconds=readiness_timeout),
        )

    return factory
