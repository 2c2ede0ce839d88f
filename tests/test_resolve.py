from collections.abc import Callable
from pathlib import Path

import pytest
import yaml

from cipdip_orch.bundle import hash_file
from cipdip_orch.errors import ValidationError
from cipdip_orch.manifest import Manifest
from cipdip_orch.resolve import client_args, resolve_manifest, server_args


def _profile_manifest(make_manifest: Callable[..., Manifest], path: str) -> Manifest:
    manifest = make_manifest()
    manifest.roles.client.scenario = "profile"
    manifest.roles.client.profile_role = "hmi"
    manifest.profile.path = path
    return manifest


def test_server_args_follow_the_role_contract(make_manifest: Callable[..., Manifest]) -> None:
    manifest = make_manifest(server_args={"pcap": "server.pcap", "verbose": True, "quiet": False})
    manifest.roles.server.mode = "strict"

    argv = server_args(manifest, manifest.roles.server)

    assert argv == [
        "server",
        "--listen-ip",
        "0.0.0.0",
        "--listen-port",
        "44818",
        "--personality",
        "adapter",
        "--mode",
        "strict",
        "--pcap",
        "server.pcap",
        "--tui-stats",
        "--verbose",
    ]


def test_client_args_follow_the_role_contract(make_manifest: Callable[..., Manifest]) -> None:
    manifest = make_manifest(duration=45, client_args={"retries": 3, "label": "line-a"})
    manifest.roles.client.interval_ms = 100

    argv = client_args(manifest, manifest.roles.client, "")

    assert argv == [
        "client",
        "--ip",
        "127.0.0.1",
        "--port",
        "44818",
        "--scenario",
        "baseline",
        "--duration-seconds",
        "45",
        "--interval-ms",
        "100",
        "--tui-stats",
        "--retries",
        "3",
        "--label",
        "line-a",
    ]


def test_resolve_inlines_profile_and_records_checksum(
    tmp_path: Path, make_manifest: Callable[..., Manifest]
) -> None:
    profile = tmp_path / "profiles" / "line.yaml"
    profile.parent.mkdir()
    profile.write_text("tags:\n  - Line_Speed\n", encoding="utf-8")
    manifest = _profile_manifest(make_manifest, "profiles/line.yaml")

    resolved = resolve_manifest(manifest, "run-7", work_dir=tmp_path, tool_version="9.9.9")

    assert resolved.run_id == "run-7"
    assert resolved.profile_path == str(profile)
    assert resolved.profile_checksum == hash_file(profile)
    assert resolved.profile_content == "tags:\n  - Line_Speed\n"
    assert resolved.role_args("client")[5:9] == ["--profile", str(profile), "--role", "hmi"]
    data = resolved.to_dict()
    assert data["run_id"] == "run-7"
    assert data["tool_version"] == "9.9.9"
    assert data["client_args"] == resolved.client_args


def test_resolve_rejects_profile_checksum_mismatch(
    tmp_path: Path, make_manifest: Callable[..., Manifest]
) -> None:
    (tmp_path / "line.yaml").write_text("tags: []\n", encoding="utf-8")
    manifest = _profile_manifest(make_manifest, "line.yaml")
    manifest.profile.checksum = "sha256:" + "0" * 64

    with pytest.raises(ValidationError) as excinfo:
        resolve_manifest(manifest, "run-8", work_dir=tmp_path)

    assert excinfo.value.field == "profile.checksum"


def test_push_distribution_does_not_inline_content(
    tmp_path: Path, make_manifest: Callable[..., Manifest]
) -> None:
    (tmp_path / "line.yaml").write_text("tags: []\n", encoding="utf-8")
    manifest = _profile_manifest(make_manifest, "line.yaml")
    manifest.profile.distribution = "push"

    resolved = resolve_manifest(manifest, "run-9", work_dir=tmp_path)

    assert resolved.profile_content == ""
    assert "profile_content" not in resolved.to_dict()


def test_role_args_substitutes_remote_profile_path(
    tmp_path: Path, make_manifest: Callable[..., Manifest]
) -> None:
    (tmp_path / "line.yaml").write_text("tags: []\n", encoding="utf-8")
    manifest = _profile_manifest(make_manifest, "line.yaml")
    resolved = resolve_manifest(manifest, "run-10", work_dir=tmp_path)

    argv = resolved.role_args("client", "/tmp/cipdip-client/line.yaml")

    assert "/tmp/cipdip-client/line.yaml" in argv
    assert str(tmp_path / "line.yaml") not in argv
    assert resolved.role_args("server", "/ignored") == resolved.server_args
    with pytest.raises(KeyError):
        resolved.role_args("historian")


def test_role_document_is_yaml_with_header(make_manifest: Callable[..., Manifest]) -> None:
    resolved = resolve_manifest(make_manifest(), "run-11", tool_version="0.1.0")

    document = resolved.role_document("server", "local", ["cipdip", *resolved.server_args])

    assert document.startswith("# resolved manifest for role 'server' of run run-11\n")
    data = yaml.safe_load(document)
    assert data["role"] == "server"
    assert data["agent"] == "local"
    assert data["argv"][0] == "cipdip"
    assert data["run_id"] == "run-11"
    assert data["server_args"] == resolved.server_args
