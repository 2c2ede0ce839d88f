import re
from pathlib import Path
from typing import Any

import pytest

from cipdip_orch.bundle import (
    HASHES_FILE,
    MANIFEST_FILE,
    ROLE_FILES,
    Bundle,
    BundleBuilder,
    RoleArtifacts,
    VerifyOptions,
    hash_file,
    parse_hashes,
    read_hashes,
)
from cipdip_orch.errors import BundleError

HASH_LINE = re.compile(r"^sha256:[0-9a-f]{64}  \S+$")


def _artifacts(role: str, **extra: Any) -> RoleArtifacts:
    return RoleArtifacts(
        role=role,
        command=f"# agent: local\ncipdip {role}\n",
        stdout=f"{role} booting\n[stderr] {role} warning\n",
        resolved=f"role: {role}\n",
        summary={"role": role, "exit_code": 0},
        metrics={"role": role, "output_lines": 1},
        **extra,
    )


def _build(
    tmp_path: Path,
    bundle_format: str = "dir",
    summary: dict[str, Any] | None = None,
    **extra: Any,
) -> Path:
    builder = BundleBuilder(bundle_format)
    return builder.build(
        tmp_path / "runs" / "run-1",
        [_artifacts("server"), _artifacts("client", **extra)],
        summary if summary is not None else {"run_id": "run-1", "status": "success"},
        manifest_text="api_version: v1\n",
    )


def _files(root: Path) -> set[str]:
    return {path.relative_to(root).as_posix() for path in root.rglob("*") if path.is_file()}


def test_build_writes_layout_and_sorted_hashes(tmp_path: Path) -> None:
    emitted: list[dict[str, Any]] = []
    run_dir = BundleBuilder("dir", event_hook=emitted.append).build(
        tmp_path / "run-1",
        [_artifacts("server"), _artifacts("client")],
        {"run_id": "run-1", "status": "success"},
        manifest_text="api_version: v1\n",
    )

    role_files = {f"{role}/{name}" for role in ("server", "client") for name in ROLE_FILES}
    assert _files(run_dir) == {"manifest.yaml", "summary.json", HASHES_FILE} | role_files

    lines = (run_dir / HASHES_FILE).read_text(encoding="utf-8").splitlines()
    assert all(HASH_LINE.match(line) for line in lines)
    paths = [line.split("  ", 1)[1] for line in lines]
    assert paths == sorted(paths)
    assert HASHES_FILE not in paths
    for relpath, checksum in parse_hashes("\n".join(lines)).items():
        assert hash_file(run_dir / relpath) == checksum
    assert emitted == [{"event": "bundle_written", "path": str(run_dir), "files": 12}]


def test_fresh_bundle_verifies(tmp_path: Path) -> None:
    bundle = Bundle.open(_build(tmp_path))

    result = bundle.verify()

    assert result.ok
    assert len(result.matched) == 12
    assert result.warnings == []
    assert bundle.run_id == "run-1"
    assert bundle.read_summary()["status"] == "success"
    assert bundle.read_summary("client")["role"] == "client"
    assert "Bundle verification: PASSED" in result.format_result()


def test_single_byte_corruption_is_reported_for_that_file_only(tmp_path: Path) -> None:
    run_dir = _build(tmp_path)
    target = run_dir / "client" / "stdout.log"
    data = bytearray(target.read_bytes())
    data[0] ^= 0x01
    target.write_bytes(bytes(data))

    result = Bundle.open(run_dir).verify()

    assert not result.ok
    assert result.mismatched == ["client/stdout.log"]
    assert result.missing == []
    report = result.format_result()
    assert "Bundle verification: FAILED" in report
    assert "Hash mismatches:\n  - client/stdout.log" in report


def test_missing_file_is_reported(tmp_path: Path) -> None:
    run_dir = _build(tmp_path)
    (run_dir / "server" / "metrics.json").unlink()

    result = Bundle.open(run_dir).verify()

    assert not result.ok
    assert result.missing == ["server/metrics.json"]
    assert result.mismatched == []


def test_extra_files_fail_only_in_strict_mode(tmp_path: Path) -> None:
    run_dir = _build(tmp_path)
    (run_dir / "notes.txt").write_text("operator notes\n", encoding="utf-8")
    bundle = Bundle.open(run_dir)

    relaxed = bundle.verify()
    strict = bundle.verify(VerifyOptions(allow_extra_files=False))

    assert relaxed.ok
    assert relaxed.extra_files == ["notes.txt"]
    assert not strict.ok


def test_skip_patterns_and_size_limit(tmp_path: Path) -> None:
    run_dir = _build(tmp_path)
    (run_dir / "server" / "stdout.log").write_text("tampered\n", encoding="utf-8")
    bundle = Bundle.open(run_dir)

    skipped = bundle.verify(VerifyOptions(skip_patterns=["*.log"]))
    limited = bundle.verify(VerifyOptions(max_file_bytes=1))

    assert skipped.ok
    assert skipped.skipped == ["client/stdout.log", "server/stdout.log"]
    assert limited.ok
    assert len(limited.skipped) == 12


def test_zip_bundle_replaces_directory(tmp_path: Path) -> None:
    archive = _build(tmp_path, "zip")

    assert archive == tmp_path / "runs" / "run-1.zip"
    assert archive.is_file()
    assert not (tmp_path / "runs" / "run-1").exists()
    bundle = Bundle.open(archive)
    assert bundle.is_archive
    assert bundle.run_id == "run-1"
    assert bundle.verify().ok
    assert bundle.read_summary()["run_id"] == "run-1"
    assert bundle.read_text("server/command.txt").endswith("cipdip server\n")


def test_collected_files_are_sealed(tmp_path: Path) -> None:
    capture = tmp_path / "client.pcap"
    capture.write_bytes(b"\xd4\xc3\xb2\xa1")

    run_dir = _build(tmp_path, extra_files={"client.pcap": capture})

    bundle = Bundle.open(run_dir)
    assert "client/client.pcap" in bundle.files
    assert bundle.verify().ok


def test_collected_file_cannot_overwrite_role_file(tmp_path: Path) -> None:
    impostor = tmp_path / "stdout.log"
    impostor.write_text("fake\n", encoding="utf-8")

    with pytest.raises(BundleError, match="would overwrite"):
        _build(tmp_path, extra_files={"stdout.log": impostor})


def test_summary_warnings_for_empty_fields(tmp_path: Path) -> None:
    run_dir = _build(tmp_path, summary={"run_id": "run-1", "status": ""})

    result = Bundle.open(run_dir).verify()

    assert result.ok
    assert result.warnings == ["summary.json: status is empty"]


def test_open_rejects_non_bundles(tmp_path: Path) -> None:
    with pytest.raises(BundleError, match="missing hashes.txt"):
        Bundle.open(tmp_path)
    stray = tmp_path / "notes.txt"
    stray.write_text("x", encoding="utf-8")
    with pytest.raises(BundleError, match="not a bundle"):
        Bundle.open(stray)


def test_unknown_bundle_format_is_rejected() -> None:
    with pytest.raises(BundleError):
        BundleBuilder("tar")


def test_emptied_hash_list_does_not_pass(tmp_path: Path) -> None:
    run_dir = _build(tmp_path)
    (run_dir / "server" / "stdout.log").write_text("tampered\n", encoding="utf-8")
    (run_dir / HASHES_FILE).write_text("", encoding="utf-8")

    result = Bundle.open(run_dir).verify()

    assert not result.ok
    assert result.checks == []
    assert "server/stdout.log: not listed in hashes.txt" in result.errors
    assert f"{MANIFEST_FILE}: not listed in hashes.txt" in result.errors
    assert "Errors:" in result.format_result()


def test_pruned_role_file_is_missing(tmp_path: Path) -> None:
    run_dir = _build(tmp_path)
    (run_dir / "client" / "stdout.log").unlink()
    hashes = run_dir / HASHES_FILE
    kept = [
        line
        for line in hashes.read_text(encoding="utf-8").splitlines()
        if not line.endswith("client/stdout.log")
    ]
    hashes.write_text("\n".join(kept) + "\n", encoding="utf-8")

    bundle = Bundle.open(run_dir)
    result = bundle.verify()
    relaxed = bundle.verify(VerifyOptions(strict_schema=False))

    assert not result.ok
    assert result.missing == ["client/stdout.log"]
    assert result.problems() == ["missing client/stdout.log"]
    assert relaxed.ok


def test_roles_named_in_summary_are_required(tmp_path: Path) -> None:
    summary = {"run_id": "run-1", "status": "failed", "roles": ["server", "client"]}
    run_dir = _build(tmp_path, summary=summary)
    client_dir = run_dir / "client"
    for path in client_dir.iterdir():
        path.unlink()
    client_dir.rmdir()
    hashes = run_dir / HASHES_FILE
    kept = [
        line
        for line in hashes.read_text(encoding="utf-8").splitlines()
        if "  client/" not in line
    ]
    hashes.write_text("\n".join(kept) + "\n", encoding="utf-8")

    result = Bundle.open(run_dir).verify()

    assert not result.ok
    assert result.missing == [f"client/{name}" for name in ROLE_FILES]


def test_malformed_hash_lines_are_errors(tmp_path: Path) -> None:
    run_dir = _build(tmp_path)
    hashes = run_dir / HASHES_FILE
    hashes.write_text(
        hashes.read_text(encoding="utf-8") + "not-a-checksum\nmd5:abc  manifest.yaml\n",
        encoding="utf-8",
    )

    entries, malformed = read_hashes(hashes.read_text(encoding="utf-8"))
    result = Bundle.open(run_dir).verify()

    assert len(entries) == 12
    assert len(malformed) == 2
    assert not result.ok
    assert len(result.errors) == 2
    assert result.errors[0].startswith("hashes.txt line 13:")
    assert result.mismatched == []
