import shlex
import tomllib
from collections.abc import Callable
from pathlib import Path

from click.testing import CliRunner

from cipdip_orch import __version__
from cipdip_orch.cli import cli
from cipdip_orch.manifest import Manifest, load_manifest, save_manifest, template_manifest


def _write_manifest(tmp_path: Path, manifest: Manifest) -> Path:
    path = tmp_path / "run.yaml"
    save_manifest(path, manifest)
    return path


def _only_bundle(runs: Path) -> Path:
    bundles = [path for path in runs.iterdir() if path.is_dir()]
    assert len(bundles) == 1
    return bundles[0]


def test_init_writes_template_and_refuses_overwrite(tmp_path: Path) -> None:
    runner = CliRunner()
    path = tmp_path / "lab" / "run.yaml"

    first = runner.invoke(cli, ["init", str(path)])
    second = runner.invoke(cli, ["init", str(path)])
    forced = runner.invoke(cli, ["init", str(path), "--force"])

    assert first.exit_code == 0, first.output
    assert load_manifest(path) == template_manifest()
    assert second.exit_code == 1
    assert "already exists" in second.output
    assert forced.exit_code == 0, forced.output


def test_validate_accepts_template(tmp_path: Path) -> None:
    path = _write_manifest(tmp_path, template_manifest())

    result = CliRunner().invoke(cli, ["validate", str(path)])

    assert result.exit_code == 0, result.output
    assert f"Manifest OK: {path}" in result.output
    assert "Roles: server, client" in result.output


def test_validate_reports_first_error(tmp_path: Path) -> None:
    path = tmp_path / "run.yaml"
    path.write_text(
        "api_version: v9\nroles:\n  client:\n    agent: local\n    scenario: baseline\n",
        encoding="utf-8",
    )

    result = CliRunner().invoke(cli, ["validate", str(path)])

    assert result.exit_code == 1
    assert "invalid manifest: api_version" in result.output


def test_agents_lists_mappings_with_overrides(tmp_path: Path) -> None:
    path = _write_manifest(tmp_path, template_manifest())

    result = CliRunner().invoke(cli, ["agents", str(path), "--agent", "client=ops@10.0.0.5"])

    assert result.exit_code == 0, result.output
    assert "server: local [pending]" in result.output
    assert "client: ssh://ops@10.0.0.5 [pending]" in result.output


def test_agents_check_probes_local_agents(tmp_path: Path) -> None:
    path = _write_manifest(tmp_path, template_manifest())

    result = CliRunner().invoke(cli, ["agents", str(path), "--check"])

    assert result.exit_code == 0, result.output
    assert "server: local [ok]" in result.output
    assert "client: local [ok]" in result.output


def test_agents_rejects_malformed_override(tmp_path: Path) -> None:
    path = _write_manifest(tmp_path, template_manifest())

    malformed = CliRunner().invoke(cli, ["agents", str(path), "--agent", "client"])
    unknown = CliRunner().invoke(cli, ["agents", str(path), "--agent", "plc=local"])

    assert malformed.exit_code == 2
    assert "ROLE=SPEC" in malformed.output
    assert unknown.exit_code == 1
    assert "unknown role" in unknown.output


def test_run_dry_run_then_verify(tmp_path: Path) -> None:
    path = _write_manifest(tmp_path, template_manifest())
    runs = tmp_path / "runs"
    runner = CliRunner()

    result = runner.invoke(cli, ["run", str(path), "--bundle-dir", str(runs), "--dry-run"])

    assert result.exit_code == 0, result.output
    assert "[server_start] dry run: skipped" in result.output
    assert "Status: success" in result.output
    bundle = _only_bundle(runs)
    assert f"Bundle: {bundle}" in result.output

    verified = runner.invoke(cli, ["verify", str(bundle)])
    assert verified.exit_code == 0, verified.output
    assert "Bundle verification: PASSED" in verified.output

    (bundle / "client" / "command.txt").write_text("cipdip client --tampered\n", encoding="utf-8")
    tampered = runner.invoke(cli, ["verify", str(bundle)])
    assert tampered.exit_code == 1
    assert "Hash mismatches:\n  - client/command.txt" in tampered.output

    skipped = runner.invoke(cli, ["verify", str(bundle), "--skip", "command.txt"])
    assert skipped.exit_code == 0, skipped.output


def test_run_executes_roles_with_role_command(
    tmp_path: Path, role_command: list[str], make_manifest: Callable[..., Manifest]
) -> None:
    path = _write_manifest(tmp_path, make_manifest(duration=1))
    runs = tmp_path / "runs"

    result = CliRunner().invoke(
        cli,
        [
            "run",
            str(path),
            "--bundle-dir",
            str(runs),
            "--format",
            "zip",
            "--show-output",
            "--role-command",
            shlex.join(role_command),
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Status: success" in result.output
    assert "Exit code (client): 0" in result.output
    assert "Exit code (server): 0" in result.output
    assert "[server:stdout] server booting" in result.output
    assert "[client:stats] total=1" in result.output
    archives = list(runs.glob("*.zip"))
    assert len(archives) == 1
    assert CliRunner().invoke(cli, ["verify", str(archives[0])]).exit_code == 0


def test_run_failure_exits_non_zero(
    tmp_path: Path, role_command: list[str], make_manifest: Callable[..., Manifest]
) -> None:
    path = _write_manifest(tmp_path, make_manifest(duration=1, client_args={"exit-code": 4}))

    result = CliRunner().invoke(
        cli,
        [
            "run",
            str(path),
            "--bundle-dir",
            str(tmp_path / "runs"),
            "--role-command",
            shlex.join(role_command),
        ],
    )

    assert result.exit_code == 1
    assert "Status: failed" in result.output
    assert "Error (client): client exited with code 4" in result.output
    assert "Bundle: " in result.output


def test_run_verbose_echoes_events(tmp_path: Path) -> None:
    path = _write_manifest(tmp_path, template_manifest())

    result = CliRunner().invoke(
        cli, ["run", str(path), "--bundle-dir", str(tmp_path / "runs"), "--dry-run", "--verbose"]
    )

    assert result.exit_code == 0, result.output
    assert "  . phase " in result.output
    assert "  . bundle_written " in result.output


def test_verify_requires_bundle_layout_unless_disabled(tmp_path: Path) -> None:
    path = _write_manifest(tmp_path, template_manifest())
    runs = tmp_path / "runs"
    runner = CliRunner()
    built = runner.invoke(cli, ["run", str(path), "--bundle-dir", str(runs), "--dry-run"])
    assert built.exit_code == 0, built.output
    bundle = _only_bundle(runs)
    (bundle / "hashes.txt").write_text("", encoding="utf-8")

    checked = runner.invoke(cli, ["verify", str(bundle)])
    relaxed = runner.invoke(cli, ["verify", str(bundle), "--no-schema"])

    assert checked.exit_code == 1
    assert "summary.json: not listed in hashes.txt" in checked.output
    assert relaxed.exit_code == 0, relaxed.output


def test_verify_rejects_non_bundle(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["verify", str(tmp_path)])

    assert result.exit_code == 1
    assert "missing hashes.txt" in result.output


def test_version_option_and_pyproject_agree() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    result = CliRunner().invoke(cli, ["--version"])

    assert __version__ == pyproject["project"]["version"]
    assert __version__ in result.output
