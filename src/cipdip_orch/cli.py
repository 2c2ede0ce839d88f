from __future__ import annotations

import asyncio
import json
import shlex
from pathlib import Path
from typing import Any

import click

from cipdip_orch import __version__
from cipdip_orch.bundle import Bundle, VerifyOptions
from cipdip_orch.controller import Controller, Options, Phase, Result
from cipdip_orch.errors import BundleError, OrchestrationError, ValidationError
from cipdip_orch.manifest import (
    AgentMapping,
    Manifest,
    extract_agent_mappings,
    load_manifest,
    save_manifest,
    template_manifest,
)
from cipdip_orch.multiplex import StatsSnapshot
from cipdip_orch.transports import OutputEvent

FORWARD_DRAIN_SECONDS = 2.0


def _load(manifest_path: Path) -> Manifest:
    try:
        manifest = load_manifest(manifest_path)
        manifest.validate()
    except ValidationError as exc:
        raise click.ClickException(f"invalid manifest: {exc}") from exc
    return manifest


def _parse_agent_overrides(values: tuple[str, ...]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for value in values:
        role, sep, spec = value.partition("=")
        if not sep or not role.strip():
            raise click.BadParameter(f"expected ROLE=SPEC, got {value!r}", param_hint="--agent")
        overrides[role.strip()] = spec.strip()
    return overrides


def _echo_event(event: dict[str, Any]) -> None:
    details = {key: value for key, value in event.items() if key not in {"event", "run_id", "at"}}
    click.echo(f"  . {event.get('event')} {json.dumps(details, default=str)}")


async def _forward_output(controller: Controller, show_output: bool) -> None:
    async for item in controller.events():
        if not show_output:
            continue
        if isinstance(item, OutputEvent):
            click.echo(f"[{item.role}:{item.stream}] {item.line}")
        elif isinstance(item, StatsSnapshot):
            click.echo(
                f"[{item.role}:stats] total={item.total_requests} "
                f"ok={item.successful_requests} failed={item.failed_requests} "
                f"timeouts={item.timeouts}"
            )


async def _run_controller(controller: Controller, show_output: bool) -> Result:
    forwarder = asyncio.create_task(_forward_output(controller, show_output))
    try:
        return await controller.run()
    finally:
        _, pending = await asyncio.wait({forwarder}, timeout=FORWARD_DRAIN_SECONDS)
        for task in pending:
            task.cancel()
        await controller.close()


@click.group()
@click.version_option(__version__, prog_name="cipdip-orch")
def cli() -> None:
    """CIP/DIP distributed run orchestrator."""


@cli.command("init")
@click.argument("path", type=click.Path(path_type=Path), default=Path("run.yaml"))
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing file.")
def init_command(path: Path, force: bool) -> None:
    if path.exists() and not force:
        raise click.ClickException(f"{path} already exists (use --force to overwrite)")
    save_manifest(path, template_manifest())
    click.echo(f"Wrote manifest template to {path}")


@cli.command("validate")
@click.argument("manifest_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
def validate_command(manifest_path: Path) -> None:
    manifest = _load(manifest_path)
    roles = ", ".join(name for name, _ in manifest.roles.present())
    click.echo(f"Manifest OK: {manifest_path}")
    click.echo(f"Roles: {roles}")


@cli.command("agents")
@click.argument("manifest_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option("--agent", "agent_values", multiple=True, help="Override as ROLE=SPEC.")
@click.option("--check", is_flag=True, default=False, help="Probe each agent.")
def agents_command(manifest_path: Path, agent_values: tuple[str, ...], check: bool) -> None:
    manifest = _load(manifest_path)
    overrides = _parse_agent_overrides(agent_values)
    if not check:
        try:
            mappings = extract_agent_mappings(manifest, overrides)
        except ValidationError as exc:
            raise click.ClickException(str(exc)) from exc
        for mapping in mappings:
            click.echo(f"{mapping.role}: {mapping.transport} [{mapping.status.value}]")
        return

    try:
        controller = Controller(manifest, Options(agents=overrides))
    except ValidationError as exc:
        raise click.ClickException(str(exc)) from exc

    async def probe() -> list[AgentMapping]:
        try:
            return await controller.validate_agents()
        finally:
            await controller.close()

    mappings = asyncio.run(probe())
    failed = False
    for mapping in mappings:
        line = f"{mapping.role}: {mapping.transport} [{mapping.status.value}]"
        if mapping.error:
            failed = True
            line = f"{line} {mapping.error}"
        click.echo(line)
    if failed:
        raise click.ClickException("one or more agents failed the check")


@cli.command("run")
@click.argument("manifest_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option("--bundle-dir", type=click.Path(path_type=Path), default=Path("runs"), show_default=True)
@click.option("--format", "bundle_format", type=click.Choice(["dir", "zip"]), default=None)
@click.option("--timeout", type=float, default=1800.0, show_default=True, help="Run deadline in seconds.")
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--verbose", is_flag=True, default=False)
@click.option("--show-output", is_flag=True, default=False, help="Print role output lines.")
@click.option("--agent", "agent_values", multiple=True, help="Override as ROLE=SPEC.")
@click.option("--role-command", default=None, help="Local command prefix for role processes.")
def run_command(
    manifest_path: Path,
    bundle_dir: Path,
    bundle_format: str | None,
    timeout: float,
    dry_run: bool,
    verbose: bool,
    show_output: bool,
    agent_values: tuple[str, ...],
    role_command: str | None,
) -> None:
    manifest = _load(manifest_path)
    options = Options(
        bundle_dir=bundle_dir,
        bundle_format=bundle_format,
        timeout=timeout if timeout > 0 else None,
        dry_run=dry_run,
        verbose=verbose,
        agents=_parse_agent_overrides(agent_values),
        work_dir=manifest_path.resolve().parent,
        event_hook=_echo_event if verbose else None,
    )
    if role_command:
        options.role_command = shlex.split(role_command)

    try:
        controller = Controller(manifest, options)
    except ValidationError as exc:
        raise click.ClickException(str(exc)) from exc

    def on_phase(phase: Phase, message: str) -> None:
        click.echo(f"[{phase.value}] {message}")

    controller.set_phase_callback(on_phase)
    try:
        result = asyncio.run(_run_controller(controller, show_output))
    except OrchestrationError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Run ID: {result.run_id}")
    click.echo(f"Status: {result.status.value}")
    for role, code in sorted(result.per_role_exit_code.items()):
        click.echo(f"Exit code ({role}): {code}")
    for role, error in sorted(result.role_errors.items()):
        click.echo(f"Error ({role}): {error}")
    if result.bundle_path:
        click.echo(f"Bundle: {result.bundle_path}")
    if result.bundle_error:
        click.echo(f"Bundle error: {result.bundle_error}")
    if not result.ok:
        raise click.ClickException(result.error or f"run {result.status.value}")


@cli.command("verify")
@click.argument("bundle_path", type=click.Path(path_type=Path, exists=True))
@click.option("--skip", "skip_patterns", multiple=True, help="Glob of files to skip.")
@click.option("--max-file-bytes", type=int, default=None, help="Skip files larger than this.")
@click.option("--strict", is_flag=True, default=False, help="Fail on files not listed in hashes.txt.")
@click.option(
    "--no-schema",
    "no_schema",
    is_flag=True,
    default=False,
    help="Check only the files listed in hashes.txt.",
)
def verify_command(
    bundle_path: Path,
    skip_patterns: tuple[str, ...],
    max_file_bytes: int | None,
    strict: bool,
    no_schema: bool,
) -> None:
    try:
        bundle = Bundle.open(bundle_path)
        result = bundle.verify(
            VerifyOptions(
                skip_patterns=list(skip_patterns),
                max_file_bytes=max_file_bytes,
                allow_extra_files=not strict,
                strict_schema=not no_schema,
            )
        )
    except BundleError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(result.format_result(), nl=False)
    if not result.ok:
        raise click.ClickException("bundle verification failed")
