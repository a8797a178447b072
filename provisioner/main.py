"""
Host provisioner — CLI entrypoint.

Usage:
    python -m provisioner.main --help
    provisioner run
    provisioner probe --json
    provisioner units render
    provisioner containers reconcile open-webui
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click

from provisioner import __version__
from provisioner.core.observability.logging_config import setup_logging


def load_cli_config(ctx: click.Context):
    """Load configuration for a command, exiting 2 on config errors."""
    from provisioner.core.config.loader import load_config
    from provisioner.core.errors import ConfigError

    try:
        return load_config(ctx.obj.get("config_path"))
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(2)


def build_registry(config, mock: bool):
    """Real adapters, or in-memory fakes for ``--mock``."""
    from provisioner.adapters.registry import AdapterRegistry

    if mock:
        return AdapterRegistry.mock()
    return AdapterRegistry.system(runtime_binary=config.runtime_binary)


def mock_run_overrides(config, log_path: Path):
    """Keep a ``--mock`` run off the host.

    User resolution still reads the real session; GPU detection sees no
    hardware and units land in a scratch directory beside the log.
    """
    from provisioner.adapters.mock import FakeRunner
    from provisioner.core.services.probe import ProbeSources

    config = config.model_copy(update={"unit_dir": str(log_path.parent / "mock-units")})
    sources = ProbeSources(
        runner=FakeRunner(binaries={"apt-get"}),
        proc_nvidia=log_path.parent / "mock-proc-nvidia",
    )
    return config, {
        "probe_sources": sources,
        "sleep": lambda _s: None,
        "http_probe": lambda _u: True,
    }


@click.group()
@click.version_option(version=__version__, prog_name="provisioner")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to provision.yml (default: auto-detect, else built-in defaults).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """Host provisioner — Docker, GPU toolkit, Ollama and Open WebUI."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = os.environ.get("PROVISION_LOG_LEVEL", "WARNING")

    setup_logging(level=level, quiet_third_party=not debug)


@cli.command()
@click.option("--user", "-u", default=None, help="Target non-root user (overrides detection).")
@click.option("--dry-run", is_flag=True, help="Probe and plan, change nothing.")
@click.option("--mock", is_flag=True, help="Use in-memory adapters (no real execution).")
@click.option("--no-packages", "skip_packages", is_flag=True, help="Skip package installation stages.")
@click.option("--no-units", "skip_units", is_flag=True, help="Skip writing systemd units.")
@click.option("--only", multiple=True, help="Converge only these containers.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def run(
    ctx: click.Context,
    user: str | None,
    dry_run: bool,
    mock: bool,
    skip_packages: bool,
    skip_units: bool,
    only: tuple[str, ...],
    as_json: bool,
) -> None:
    """Converge this host: packages, services, units, containers."""
    from provisioner.core.services.reporter import RunReporter, default_log_path
    from provisioner.core.use_cases.provision import ProvisionOptions, run_provision

    config = load_cli_config(ctx)
    registry = build_registry(config, mock)

    log_path = default_log_path(
        config.workflow,
        privileged=os.geteuid() == 0,
        log_dir=config.log_dir,
    )
    reporter = RunReporter(log_path, config.workflow, privileged=os.geteuid() == 0 and not config.log_dir)

    options = ProvisionOptions(
        user=user,
        skip_packages=skip_packages,
        skip_units=skip_units,
        only=list(only),
        dry_run=dry_run,
    )
    extra = {}
    if mock:
        config, extra = mock_run_overrides(config, log_path)
    try:
        result = run_provision(config, registry=registry, reporter=reporter, options=options, **extra)
    finally:
        reporter.close()

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        color = {"ok": "green", "partial": "yellow"}.get(result.report.status, "red")
        click.secho(result.report.text(), fg=color)

    sys.exit(result.exit_code)


@cli.command()
@click.option("--user", "-u", default=None, help="Target user override.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def probe(ctx: click.Context, user: str | None, as_json: bool) -> None:
    """Show what the prober sees on this host."""
    from provisioner.core.services.probe import probe as probe_host

    config = load_cli_config(ctx)
    host = probe_host(user or config.target_user)

    if as_json:
        click.echo(json.dumps(host.to_dict(), indent=2))
        return

    click.secho("🔎 Host", fg="cyan", bold=True)
    click.echo(f"   Privileged:       {'yes' if host.privileged else 'no'} (euid {host.euid})")
    if host.target_user:
        click.echo(f"   Target user:      {host.target_user} (from {host.user_source})")
    else:
        click.secho("   Target user:      none resolved", fg="yellow")
    gpu = f"yes ({host.gpu_vendor})" if host.gpu_present else "no"
    click.echo(f"   GPU:              {gpu}")
    click.echo(f"   Package manager:  {host.package_manager or 'none'}")
    click.echo(f"   Init system:      {host.init_system}")


@cli.command()
@click.option("--gpu", is_flag=True, help="Compare against GPU-enabled specs.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, gpu: bool, as_json: bool) -> None:
    """Compare managed containers with the configured desired state."""
    from provisioner.core.use_cases.status import get_status

    config = load_cli_config(ctx)
    result = get_status(config, build_registry(config, mock=False), gpu=gpu)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    if not result.runtime_available:
        click.secho("❌ Container runtime not reachable", fg="red")
        sys.exit(1)

    click.secho("📦 Managed containers", fg="cyan", bold=True)
    for c in result.containers:
        icon = "🟢" if c.status == "running" else "🔴" if c.exists else "⚪"
        sync = "in sync" if c.in_sync else "drifted" if c.exists else "absent"
        unit = "unit ✓" if c.unit_present else "no unit"
        click.echo(f"   {icon} {c.name:<14} {c.status:<10} {sync:<8} {unit}  {c.image}")
    click.echo()


@cli.command()
@click.option("--limit", "-n", default=10, type=int, help="Number of runs to show.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def history(ctx: click.Context, limit: int, as_json: bool) -> None:
    """Show recent provisioning runs from the run ledger."""
    from provisioner.core.persistence.audit import RunLedger
    from provisioner.core.services.reporter import default_log_path

    config = load_cli_config(ctx)
    log_path = default_log_path(config.workflow, privileged=os.geteuid() == 0, log_dir=config.log_dir)
    entries = RunLedger.beside(log_path).read_recent(limit)

    if as_json:
        click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return

    if not entries:
        click.secho("No runs recorded.", fg="yellow")
        return

    for e in entries:
        color = {"ok": "green", "partial": "yellow"}.get(e.status, "red")
        click.secho(f"   {e.timestamp}  {e.status:<8}", fg=color, nl=False)
        click.echo(f" user={e.target_user or '-'}  failed={','.join(e.failed) or '-'}")
        click.echo(f"      {e.log_path}")


# ── Sub-groups ──────────────────────────────────────────────────

from provisioner.ui.cli.containers import containers  # noqa: E402
from provisioner.ui.cli.units import units  # noqa: E402

cli.add_command(containers)
cli.add_command(units)


if __name__ == "__main__":
    cli()
