"""
CLI commands for managed containers.

Usage::

    provisioner containers list
    provisioner containers reconcile ollama
    provisioner containers reconcile open-webui --gpu --json
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click


@click.group()
def containers() -> None:
    """Containers — inspect and converge the managed containers."""


@containers.command("list")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_cmd(ctx: click.Context, as_json: bool) -> None:
    """List containers carrying the provisioner's spec label."""
    from provisioner.core.models.specs import SPEC_HASH_LABEL
    from provisioner.main import build_registry, load_cli_config

    config = load_cli_config(ctx)
    registry = build_registry(config, mock=False)
    found = registry.runtime.list_containers(label=SPEC_HASH_LABEL)

    if as_json:
        click.echo(json.dumps([c.model_dump(mode="json") for c in found], indent=2))
        return

    if not found:
        click.secho("No managed containers.", fg="yellow")
        return
    for c in found:
        icon = "🟢" if c.running else "🔴"
        click.echo(f"   {icon} {c.name:<14} {c.status:<10} {c.image}")


@containers.command()
@click.argument("name")
@click.option("--gpu", is_flag=True, help="Converge with GPU passthrough.")
@click.option("--mock", is_flag=True, help="Use in-memory adapters (no real execution).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def reconcile(ctx: click.Context, name: str, gpu: bool, mock: bool, as_json: bool) -> None:
    """Converge a single managed container to its configured spec.

    Dependencies are not converged; they must already be running.
    """
    from provisioner.core.errors import ProvisionError
    from provisioner.core.models.result import StageResult
    from provisioner.core.services.convergence import ConvergenceEngine, ensure_runtime_access
    from provisioner.main import build_registry, load_cli_config

    config = load_cli_config(ctx)
    specs = {s.name: s for s in config.container_specs(gpu=gpu)}
    spec = specs.get(name)
    if spec is None:
        click.secho(f"❌ No managed container named {name}", fg="red", err=True)
        sys.exit(2)

    registry = build_registry(config, mock)
    extra = {"sleep": lambda _s: None, "http_probe": lambda _u: True} if mock else {}
    has_unit = (Path(config.unit_dir) / f"{name}.service").is_file()
    engine = ConvergenceEngine(
        registry.runtime,
        attempts=config.health_attempts,
        interval=config.health_interval,
        unit_supervisor=registry.supervisor if has_unit else None,
        **extra,
    )

    try:
        ensure_runtime_access(registry.runtime, config.runtime_group)
        missing = []
        for dep in spec.depends_on:
            info = registry.runtime.inspect(dep)
            if info is None or not info.running:
                missing.append(dep)
        if missing:
            result = StageResult.failure(
                f"container:{name}",
                f"dependency {', '.join(missing)} is not running",
                error_type="DependencyError",
            )
        else:
            result = engine.reconcile(spec)
    except ProvisionError as e:
        result = StageResult.from_error(f"container:{name}", e)

    if as_json:
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
    else:
        click.secho(result.line(), fg="green" if result.ok else "red")

    sys.exit(0 if result.ok else 1)
