"""
CLI commands for the boot units of the managed containers.

Usage::

    provisioner units render
    provisioner units render open-webui --gpu
    provisioner units order --json
"""

from __future__ import annotations

import json
import sys

import click


def _service_specs(config, gpu: bool):
    from provisioner.core.models.specs import ServiceSpec

    runtime_unit = f"{config.runtime_service}.service"
    return [
        ServiceSpec.for_container(spec, config.runtime_binary, runtime_unit)
        for spec in config.container_specs(gpu=gpu)
    ], runtime_unit


@click.group()
def units() -> None:
    """Units — render and order the container boot units."""


@units.command()
@click.argument("name", required=False)
@click.option("--gpu", is_flag=True, help="Render with GPU passthrough.")
@click.pass_context
def render(ctx: click.Context, name: str | None, gpu: bool) -> None:
    """Print the unit file(s) that a run would write."""
    from provisioner.core.services.units import render_unit, validate_unit
    from provisioner.main import load_cli_config

    config = load_cli_config(ctx)
    specs, _ = _service_specs(config, gpu)
    if name:
        specs = [s for s in specs if s.name == name]
        if not specs:
            click.secho(f"❌ No managed container named {name}", fg="red", err=True)
            sys.exit(2)

    for spec in specs:
        text = render_unit(spec)
        click.secho(f"# {config.unit_dir}/{spec.unit_name}", fg="cyan")
        click.echo(text)
        for problem in validate_unit(text):
            click.secho(f"⚠️  {problem}", fg="yellow", err=True)


@units.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def order(ctx: click.Context, as_json: bool) -> None:
    """Show the order in which units are written and enabled."""
    from provisioner.core.errors import UnitOrderError
    from provisioner.core.services.units import EXTERNAL_UNITS, order_units
    from provisioner.main import load_cli_config

    config = load_cli_config(ctx)
    specs, runtime_unit = _service_specs(config, gpu=False)
    try:
        ordered = order_units(specs, EXTERNAL_UNITS | {runtime_unit})
    except UnitOrderError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(1)

    if as_json:
        click.echo(json.dumps([s.unit_name for s in ordered], indent=2))
        return

    for i, spec in enumerate(ordered, 1):
        after = ", ".join(spec.after) or "-"
        click.echo(f"   {i}. {spec.unit_name:<22} after: {after}")
