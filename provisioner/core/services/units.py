"""
Service definition writer — materialize systemd units for the containers.

Units are rendered from ServiceSpecs, syntax-checked, and written
atomically (overwrite, never merge). A related group is written in
dependency order, then the supervisor is reloaded once and each unit is
enabled. Units are enabled but not started: the convergence engine runs
the containers now and the units take over at boot.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from provisioner.adapters.base import ServiceSupervisor
from provisioner.adapters.shell.filesystem import atomic_write
from provisioner.core.errors import UnitOrderError, UnitWriteError
from provisioner.core.models.result import StageResult
from provisioner.core.models.specs import ServiceSpec

logger = logging.getLogger(__name__)

# Units outside the managed group that may be depended on
EXTERNAL_UNITS = frozenset({"docker.service", "network-online.target", "network.target"})

_SECTION_RE = re.compile(r"^\[(Unit|Service|Install)\]$")
_KEY_RE = re.compile(r"^[A-Za-z][A-Za-z0-9]*=")


def render_unit(spec: ServiceSpec) -> str:
    """Render *spec* as a systemd unit file."""
    lines = ["[Unit]"]
    if spec.description:
        lines.append(f"Description={spec.description}")
    if spec.after:
        lines.append(f"After={' '.join(spec.after)}")
    if spec.requires:
        lines.append(f"Requires={' '.join(spec.requires)}")

    lines += ["", "[Service]"]
    if spec.exec_start_pre:
        lines.append(f"ExecStartPre={spec.exec_start_pre}")
    lines.append(f"ExecStart={spec.exec_start}")
    if spec.exec_stop:
        lines.append(f"ExecStop={spec.exec_stop}")
    lines.append(f"Restart={spec.restart}")

    lines += ["", "[Install]", f"WantedBy={spec.wanted_by}", ""]
    return "\n".join(lines)


def validate_unit(text: str) -> list[str]:
    """Syntax-check unit text.

    Returns:
        List of error strings (empty = valid).
    """
    errors: list[str] = []
    sections: set[str] = set()
    current: str | None = None
    keys: dict[str, set[str]] = {}

    for num, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith(("#", ";")):
            continue
        m = _SECTION_RE.match(line)
        if m:
            current = m.group(1)
            sections.add(current)
            keys.setdefault(current, set())
            continue
        if line.startswith("["):
            errors.append(f"line {num}: unknown section {line}")
            current = None
            continue
        if current is None:
            errors.append(f"line {num}: entry outside of a section")
            continue
        if not _KEY_RE.match(line):
            errors.append(f"line {num}: expected Key=Value, got {line!r}")
            continue
        key, _, value = line.partition("=")
        if not value.strip():
            errors.append(f"line {num}: empty value for {key}")
        keys[current].add(key)

    for required in ("Unit", "Service"):
        if required not in sections:
            errors.append(f"missing [{required}] section")
    if "Service" in sections and "ExecStart" not in keys.get("Service", set()):
        errors.append("missing ExecStart= in [Service]")

    return errors


def order_units(
    specs: list[ServiceSpec],
    external: frozenset[str] = EXTERNAL_UNITS,
) -> list[ServiceSpec]:
    """Sort *specs* so every unit comes after the units it requires.

    Raises:
        UnitOrderError: Unknown dependency, missing After= for a
            Requires= target, duplicate unit, or a cycle.
    """
    by_unit: dict[str, ServiceSpec] = {}
    for spec in specs:
        if spec.unit_name in by_unit:
            raise UnitOrderError(f"duplicate unit {spec.unit_name}", stage="units")
        by_unit[spec.unit_name] = spec

    for spec in specs:
        for dep in spec.requires:
            if dep not in by_unit and dep not in external:
                raise UnitOrderError(
                    f"{spec.unit_name} requires unknown unit {dep}", stage="units",
                )
            if dep not in spec.after:
                raise UnitOrderError(
                    f"{spec.unit_name} requires {dep} but does not order After= it",
                    stage="units",
                )

    # Kahn's algorithm, stable with respect to input order
    in_degree = {
        name: sum(1 for d in spec.requires if d in by_unit)
        for name, spec in by_unit.items()
    }
    dependents: dict[str, list[str]] = {name: [] for name in by_unit}
    for name, spec in by_unit.items():
        for dep in spec.requires:
            if dep in by_unit:
                dependents[dep].append(name)

    queue = [name for name in by_unit if in_degree[name] == 0]
    ordered: list[ServiceSpec] = []
    while queue:
        name = queue.pop(0)
        ordered.append(by_unit[name])
        for successor in dependents[name]:
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                queue.append(successor)

    if len(ordered) < len(specs):
        raise UnitOrderError("dependency cycle between units", stage="units")
    return ordered


def write_unit(
    spec: ServiceSpec,
    *,
    unit_dir: Path,
    supervisor: ServiceSupervisor | None = None,
) -> StageResult:
    """Validate and atomically write one unit file.

    Raises:
        UnitWriteError: Invalid unit text, filesystem failure, or the
            supervisor's verifier rejected the file.
    """
    stage = f"unit:{spec.name}"
    text = render_unit(spec)

    errors = validate_unit(text)
    if errors:
        raise UnitWriteError(f"invalid unit {spec.unit_name}", stage=stage, detail="; ".join(errors))

    path = unit_dir / spec.unit_name
    try:
        atomic_write(path, text)
    except OSError as e:
        raise UnitWriteError(f"cannot write {path}", stage=stage, detail=str(e)) from e

    if supervisor is not None:
        verdict = supervisor.verify(str(path))
        if verdict is not None and not verdict.ok:
            raise UnitWriteError(f"{spec.unit_name} rejected by verifier", stage=stage, detail=verdict.message)

    logger.info("Wrote unit %s", path)
    return StageResult.success(stage, f"wrote {path}", metadata={"path": str(path)})


def write_units(
    specs: list[ServiceSpec],
    *,
    unit_dir: Path,
    supervisor: ServiceSupervisor,
    enable: bool = True,
    external: frozenset[str] = EXTERNAL_UNITS,
) -> StageResult:
    """Write a related group of units, reload the supervisor, enable them.

    Raises:
        UnitOrderError: The group's dependencies are inconsistent.
        UnitWriteError: A unit could not be written, or reload/enable failed.
    """
    ordered = order_units(specs, external)
    paths = [write_unit(s, unit_dir=unit_dir, supervisor=supervisor).metadata["path"] for s in ordered]

    r = supervisor.daemon_reload()
    if not r.ok:
        raise UnitWriteError("supervisor reload failed", stage="units", detail=r.message)

    enabled = []
    if enable:
        for spec in ordered:
            r = supervisor.enable(spec.unit_name)
            if not r.ok:
                raise UnitWriteError(f"cannot enable {spec.unit_name}", stage="units", detail=r.message)
            enabled.append(spec.unit_name)

    names = ", ".join(s.unit_name for s in ordered)
    return StageResult.success(
        "units",
        f"wrote and enabled {names}" if enable else f"wrote {names}",
        metadata={"paths": paths, "enabled": enabled},
    )
