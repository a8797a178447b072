"""
Desired-state specs — packages, service units, containers.

These are the declarative inputs of the workflow. The orchestrator
builds them from static configuration plus HostContext facts and hands
them to the stage that converges the host towards them.
"""

from __future__ import annotations

import hashlib
import json
from typing import Literal

from pydantic import BaseModel, Field, field_validator

SPEC_HASH_LABEL = "provisioner.spec-hash"


# ── Packages ────────────────────────────────────────────────────────


class AptRepository(BaseModel):
    """A third-party apt repository (signing key + sources list).

    Either ``source_line`` (rendered with ``{arch}`` and ``{codename}``)
    or ``list_url`` (a list file published by the vendor) must be set.
    ``signed_by_rewrite`` injects ``[signed-by=<keyring>]`` into every
    ``deb https://`` line of a downloaded list.
    """

    name: str
    key_url: str
    keyring_path: str
    list_path: str
    source_line: str = ""
    list_url: str = ""
    signed_by_rewrite: bool = False


class PackageSet(BaseModel):
    """An ordered set of system packages installed as one batch."""

    name: str
    packages: list[str] = Field(default_factory=list)
    required: bool = True
    repository: AptRepository | None = None

    @field_validator("packages")
    @classmethod
    def _dedupe(cls, value: list[str]) -> list[str]:
        seen: set[str] = set()
        ordered = []
        for pkg in value:
            pkg = pkg.strip()
            if pkg and pkg not in seen:
                seen.add(pkg)
                ordered.append(pkg)
        return ordered


# ── Containers ──────────────────────────────────────────────────────


class PortMapping(BaseModel):
    host: int
    container: int
    protocol: Literal["tcp", "udp"] = "tcp"

    def flag(self) -> str:
        suffix = "" if self.protocol == "tcp" else f"/{self.protocol}"
        return f"{self.host}:{self.container}{suffix}"


class VolumeMount(BaseModel):
    source: str                 # named volume or host path
    target: str
    read_only: bool = False

    def flag(self) -> str:
        mount = f"{self.source}:{self.target}"
        return f"{mount}:ro" if self.read_only else mount


class ContainerSpec(BaseModel):
    """Desired state of one managed container.

    ``name`` is the idempotency key: at most one container with this
    name exists at a time from the workflow's point of view.
    """

    name: str
    image: str
    ports: list[PortMapping] = Field(default_factory=list)
    volumes: list[VolumeMount] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    restart_policy: str = "always"
    extra_hosts: list[str] = Field(default_factory=list)
    gpus: str | None = None     # e.g. "all"; None = no GPU passthrough
    depends_on: list[str] = Field(default_factory=list)
    health_url: str | None = None
    pull_policy: Literal["missing", "always"] = "missing"

    def runtime_args(self) -> list[str]:
        """Runtime flags shared by ``create`` and the unit's ``run``."""
        args: list[str] = []
        if self.gpus:
            args += ["--gpus", self.gpus]
        for port in self.ports:
            args += ["-p", port.flag()]
        for host in self.extra_hosts:
            args.append(f"--add-host={host}")
        for vol in self.volumes:
            args += ["-v", vol.flag()]
        for key, value in self.env.items():
            args += ["-e", f"{key}={value}"]
        return args

    def spec_hash(self) -> str:
        """Stable digest of everything that shapes the running container.

        Health checking, pull policy and ordering do not change the
        container itself, so they are left out.
        """
        payload = self.model_dump(
            mode="json",
            include={"name", "image", "ports", "volumes", "env",
                     "restart_policy", "extra_hosts", "gpus"},
        )
        raw = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


# ── Service units ───────────────────────────────────────────────────


def _unit_quote(arg: str) -> str:
    """Quote an ExecStart argument the way systemd splits them."""
    if arg and not any(c in arg for c in ' \t"\\'):
        return arg
    escaped = arg.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class ServiceSpec(BaseModel):
    """A supervisor unit definition (systemd service)."""

    name: str                   # unit name without the .service suffix
    description: str = ""
    after: list[str] = Field(default_factory=list)
    requires: list[str] = Field(default_factory=list)
    exec_start_pre: str = ""
    exec_start: str
    exec_stop: str = ""
    restart: str = "always"
    wanted_by: str = "multi-user.target"

    @property
    def unit_name(self) -> str:
        return f"{self.name}.service"

    @classmethod
    def for_container(
        cls,
        spec: ContainerSpec,
        runtime_binary: str = "/usr/bin/docker",
        runtime_unit: str = "docker.service",
    ) -> ServiceSpec:
        """Derive the boot-time unit that runs *spec* in the foreground.

        The container carries the same spec label as one created by the
        convergence engine, so a unit-started container that matches the
        spec is recognised as unchanged.
        """
        deps = [f"{d}.service" for d in spec.depends_on] or [runtime_unit]
        run = [runtime_binary, "run", "--rm", "--name", spec.name,
               "--label", f"{SPEC_HASH_LABEL}={spec.spec_hash()}",
               *spec.runtime_args(), spec.image]
        return cls(
            name=spec.name,
            description=f"{spec.name} container",
            after=list(deps),
            requires=list(deps),
            exec_start_pre=f"-{runtime_binary} rm -f {spec.name}",
            exec_start=" ".join(_unit_quote(a) for a in run),
            exec_stop=f"{runtime_binary} stop {spec.name}",
        )
