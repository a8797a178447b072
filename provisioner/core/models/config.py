"""
ProvisionConfig — the static configuration of a provisioning run.

Loaded from ``provision.yml`` (optional) and overlaid with environment
variables by ``provisioner.core.config.loader``. Defaults reproduce the
standard Docker + Ollama + Open WebUI host.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator

from provisioner.core.models.specs import (
    AptRepository,
    ContainerSpec,
    PackageSet,
    PortMapping,
    VolumeMount,
)

DEFAULT_WEBUI_PORT = 3000
BACKEND_PORT = 11434
FRONTEND_NAME = "open-webui"


def _prerequisites() -> PackageSet:
    return PackageSet(
        name="prerequisites",
        packages=[
            "apt-transport-https",
            "ca-certificates",
            "curl",
            "gnupg",
            "lsb-release",
        ],
    )


def _docker_engine() -> PackageSet:
    return PackageSet(
        name="docker",
        packages=[
            "docker-ce",
            "docker-ce-cli",
            "containerd.io",
            "docker-buildx-plugin",
            "docker-compose-plugin",
        ],
        repository=AptRepository(
            name="docker",
            key_url="https://download.docker.com/linux/ubuntu/gpg",
            keyring_path="/etc/apt/keyrings/docker.gpg",
            list_path="/etc/apt/sources.list.d/docker.list",
            source_line=(
                "deb [arch={arch} signed-by=/etc/apt/keyrings/docker.gpg] "
                "https://download.docker.com/linux/ubuntu {codename} stable"
            ),
        ),
    )


def _gpu_toolkit() -> PackageSet:
    return PackageSet(
        name="gpu",
        packages=["nvidia-container-toolkit"],
        required=False,
        repository=AptRepository(
            name="nvidia-container-toolkit",
            key_url="https://nvidia.github.io/libnvidia-container/gpgkey",
            keyring_path="/usr/share/keyrings/nvidia-container-toolkit-keyring.gpg",
            list_path="/etc/apt/sources.list.d/nvidia-container-toolkit.list",
            list_url=(
                "https://nvidia.github.io/libnvidia-container/stable/deb/"
                "nvidia-container-toolkit.list"
            ),
            signed_by_rewrite=True,
        ),
    )


class PackagesConfig(BaseModel):
    prerequisites: PackageSet = Field(default_factory=_prerequisites)
    docker: PackageSet = Field(default_factory=_docker_engine)
    gpu: PackageSet = Field(default_factory=_gpu_toolkit)


def backend_container() -> ContainerSpec:
    return ContainerSpec(
        name="ollama",
        image="ollama/ollama",
        ports=[PortMapping(host=BACKEND_PORT, container=BACKEND_PORT)],
        volumes=[VolumeMount(source="ollama", target="/root/.ollama")],
        health_url=f"http://localhost:{BACKEND_PORT}/api/version",
    )


def frontend_container(port: int = DEFAULT_WEBUI_PORT) -> ContainerSpec:
    return ContainerSpec(
        name=FRONTEND_NAME,
        image="ghcr.io/open-webui/open-webui:cuda",
        ports=[PortMapping(host=port, container=8080)],
        volumes=[VolumeMount(source="open-webui", target="/app/backend/data")],
        env={"OLLAMA_BASE_URL": f"http://host.docker.internal:{BACKEND_PORT}"},
        extra_hosts=["host.docker.internal:host-gateway"],
        depends_on=["ollama"],
    )


class ProvisionConfig(BaseModel):
    """Root configuration model."""

    workflow: str = "provisioner"

    # ── Overrides ───────────────────────────────────────────────
    target_user: str | None = None
    log_dir: str | None = None
    webui_port: int = DEFAULT_WEBUI_PORT
    frontend: str = FRONTEND_NAME       # container published on webui_port

    # ── Host integration ────────────────────────────────────────
    unit_dir: str = "/etc/systemd/system"
    runtime_binary: str = "/usr/bin/docker"
    runtime_service: str = "docker"
    runtime_group: str = "docker"

    # ── Health verification ─────────────────────────────────────
    health_attempts: int = Field(default=10, ge=1)
    health_interval: float = Field(default=3.0, ge=0)

    # ── Desired state ───────────────────────────────────────────
    packages: PackagesConfig = Field(default_factory=PackagesConfig)
    containers: list[ContainerSpec] | None = None

    @model_validator(mode="after")
    def _frontend_publishes_port(self) -> ProvisionConfig:
        if self.containers is None or "webui_port" not in self.model_fields_set:
            return self
        front = next((c for c in self.containers if c.name == self.frontend), None)
        if front is None:
            raise ValueError(
                f"webui_port is set but no container is named {self.frontend!r}; "
                f"set 'frontend' or drop the port override"
            )
        if not front.ports:
            raise ValueError(f"webui_port is set but {self.frontend!r} publishes no port")
        return self

    def container_specs(self, *, gpu: bool = False) -> list[ContainerSpec]:
        """Managed containers, with GPU passthrough applied when enabled.

        Without an explicit ``containers`` list the standard backend and
        front-end pair is used. Either way the front end is published on
        ``webui_port``; for an explicit list that only happens when the
        port was set (in the file or through ``OPEN_WEBUI_PORT``), and it
        replaces the host side of the front end's first port mapping.
        """
        if self.containers is not None:
            specs = [c.model_copy(deep=True) for c in self.containers]
            if "webui_port" in self.model_fields_set:
                for spec in specs:
                    if spec.name == self.frontend and spec.ports:
                        spec.ports[0] = spec.ports[0].model_copy(update={"host": self.webui_port})
        else:
            specs = [backend_container(), frontend_container(self.webui_port)]
        if gpu:
            specs = [s.model_copy(update={"gpus": s.gpus or "all"}) for s in specs]
        else:
            specs = [s.model_copy(update={"gpus": None}) for s in specs]
        return specs
