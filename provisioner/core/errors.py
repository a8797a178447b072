"""
Error taxonomy — every failure a provisioning stage can raise.

Stage services raise these; the orchestrator catches ``ProvisionError``
at each stage boundary, records it through the run reporter, and then
decides whether the run continues. Adapters never raise for tool
failures: they return a ``CommandResult`` and the services translate it.

``fatal`` is the class default. The orchestrator may downgrade a fatal
error for optional stages (the GPU toolkit).
"""

from __future__ import annotations


class ProvisionError(Exception):
    """Base class for all provisioning failures."""

    fatal: bool = True

    def __init__(self, message: str, *, stage: str = "", detail: str = ""):
        super().__init__(message)
        self.stage = stage
        self.detail = detail

    @property
    def kind(self) -> str:
        """Error class name, as recorded in stage results."""
        return type(self).__name__


class ConfigError(ProvisionError):
    """Raised when provisioning configuration is invalid or missing."""


class EnvironmentProbeError(ProvisionError):
    """No usable target user could be determined."""


class PackageError(ProvisionError):
    """Package index refresh or package installation failed."""


class UnitWriteError(ProvisionError):
    """A service unit could not be validated or written."""


class UnitOrderError(UnitWriteError):
    """Unit dependency graph is inconsistent (unknown target or cycle)."""


class RuntimePermissionError(ProvisionError):
    """The container runtime socket is not accessible to this process."""


class ContainerError(ProvisionError):
    """Base class for container lifecycle failures."""

    def __init__(self, message: str, *, container: str = "", **kwargs: str):
        super().__init__(message, **kwargs)
        self.container = container


class PullError(ContainerError):
    """Image pull failed."""


class CreateError(ContainerError):
    """Container creation failed."""


class StartError(ContainerError):
    """Container failed to start or crash-looped right after start."""


class HealthCheckError(ContainerError):
    """Container did not pass liveness verification in the allotted attempts."""
