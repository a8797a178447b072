"""Adapters — bindings to the host tools the workflow drives.

Public re-exports for convenient access.
"""

from provisioner.adapters.base import (
    AccountManager,
    Adapter,
    CommandResult,
    ContainerInfo,
    ContainerRuntime,
    PackageManager,
    ServiceSupervisor,
)
from provisioner.adapters.registry import AdapterRegistry

__all__ = [
    "AccountManager",
    "Adapter",
    "AdapterRegistry",
    "CommandResult",
    "ContainerInfo",
    "ContainerRuntime",
    "PackageManager",
    "ServiceSupervisor",
]
