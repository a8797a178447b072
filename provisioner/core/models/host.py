"""
HostContext — facts about the host, computed once per run.

Built by the environment prober and passed read-only to every stage.
The model is frozen: stages never mutate what the prober observed.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from provisioner.core.errors import EnvironmentProbeError


class HostContext(BaseModel):
    """Execution context of a provisioning run."""

    model_config = ConfigDict(frozen=True)

    privileged: bool = False
    euid: int = -1
    target_user: str = ""
    user_source: str = ""           # override, session, account, admin_group
    gpu_present: bool = False
    gpu_vendor: str | None = None
    package_manager: str | None = None  # apt, or None when absent
    init_system: str = "unknown"    # systemd, unknown

    @property
    def package_manager_available(self) -> bool:
        return self.package_manager is not None

    @property
    def has_target_user(self) -> bool:
        return bool(self.target_user)

    def require_user(self) -> str:
        """Return the target username or fail.

        Every user-scoped operation (group membership, permission grants)
        goes through this.
        """
        if not self.target_user:
            raise EnvironmentProbeError("no target user", stage="probe")
        return self.target_user

    def to_dict(self) -> dict:
        data = self.model_dump(mode="json")
        data["package_manager_available"] = self.package_manager_available
        return data
