"""
Environment prober — read-only facts about the host.

Determines privilege level, the non-privileged target user, GPU
presence, the package manager and the init system. Nothing here
mutates the host.

Target user resolution, first non-empty match wins:
    1. explicit override (flag, PROVISION_TARGET_USER, config)
    2. session owner (SUDO_USER under sudo, the login user otherwise)
    3. first UID >= 1000 account with a login shell (cloud-init user)
    4. first member of an administrative group
"""

from __future__ import annotations

import grp
import logging
import os
import pwd
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import NamedTuple

from provisioner.adapters.services.systemd import SYSTEMD_RUNTIME_DIR
from provisioner.adapters.shell.command import CommandRunner
from provisioner.core.errors import EnvironmentProbeError
from provisioner.core.models.host import HostContext

logger = logging.getLogger(__name__)

MIN_USER_UID = 1000
NOBODY_UID = 65534
ADMIN_GROUPS = ("sudo", "admin", "wheel")
_NO_LOGIN_SHELLS = ("nologin", "false")

NVIDIA_PCI_VENDOR = "10de:"
PROC_NVIDIA = Path("/proc/driver/nvidia")


class Account(NamedTuple):
    name: str
    uid: int
    shell: str = "/bin/bash"


def _system_accounts() -> list[Account]:
    return [Account(p.pw_name, p.pw_uid, p.pw_shell) for p in pwd.getpwall()]


def _system_group_members(group: str) -> list[str]:
    try:
        return list(grp.getgrnam(group).gr_mem)
    except KeyError:
        return []


@dataclass
class ProbeSources:
    """Where the prober reads host state from.

    Defaults read the live system; tests substitute any of them.
    """

    environ: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))
    euid: int = field(default_factory=os.geteuid)
    accounts: Callable[[], list[Account]] = _system_accounts
    group_members: Callable[[str], list[str]] = _system_group_members
    runner: CommandRunner = field(default_factory=CommandRunner)
    proc_nvidia: Path = PROC_NVIDIA
    systemd_dir: Path = SYSTEMD_RUNTIME_DIR


# ── Target user ─────────────────────────────────────────────────────


def _session_user(sources: ProbeSources) -> str:
    """Owner of the invoking session; never 'root'."""
    env = sources.environ
    if sources.euid == 0:
        user = env.get("SUDO_USER", "").strip()
        return "" if user == "root" else user

    for key in ("USER", "LOGNAME"):
        user = env.get(key, "").strip()
        if user and user != "root":
            return user

    for account in sources.accounts():
        if account.uid == sources.euid:
            return account.name
    return ""


def _is_login_account(account: Account) -> bool:
    if account.uid < MIN_USER_UID or account.uid == NOBODY_UID:
        return False
    if account.name == "nobody":
        return False
    return not any(account.shell.endswith(s) for s in _NO_LOGIN_SHELLS)


def _first_regular_account(sources: ProbeSources) -> str:
    candidates = sorted(
        (a for a in sources.accounts() if _is_login_account(a)),
        key=lambda a: a.uid,
    )
    return candidates[0].name if candidates else ""


def _first_admin_member(sources: ProbeSources) -> str:
    for group in ADMIN_GROUPS:
        for member in sources.group_members(group):
            if member and member != "root":
                return member
    return ""


def resolve_target_user(override: str | None, sources: ProbeSources) -> tuple[str, str]:
    """Return ``(username, source)``; both empty when nothing resolves."""
    if override and override.strip():
        return override.strip(), "override"

    resolvers: list[tuple[str, Callable[[ProbeSources], str]]] = [
        ("session", _session_user),
        ("account", _first_regular_account),
        ("admin_group", _first_admin_member),
    ]
    for source, resolver in resolvers:
        user = resolver(sources)
        if user:
            return user, source
    return "", ""


# ── GPU ─────────────────────────────────────────────────────────────


def _lspci_nvidia(runner: CommandRunner) -> bool:
    """Scan lspci for an NVIDIA display controller."""
    if runner.which("lspci") is None:
        return False
    r = runner.run(["lspci", "-nn"], timeout=5)
    if not r.ok:
        return False
    for line in r.stdout.splitlines():
        if "VGA" in line or "3D controller" in line or "Display controller" in line:
            upper = line.upper()
            if "NVIDIA" in upper or NVIDIA_PCI_VENDOR.upper() in upper:
                return True
    return False


def detect_gpu(sources: ProbeSources) -> str | None:
    """Vendor of a recognized GPU ('nvidia'), or None.

    A negative answer is a branch selector, not an error.
    """
    if _lspci_nvidia(sources.runner):
        return "nvidia"
    if sources.proc_nvidia.exists():
        return "nvidia"
    if sources.runner.which("nvidia-smi") is not None:
        return "nvidia"
    return None


# ── Probe ───────────────────────────────────────────────────────────


def probe(
    override_user: str | None = None,
    *,
    require_user: bool = False,
    sources: ProbeSources | None = None,
) -> HostContext:
    """Compute the HostContext for this run.

    Args:
        override_user: Explicit target user (takes precedence).
        require_user: Fail when no target user can be resolved.
        sources: Host state sources (default: the live system).

    Raises:
        EnvironmentProbeError: ``require_user`` and no user resolved.
    """
    sources = sources or ProbeSources()

    user, user_source = resolve_target_user(override_user, sources)
    if not user:
        logger.debug("No target user resolved")
        if require_user:
            raise EnvironmentProbeError("no target user", stage="probe")
    else:
        logger.debug("Target user %s (from %s)", user, user_source)

    vendor = detect_gpu(sources)
    package_manager = "apt" if sources.runner.which("apt-get") else None
    init_system = "systemd" if sources.systemd_dir.is_dir() else "unknown"

    return HostContext(
        privileged=sources.euid == 0,
        euid=sources.euid,
        target_user=user,
        user_source=user_source,
        gpu_present=vendor is not None,
        gpu_vendor=vendor,
        package_manager=package_manager,
        init_system=init_system,
    )
