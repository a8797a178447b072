"""
Apt adapter — Debian/Ubuntu package management.

Installed-state checks use ``dpkg-query`` and need no privileges; index
refresh, installation and repository registration run through the
command runner as privileged commands.
"""

from __future__ import annotations

import logging
import re
import shlex
from pathlib import Path

from provisioner.adapters.base import CommandResult, PackageManager
from provisioner.adapters.shell.command import CommandRunner
from provisioner.adapters.shell.filesystem import read_text_or_none
from provisioner.core.models.specs import AptRepository

logger = logging.getLogger(__name__)

_NONINTERACTIVE = {"DEBIAN_FRONTEND": "noninteractive"}

OS_RELEASE = Path("/etc/os-release")


def read_codename(os_release: Path = OS_RELEASE) -> str:
    """Distribution codename from /etc/os-release (e.g. 'noble')."""
    text = read_text_or_none(os_release) or ""
    values: dict[str, str] = {}
    for line in text.splitlines():
        if "=" in line:
            key, _, value = line.partition("=")
            values[key.strip()] = value.strip().strip('"')
    return values.get("VERSION_CODENAME") or values.get("UBUNTU_CODENAME", "")


def rewrite_signed_by(list_text: str, keyring: str) -> str:
    """Pin every ``deb https://`` line of a vendor list to *keyring*."""
    return re.sub(
        r"^deb https://",
        f"deb [signed-by={keyring}] https://",
        list_text,
        flags=re.MULTILINE,
    )


class AptAdapter(PackageManager):
    """apt-get / dpkg backed package manager."""

    def __init__(self, runner: CommandRunner | None = None, os_release: Path = OS_RELEASE):
        self._runner = runner or CommandRunner()
        self._os_release = os_release

    @property
    def name(self) -> str:
        return "apt"

    def is_available(self) -> bool:
        return self._runner.which("apt-get") is not None

    def is_installed(self, package: str) -> bool:
        r = self._runner.run(["dpkg-query", "-W", "-f=${Status}", package], timeout=10)
        return r.ok and "install ok installed" in r.stdout

    def refresh_index(self) -> CommandResult:
        return self._runner.run(
            ["apt-get", "update"],
            privileged=True,
            timeout=600,
            env=_NONINTERACTIVE,
        )

    def install(self, packages: list[str]) -> CommandResult:
        return self._runner.run(
            ["apt-get", "install", "-y", *packages],
            privileged=True,
            timeout=1800,
            env=_NONINTERACTIVE,
        )

    def add_repository(self, repo: AptRepository) -> CommandResult:
        """Install the signing key and sources list, skipping what is in place."""
        changed = False

        if not Path(repo.keyring_path).is_file():
            key_dir = str(Path(repo.keyring_path).parent)
            r = self._runner.run(["install", "-m", "0755", "-d", key_dir], privileged=True)
            if not r.ok:
                return r
            fetch = (
                f"curl -fsSL {shlex.quote(repo.key_url)} | "
                f"gpg --dearmor --yes -o {shlex.quote(repo.keyring_path)}"
            )
            r = self._runner.run(["sh", "-c", fetch], privileged=True, timeout=120)
            if not r.ok:
                return r
            r = self._runner.run(["chmod", "a+r", repo.keyring_path], privileged=True)
            if not r.ok:
                return r
            changed = True

        wanted = self._render_list(repo)
        if wanted is None or isinstance(wanted, CommandResult):
            return wanted or CommandResult.failed(
                stderr=f"Repository '{repo.name}' has neither source_line nor list_url",
            )

        if read_text_or_none(Path(repo.list_path)) != wanted:
            r = self._runner.run(["tee", repo.list_path], privileged=True, input=wanted)
            if not r.ok:
                return r
            changed = True

        logger.debug("Repository %s %s", repo.name, "registered" if changed else "unchanged")
        return CommandResult.completed(
            stdout="written" if changed else "unchanged",
            metadata={"changed": changed},
        )

    def _render_list(self, repo: AptRepository) -> str | CommandResult | None:
        if repo.source_line:
            arch = self._runner.run(["dpkg", "--print-architecture"], timeout=10)
            if not arch.ok:
                return arch
            line = repo.source_line.format(
                arch=arch.stdout.strip(),
                codename=read_codename(self._os_release),
            )
            return line + "\n"

        if repo.list_url:
            r = self._runner.run(["curl", "-fsSL", repo.list_url], timeout=120)
            if not r.ok:
                return r
            text = r.stdout
            if repo.signed_by_rewrite:
                text = rewrite_signed_by(text, repo.keyring_path)
            return text if text.endswith("\n") else text + "\n"

        return None
