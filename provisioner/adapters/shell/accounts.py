"""
Accounts adapter — group membership through the account database.
"""

from __future__ import annotations

import grp
import pwd

from provisioner.adapters.base import AccountManager, CommandResult
from provisioner.adapters.shell.command import CommandRunner


class AccountsAdapter(AccountManager):
    """usermod backed group administration."""

    def __init__(self, runner: CommandRunner | None = None):
        self._runner = runner or CommandRunner()

    @property
    def name(self) -> str:
        return "accounts"

    def is_available(self) -> bool:
        return self._runner.which("usermod") is not None

    def is_member(self, user: str, group: str) -> bool:
        try:
            entry = grp.getgrnam(group)
        except KeyError:
            return False
        if user in entry.gr_mem:
            return True
        try:
            return pwd.getpwnam(user).pw_gid == entry.gr_gid
        except KeyError:
            return False

    def add_to_group(self, user: str, group: str) -> CommandResult:
        return self._runner.run(["usermod", "-aG", group, user], privileged=True, timeout=30)
