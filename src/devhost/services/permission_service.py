"""Shared group permission model for DevHost project trees.

Every path under the projects root is owned ``owner:shared_group``.
Directories are 2775 (setgid, so new children inherit the group), files are
664, or 775 when the owner execute bit is set. Files that were not readable
by others (credentials) keep that: 660 or 770. Applying the policy twice
yields the same ownership and modes.
"""

import grp
import logging
import os
import pwd
import stat
from pathlib import Path

from devhost.config import DevHostConfig
from devhost.errors import PermissionSetupFailed
from devhost.models import GroupPermissionPolicy
from devhost.runner import Command, CommandRunner

logger = logging.getLogger(__name__)

DIRECTORY_MODE = 0o2775
FILE_MODE = 0o664
EXECUTABLE_FILE_MODE = 0o775
OTHER_BITS = 0o007


def target_mode(st_mode: int) -> int:
    """Mode a path should have under the policy."""
    if stat.S_ISDIR(st_mode):
        return DIRECTORY_MODE
    mode = EXECUTABLE_FILE_MODE if st_mode & stat.S_IXUSR else FILE_MODE
    if not st_mode & stat.S_IROTH:
        mode &= ~OTHER_BITS
    return mode


class PermissionService:
    """Manages the shared development group and applies it to project trees."""

    def __init__(self, config: DevHostConfig, runner: CommandRunner | None = None) -> None:
        self.config = config
        self.runner = runner or CommandRunner()

    @property
    def policy(self) -> GroupPermissionPolicy:
        return GroupPermissionPolicy(
            group_name=self.config.shared_group,
            owner_principal=self.config.owner_user,
            member_principals=(self.config.owner_user, *self.config.service_principals),
        )

    def _resolve_ids(self) -> tuple[int, int]:
        """Resolve the owner uid and shared group gid."""
        try:
            uid = pwd.getpwnam(self.config.owner_user).pw_uid
        except KeyError:
            raise PermissionSetupFailed(
                f"Owner user '{self.config.owner_user}' does not exist",
            )
        try:
            gid = grp.getgrnam(self.config.shared_group).gr_gid
        except KeyError:
            raise PermissionSetupFailed(
                f"Shared group '{self.config.shared_group}' does not exist",
                suggestion="Run 'devhost setup' to create the shared group",
            )
        return uid, gid

    def ensure_group(self) -> bool:
        """Create the shared group if absent. Returns True if created."""
        try:
            grp.getgrnam(self.config.shared_group)
            return False
        except KeyError:
            pass

        result = self.runner.run(
            Command.build(
                "groupadd", self.config.shared_group,
                timeout=self.config.local_command_timeout,
            )
        )
        if not result.ok:
            raise PermissionSetupFailed(
                f"Failed to create group '{self.config.shared_group}': {result.output}",
            )
        logger.info(f"Created shared group {self.config.shared_group}")
        return True

    def is_member(self, principal: str) -> bool:
        """Check whether a principal belongs to the shared group."""
        try:
            group = grp.getgrnam(self.config.shared_group)
        except KeyError:
            return False
        if principal in group.gr_mem:
            return True
        try:
            return pwd.getpwnam(principal).pw_gid == group.gr_gid
        except KeyError:
            return False

    def ensure_membership(self, principal: str) -> bool:
        """Add a principal to the shared group if absent. Returns True if added."""
        if self.is_member(principal):
            return False

        result = self.runner.run(
            Command.build(
                "usermod", "-a", "-G", self.config.shared_group, principal,
                timeout=self.config.local_command_timeout,
            )
        )
        if not result.ok:
            raise PermissionSetupFailed(
                f"Failed to add '{principal}' to group '{self.config.shared_group}': "
                f"{result.output}",
            )
        logger.info(f"Added {principal} to {self.config.shared_group}")
        return True

    def ensure_host_policy(self) -> dict[str, list[str]]:
        """Create the group and enrol the owner and every existing service principal."""
        self.ensure_group()

        added: list[str] = []
        skipped: list[str] = []
        for principal in self.policy.member_principals:
            try:
                pwd.getpwnam(principal)
            except KeyError:
                # Service identities that are not installed on this host
                if principal != self.config.owner_user:
                    skipped.append(principal)
                    continue
            if self.ensure_membership(principal):
                added.append(principal)

        self.config.projects_root.mkdir(parents=True, exist_ok=True)
        self.apply_policy(self.config.projects_root, recursive=False)
        return {"added": added, "skipped": skipped}

    def apply_policy(self, path: Path, recursive: bool = True) -> int:
        """Set ownership and mode on ``path`` (and below). Returns paths changed."""
        if not path.exists():
            raise PermissionSetupFailed(f"Cannot apply permissions: '{path}' does not exist")

        uid, gid = self._resolve_ids()
        changed = 0

        try:
            changed += self._apply_one(path, uid, gid)
            if recursive and path.is_dir() and not path.is_symlink():
                for dirpath, dirnames, filenames in os.walk(path):
                    for entry in dirnames + filenames:
                        changed += self._apply_one(Path(dirpath) / entry, uid, gid)
        except OSError as e:
            raise PermissionSetupFailed(f"Failed to apply permissions to '{path}': {e}")

        if changed:
            logger.debug(f"Permission policy updated {changed} paths under {path}")
        return changed

    def _apply_one(self, path: Path, uid: int, gid: int) -> int:
        st = os.lstat(path)
        if stat.S_ISLNK(st.st_mode):
            if st.st_uid != uid or st.st_gid != gid:
                os.chown(path, uid, gid, follow_symlinks=False)
                return 1
            return 0

        changed = 0
        if st.st_uid != uid or st.st_gid != gid:
            os.chown(path, uid, gid)
            changed = 1
        mode = target_mode(st.st_mode)
        if stat.S_IMODE(st.st_mode) != mode:
            os.chmod(path, mode)
            changed = 1
        return changed

    def snapshot(self, path: Path) -> dict[str, tuple[int, int, int]]:
        """Ownership and mode of every path under ``path`` (for verification)."""
        result: dict[str, tuple[int, int, int]] = {}
        entries = [path]
        for dirpath, dirnames, filenames in os.walk(path):
            entries.extend(Path(dirpath) / e for e in dirnames + filenames)
        for entry in entries:
            st = os.lstat(entry)
            result[str(entry.relative_to(path))] = (st.st_uid, st.st_gid, stat.S_IMODE(st.st_mode))
        return result
