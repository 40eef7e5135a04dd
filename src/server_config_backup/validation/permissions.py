"""Security audit of the files the backup system owns or depends on.

Checks modes and ownership of the configuration file, the repository,
the log file, the backup identity's SSH keys and its sudoers drop-in.
``PermissionAudit.fix`` tightens what it safely can.
"""
import grp
import logging
import os
import pwd
import stat
from pathlib import Path
from typing import Callable, Optional, Sequence

from .checks import IssueKind, ValidationIssue, ValidationReport

logger = logging.getLogger(__name__)

DEFAULT_SUDOERS_FILE = Path("/etc/sudoers.d/backup-service")

CONFIG_DIR_MODE = 0o750
CONFIG_FILE_MODES = (0o600, 0o640)
LOG_FILE_MODES = (0o640, 0o644)
SSH_DIR_MODE = 0o700
PRIVATE_KEY_MODE = 0o600
PUBLIC_KEY_MODE = 0o644
SUDOERS_MODE = 0o440


def home_directory(user: str) -> Optional[Path]:
    try:
        return Path(pwd.getpwnam(user).pw_dir)
    except KeyError:
        return None


def owner_of(st: os.stat_result) -> tuple[str, str]:
    """(user, group) names of a stat result; numeric ids when unnamed."""
    try:
        user = pwd.getpwuid(st.st_uid).pw_name
    except KeyError:
        user = str(st.st_uid)
    try:
        group = grp.getgrgid(st.st_gid).gr_name
    except KeyError:
        group = str(st.st_gid)
    return user, group


def private_keys(ssh_dir: Path) -> list[Path]:
    return sorted(p for p in ssh_dir.glob("id_*") if p.is_file() and p.suffix != ".pub")


class PermissionAudit:
    """Audit and repair permissions around one backup installation."""

    def __init__(
        self,
        config_path: Optional[Path],
        repo_dir: Path,
        backup_user: Optional[str] = None,
        log_file: Optional[Path] = None,
        sudoers_file: Path = DEFAULT_SUDOERS_FILE,
        home_of: Callable[[str], Optional[Path]] = home_directory,
    ):
        """
        Initialize the audit.

        Args:
            config_path: Configuration file (None skips config checks)
            repo_dir: Repository working directory
            backup_user: Identity that should own the files. None skips
                ownership, SSH and sudoers checks.
            log_file: Log file, if logging to one
            sudoers_file: Drop-in granting the backup identity its commands
            home_of: Home directory lookup (replaced in tests)
        """
        self.config_path = config_path
        self.repo_dir = repo_dir
        self.backup_user = backup_user
        self.log_file = log_file
        self.sudoers_file = sudoers_file
        self._home_of = home_of

    @property
    def ssh_dir(self) -> Optional[Path]:
        if not self.backup_user:
            return None
        home = self._home_of(self.backup_user)
        return home / ".ssh" if home is not None else None

    def run(self) -> ValidationReport:
        """Inspect every path. Issues are advisory; nothing is changed."""
        report = ValidationReport(title="Permissions audit")
        owner = self.backup_user

        if self.config_path is not None:
            self._check(self.config_path.parent, report, owner=owner,
                        missing="Configuration directory not found")
            self._check(self.config_path, report, modes=CONFIG_FILE_MODES, owner=owner,
                        missing="Configuration file not found")

        self._check(self.repo_dir, report, owner=owner, missing="Backup repository not found")
        self._check(self.repo_dir / ".git", report, owner=owner)

        if self.log_file is not None:
            self._check(self.log_file.parent, report, missing="Log directory not found")
            self._check(self.log_file, report, modes=LOG_FILE_MODES)

        ssh_dir = self.ssh_dir
        if ssh_dir is not None:
            if ssh_dir.is_dir():
                self._check(ssh_dir, report, modes=(SSH_DIR_MODE,), owner=owner)
                for key in private_keys(ssh_dir):
                    self._check(key, report, modes=(PRIVATE_KEY_MODE,), owner=owner)
            else:
                logger.info(f"No SSH directory at {ssh_dir}")

        if self.backup_user:
            self._check(self.sudoers_file, report, modes=(SUDOERS_MODE,), owner="root:root",
                        missing="Sudoers file not found")

        if report.issues:
            logger.warning(f"Permissions audit found {len(report.issues)} issues")
        else:
            logger.info("Permissions audit passed")
        return report

    def _check(
        self,
        path: Path,
        report: ValidationReport,
        modes: Sequence[int] = (),
        owner: Optional[str] = None,
        missing: Optional[str] = None,
    ) -> None:
        """Compare one path's mode and owner with what is expected.

        ``owner`` is ``user`` or ``user:group``. ``missing`` is reported
        when the path does not exist; None means absence is fine.
        """
        try:
            st = path.stat()
        except FileNotFoundError:
            if missing:
                report.issues.append(ValidationIssue(
                    file=str(path),
                    issue_kind=IssueKind.PATH_MISSING,
                    message=missing,
                ))
            return
        except OSError as e:
            report.issues.append(ValidationIssue(
                file=str(path),
                issue_kind=IssueKind.PERMISSION_DENIED,
                message=f"Cannot inspect: {e.strerror}",
                suggestion="Run the audit as root",
            ))
            return

        mode = stat.S_IMODE(st.st_mode)
        if modes and mode not in modes:
            wanted = " or ".join(f"{m:o}" for m in modes)
            report.issues.append(ValidationIssue(
                file=str(path),
                issue_kind=IssueKind.INSECURE_PERMISSIONS,
                message=f"Permissions {mode:o} (should be {wanted})",
                suggestion="Run fix-permissions",
            ))

        if owner:
            user, group = owner_of(st)
            want_user, _, want_group = owner.partition(":")
            if user != want_user or (want_group and group != want_group):
                report.issues.append(ValidationIssue(
                    file=str(path),
                    issue_kind=IssueKind.WRONG_OWNER,
                    message=f"Owned by {user}:{group} (should be {owner})",
                    suggestion="Run fix-permissions as root",
                ))

    def fix(self) -> list[str]:
        """
        Tighten modes, and ownership when running as root.

        The sudoers file is never modified. Paths that cannot be changed
        are logged and skipped.

        Returns:
            Description of each change made
        """
        changes: list[str] = []

        if self.config_path is not None:
            self._chmod(self.config_path.parent, CONFIG_DIR_MODE, changes)
            self._chmod(self.config_path, CONFIG_FILE_MODES[0], changes)
        if self.log_file is not None:
            self._chmod(self.log_file, LOG_FILE_MODES[0], changes)

        ssh_dir = self.ssh_dir
        keys: list[Path] = []
        if ssh_dir is not None and ssh_dir.is_dir():
            self._chmod(ssh_dir, SSH_DIR_MODE, changes)
            for key in private_keys(ssh_dir):
                keys.append(key)
                self._chmod(key, PRIVATE_KEY_MODE, changes)
                public = key.with_name(key.name + ".pub")
                if public.is_file():
                    keys.append(public)
                    self._chmod(public, PUBLIC_KEY_MODE, changes)

        if self.backup_user and os.geteuid() == 0:
            targets = [self.repo_dir]
            if self.config_path is not None:
                targets += [self.config_path.parent, self.config_path]
            if self.log_file is not None:
                targets.append(self.log_file)
            if ssh_dir is not None:
                targets.append(ssh_dir)
            self._chown(targets + keys, self.backup_user, changes)
        elif self.backup_user:
            logger.warning("Not running as root, ownership left unchanged")

        logger.info(f"Permission fixes applied ({len(changes)} changes)")
        return changes

    def _chmod(self, path: Path, mode: int, changes: list[str]) -> None:
        try:
            current = stat.S_IMODE(path.stat().st_mode)
            if current == mode:
                return
            os.chmod(path, mode)
        except FileNotFoundError:
            return
        except OSError as e:
            logger.warning(f"Could not change permissions of {path}: {e}")
            return
        changes.append(f"{path}: {current:o} -> {mode:o}")

    def _chown(self, paths: Sequence[Path], user: str, changes: list[str]) -> None:
        try:
            entry = pwd.getpwnam(user)
        except KeyError:
            logger.warning(f"Backup user {user} does not exist, ownership left unchanged")
            return

        for path in paths:
            if not path.exists():
                continue
            try:
                if path == self.repo_dir:
                    for dirpath, dirnames, filenames in os.walk(path):
                        for name in dirnames + filenames:
                            os.lchown(os.path.join(dirpath, name), entry.pw_uid, entry.pw_gid)
                os.chown(path, entry.pw_uid, entry.pw_gid)
            except OSError as e:
                logger.warning(f"Could not change ownership of {path}: {e}")
                continue
            changes.append(f"{path}: owner -> {user}")
