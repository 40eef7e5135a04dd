"""Pre-flight validation run before a backup.

Catches conditions that would make a backup fail or capture a broken
configuration, before anything is written to the repository.
"""
import logging
import os
import pwd
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Optional, Sequence

from ..config.schema import BackupPath
from ..errors import BackupError
from .checks import (
    APACHE_CHECKERS,
    APACHE_PATH,
    DATABASE_PATH,
    MYSQL_CHECKER,
    PHP_CHECKER,
    PHP_PATH,
    IssueKind,
    SyntaxChecker,
    ValidationIssue,
    ValidationReport,
    check_database_config,
    check_php_config,
)

logger = logging.getLogger(__name__)

Runner = Callable[[list[str]], subprocess.CompletedProcess]


def disk_usage_percent(path: Path) -> float:
    """Used space of the filesystem holding ``path`` (or its nearest existing parent)."""
    probe = path
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    usage = shutil.disk_usage(probe)
    return usage.used / usage.total * 100 if usage.total else 0.0


def user_exists(name: str) -> bool:
    try:
        pwd.getpwnam(name)
    except KeyError:
        return False
    return True


def run_tool(argv: list[str]) -> subprocess.CompletedProcess:
    return subprocess.run(argv, capture_output=True, text=True, check=False, timeout=60)


class ValidationGate:
    """Validate the environment and configured paths before a backup."""

    def __init__(
        self,
        paths: Sequence[BackupPath],
        store_dir: Path,
        backup_user: Optional[str] = None,
        disk_usage_limit: int = 90,
        disk_usage: Callable[[Path], float] = disk_usage_percent,
        identity_exists: Callable[[str], bool] = user_exists,
        which: Callable[[str], Optional[str]] = shutil.which,
        runner: Runner = run_tool,
    ):
        """
        Initialize the gate.

        Args:
            paths: Configured backup paths
            store_dir: Repository working directory (disk usage is measured here)
            backup_user: Identity that must exist (None skips the check)
            disk_usage_limit: Percent usage above which backups are blocked
            disk_usage, identity_exists, which, runner: System probes
                (replaced in tests)
        """
        self.paths = list(paths)
        self.store_dir = store_dir
        self.backup_user = backup_user
        self.disk_usage_limit = disk_usage_limit
        self._disk_usage = disk_usage
        self._identity_exists = identity_exists
        self._which = which
        self._runner = runner

    def run(self) -> ValidationReport:
        """
        Run every check.

        Blocking:
        - Repository disk usage above the limit
        - Backup identity missing
        - Existing backup path not readable

        Advisory:
        - Backup path missing
        - Malformed or deprecated directives in database/PHP configs
        - External syntax checker failures (when the tool is installed)

        Returns:
            ValidationReport; ``backup_blocked`` tells the caller to abort
        """
        report = ValidationReport()

        self._check_disk_space(report)
        self._check_identity(report)
        for backup_path in self.paths:
            self._check_path(backup_path, report)

        if report.issues:
            logger.warning(
                f"Validation found {len(report.issues)} issues "
                f"({len(report.blocking_issues)} blocking)"
            )
        else:
            logger.info("Pre-backup validation passed")
        return report

    def _check_disk_space(self, report: ValidationReport) -> None:
        try:
            used = self._disk_usage(self.store_dir)
        except OSError as e:
            logger.warning(f"Cannot measure disk usage of {self.store_dir}: {e}")
            return
        if used > self.disk_usage_limit:
            report.issues.append(ValidationIssue(
                file=str(self.store_dir),
                issue_kind=IssueKind.DISK_SPACE,
                message=f"Backup directory is {used:.0f}% full",
                suggestion="Clean up old backups or increase disk space",
                blocking=True,
            ))

    def _check_identity(self, report: ValidationReport) -> None:
        if self.backup_user and not self._identity_exists(self.backup_user):
            report.issues.append(ValidationIssue(
                file="system",
                issue_kind=IssueKind.USER_MISSING,
                message=f"Backup user {self.backup_user} does not exist",
                suggestion="Create backup user or update configuration",
                blocking=True,
            ))

    def _check_path(self, backup_path: BackupPath, report: ValidationReport) -> None:
        path = Path(backup_path.path)
        if not path.is_dir():
            report.issues.append(ValidationIssue(
                file=backup_path.path,
                issue_kind=IssueKind.PATH_MISSING,
                message="Backup path does not exist",
                suggestion="Create directory or remove from backup paths",
            ))
            return

        if not os.access(path, os.R_OK | os.X_OK):
            report.issues.append(ValidationIssue(
                file=backup_path.path,
                issue_kind=IssueKind.PERMISSION_DENIED,
                message="Cannot read backup path",
                suggestion="Check file permissions",
                blocking=True,
            ))
            return

        if DATABASE_PATH.search(backup_path.path):
            for config_file in self._find_files(path, ".cnf"):
                text = self._read(config_file)
                if text is not None:
                    report.issues.extend(check_database_config(str(config_file), text))
                self._run_checker(MYSQL_CHECKER, str(config_file), report)
        elif PHP_PATH.search(backup_path.path):
            for config_file in self._find_files(path, ".ini"):
                text = self._read(config_file)
                if text is not None:
                    report.issues.extend(check_php_config(str(config_file), text))
                self._run_checker(PHP_CHECKER, str(config_file), report)
        elif APACHE_PATH.search(backup_path.path):
            for checker in APACHE_CHECKERS:
                if self._which(checker.tool):
                    self._run_checker(checker, backup_path.path, report)
                    break

    def _find_files(self, root: Path, suffix: str) -> list[Path]:
        found = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = [d for d in dirnames if d != ".git"]
            for name in filenames:
                candidate = Path(dirpath) / name
                if name.endswith(suffix) and candidate.is_file():
                    found.append(candidate)
        return sorted(found)

    def _read(self, path: Path) -> Optional[str]:
        try:
            return path.read_text(errors="replace")
        except OSError as e:
            logger.debug(f"Cannot read {path}: {e}")
            return None

    def _run_checker(self, checker: SyntaxChecker, target: str, report: ValidationReport) -> None:
        # A missing tool is not an issue
        if not self._which(checker.tool):
            return
        try:
            result = self._runner(checker.argv(target))
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"{checker.tool} could not be run: {e}")
            return
        output = (result.stdout or "") + (result.stderr or "")
        if checker.failed(result.returncode, output):
            first_line = output.strip().splitlines()[0] if output.strip() else ""
            report.issues.append(ValidationIssue(
                file=target,
                issue_kind=IssueKind.SYNTAX_ERROR,
                message=f"{checker.label} syntax validation failed"
                        + (f": {first_line}" if first_line else ""),
                suggestion="Check configuration syntax",
            ))


class ValidationBlocked(BackupError):
    """Validation found blocking issues; the backup must not run."""

    def __init__(self, report: ValidationReport):
        self.report = report
        reasons = "; ".join(i.message for i in report.blocking_issues)
        super().__init__(f"Backup blocked by validation: {reasons}")
