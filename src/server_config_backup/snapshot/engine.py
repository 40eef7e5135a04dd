"""Snapshot engine: mirror live config trees into the repository and commit."""
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Sequence

from ..commit_store import CommitStore
from ..config.schema import BackupPath
from ..errors import BackupError
from ..utils.locking import RepositoryLock
from .mirror import ExcludeRules, PathMissing, SyncFailure, mirror_tree

logger = logging.getLogger(__name__)


@dataclass
class BackupResult:
    """Outcome of one snapshot run."""
    files_backed_up: int = 0
    changed: bool = False
    commit_id: Optional[str] = None
    pushed: bool = False
    paths_backed_up: list[str] = field(default_factory=list)
    paths_changed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    duration_s: float = 0.0

    def summary(self) -> str:
        if not self.changed:
            return f"No changes ({self.files_backed_up} files checked)"
        return (
            f"Committed {self.commit_id[:8]}: {self.files_backed_up} files from "
            f"{len(self.paths_backed_up)} paths" + (", pushed" if self.pushed else "")
        )


def backup_message(hostname: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"Config backup for {hostname} - {now.strftime('%Y-%m-%d %H:%M:%S')}"


class SnapshotEngine:
    """
    Mirrors configured paths into ``<repo>/<hostname>/<basename>`` and
    produces at most one commit per run.
    """

    def __init__(
        self,
        store: CommitStore,
        hostname: str,
        lock: RepositoryLock,
        push: bool = True,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.hostname = hostname
        self.lock = lock
        self.push_enabled = push
        self.clock = clock

    @property
    def host_dir(self) -> Path:
        return self.store.repo_path / self.hostname

    def _destination(self, backup_path: BackupPath) -> Path:
        """Mirror target for a path, guaranteed to lie inside the repository."""
        dest = Path(os.path.normpath(self.host_dir / backup_path.name))
        repo_root = os.path.normpath(self.store.repo_path)
        if not str(dest).startswith(repo_root + os.sep) or dest.parent != Path(
            os.path.normpath(self.host_dir)
        ):
            raise SyncFailure(
                Path(backup_path.path),
                f"destination {dest} escapes the repository at {repo_root}",
            )
        return dest

    def run(
        self,
        paths: Sequence[BackupPath],
        exclude_patterns: Sequence[str] = (),
    ) -> BackupResult:
        """
        Mirror every path, then stage, commit and push once.

        Args:
            paths: Configured backup paths
            exclude_patterns: Global patterns, combined with each path's own

        Returns:
            BackupResult (``changed`` is False and no commit is made when
            nothing differed from the previous snapshot)

        Raises:
            NoBackupTargets: No path could be mirrored
            CommitStoreError / PushFailure: Repository operation failed
        """
        start = time.monotonic()
        result = BackupResult()

        if not self.store.is_initialized():
            raise BackupError(
                f"Repository at {self.store.repo_path} is not initialized. Run 'init' first."
            )

        with self.lock.hold("backup"):
            try:
                self.host_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise SyncFailure(self.host_dir, f"cannot create host directory: {e}") from e

            for backup_path in paths:
                src = Path(backup_path.path)
                try:
                    dest = self._destination(backup_path)
                    rules = ExcludeRules(list(exclude_patterns) + list(backup_path.excludes))
                    stats = mirror_tree(src, dest, rules)
                except PathMissing as e:
                    logger.warning(f"{e}, skipping")
                    result.warnings.append(str(e))
                    continue
                except SyncFailure as e:
                    logger.error(str(e))
                    result.warnings.append(str(e))
                    continue

                result.files_backed_up += stats.files_total
                result.paths_backed_up.append(backup_path.path)
                if stats.changed:
                    result.paths_changed.append(backup_path.path)
                result.warnings.extend(
                    f"Skipped {backup_path.path}/{rel}" for rel in stats.skipped
                )
                logger.info(f"Backed up {src} ({stats.files_total} files)")

            if not result.paths_backed_up:
                raise NoBackupTargets(
                    "None of the configured backup paths exist or are readable"
                )

            self.store.stage_all()
            result.commit_id = self.store.commit(backup_message(self.hostname, self.clock()))
            result.changed = result.commit_id is not None

            if result.changed and self.push_enabled:
                result.pushed = self.store.push()

        result.duration_s = time.monotonic() - start
        logger.info(result.summary())
        return result


class NoBackupTargets(BackupError):
    """Zero configured paths could be backed up."""
    pass
