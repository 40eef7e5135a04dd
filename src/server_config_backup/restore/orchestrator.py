"""Restore a historical snapshot onto the live filesystem.

State machine:

    START -> VALIDATE_COMMIT -> EXTRACT -> SELECT_SCOPE -> CONFIRM
          -> BACKUP_LIVE -> APPLY_RESTORE -> [RECONCILE_SERVICES] -> DONE

``CANCELLED`` is reachable from SELECT_SCOPE and CONFIRM, ``FAILED`` from
any state. Nothing on the live filesystem is touched before BACKUP_LIVE,
and every live path is copied to ``<path>.backup_<timestamp>`` before it
is replaced.
"""
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence

from ..commit_store import CommitStore, RefNotFound
from ..config.schema import BackupPath
from ..errors import BackupError
from ..services.reconciler import RestartReport, ServiceReconciler
from ..snapshot.mirror import SyncFailure, mirror_tree
from ..utils.locking import RepositoryLock
from ..utils.logging_config import timed
from .prompter import Prompter

logger = logging.getLogger(__name__)

ALL_OPTION = "all"
CANCEL_OPTION = "cancel"


class RestoreState(str, Enum):
    START = "start"
    VALIDATE_COMMIT = "validate_commit"
    EXTRACT = "extract"
    SELECT_SCOPE = "select_scope"
    CONFIRM = "confirm"
    BACKUP_LIVE = "backup_live"
    APPLY_RESTORE = "apply_restore"
    RECONCILE_SERVICES = "reconcile_services"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class RestoreSession:
    """Transient record of one restore."""
    reference: str
    source_commit: Optional[str] = None
    extracted_dir: Optional[Path] = None
    selected_scope: list[BackupPath] = field(default_factory=list)
    pre_restore_backup_paths: list[str] = field(default_factory=list)
    restored_paths: list[str] = field(default_factory=list)
    state: RestoreState = RestoreState.START
    history: list[RestoreState] = field(default_factory=lambda: [RestoreState.START])
    error: Optional[str] = None
    services: Optional[RestartReport] = None

    def advance(self, state: RestoreState) -> None:
        logger.debug(f"Restore {self.reference}: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    @property
    def outcome(self) -> str:
        if self.state in (RestoreState.DONE, RestoreState.CANCELLED, RestoreState.FAILED):
            return self.state.value
        return "in_progress"


class RestoreOrchestrator:
    """Drives a ``RestoreSession`` through its states."""

    def __init__(
        self,
        store: CommitStore,
        hostname: str,
        paths: Sequence[BackupPath],
        lock: RepositoryLock,
        prompter: Prompter,
        reconciler: Optional[ServiceReconciler] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize RestoreOrchestrator.

        Args:
            store: Repository holding the snapshots
            hostname: Host namespace inside the repository
            paths: Configured backup paths (restore targets)
            lock: Repository lock, held from extraction through apply
            prompter: Scope selection and confirmation
            reconciler: Used when service restarts are requested
            clock: Source of the safety-copy timestamp
        """
        self.store = store
        self.hostname = hostname
        self.paths = list(paths)
        self.lock = lock
        self.prompter = prompter
        self.reconciler = reconciler
        self.clock = clock
        self.last_session: Optional[RestoreSession] = None

    def _configured(self, component: str) -> BackupPath:
        name = os.path.basename(component.rstrip("/")) or component
        for bp in self.paths:
            if bp.name == name or bp.path == component.rstrip("/"):
                return bp
        raise UnknownComponent(component, [bp.name for bp in self.paths])

    def list_components(self, reference: str) -> list[str]:
        """Top-level components stored in a commit for this host."""
        try:
            commit = self.store.rev_parse(reference)
        except RefNotFound as e:
            raise CommitNotFound(reference) from e
        return [n for n in self.store.list_dir(commit, self.hostname) if n != "README.md"]

    @timed("restore")
    def run(
        self,
        reference: str,
        component: Optional[str] = None,
        restart_services: bool = False,
    ) -> RestoreSession:
        """
        Restore ``component`` (or an interactively chosen scope) from ``reference``.

        Args:
            reference: Commit ref to restore from
            component: Base name or full path of one configured backup path
            restart_services: Reconcile services for the restored paths

        Returns:
            The finished session (state DONE or CANCELLED)

        Raises:
            CommitNotFound: ``reference`` does not resolve
            UnknownComponent: ``component`` is not a configured path or is
                absent from the snapshot
            RestoreError: Extraction, safety copy or apply failed
        """
        session = RestoreSession(reference=reference)
        self.last_session = session
        try:
            self._run(session, component, restart_services)
        except BackupError as e:
            session.error = str(e)
            session.advance(RestoreState.FAILED)
            logger.error(f"Restore from {reference} failed: {e}")
            raise
        except OSError as e:
            session.error = str(e)
            session.advance(RestoreState.FAILED)
            logger.error(f"Restore from {reference} failed: {e}")
            raise RestoreError(f"Restore from {reference} failed: {e}") from e
        return session

    def _run(self, session: RestoreSession, component: Optional[str], restart_services: bool) -> None:
        session.advance(RestoreState.VALIDATE_COMMIT)
        try:
            session.source_commit = self.store.rev_parse(session.reference)
        except RefNotFound as e:
            raise CommitNotFound(session.reference) from e

        requested = self._configured(component) if component else None

        with self.lock.hold("restore"):
            tmp = Path(tempfile.mkdtemp(prefix="server-backup-restore-"))
            session.extracted_dir = tmp
            try:
                session.advance(RestoreState.EXTRACT)
                host_tree = self.store.checkout_subtree(session.source_commit, self.hostname, tmp)
                if host_tree is None:
                    raise RestoreError(
                        f"Commit {session.source_commit[:8]} has no snapshot for {self.hostname}"
                    )
                available = [bp for bp in self.paths if (host_tree / bp.name).is_dir()]

                session.advance(RestoreState.SELECT_SCOPE)
                scope = self._select_scope(requested, available)
                if scope is None:
                    logger.info("Restore cancelled")
                    session.advance(RestoreState.CANCELLED)
                    return
                session.selected_scope = scope

                session.advance(RestoreState.CONFIRM)
                targets = ", ".join(bp.path for bp in scope)
                if not self.prompter.confirm(
                    f"This will overwrite current configuration in {targets} with "
                    f"snapshot {session.source_commit[:8]}. Continue?"
                ):
                    logger.info("Restore cancelled")
                    session.advance(RestoreState.CANCELLED)
                    return

                session.advance(RestoreState.BACKUP_LIVE)
                for bp in scope:
                    copy = self._backup_live(Path(bp.path))
                    if copy is not None:
                        session.pre_restore_backup_paths.append(str(copy))

                session.advance(RestoreState.APPLY_RESTORE)
                for bp in scope:
                    self._apply(host_tree / bp.name, Path(bp.path))
                    session.restored_paths.append(bp.path)
                    logger.info(f"Restored {bp.path} from {session.source_commit[:8]}")
            finally:
                shutil.rmtree(tmp, ignore_errors=True)

        if restart_services and self.reconciler is not None:
            session.advance(RestoreState.RECONCILE_SERVICES)
            session.services = self.reconciler.restart(session.restored_paths)

        session.advance(RestoreState.DONE)

    def _select_scope(
        self,
        requested: Optional[BackupPath],
        available: list[BackupPath],
    ) -> Optional[list[BackupPath]]:
        if requested is not None:
            if requested not in available:
                raise UnknownComponent(requested.name, [bp.name for bp in available])
            return [requested]

        if not available:
            raise RestoreError("No backup paths found in commit")

        options = [bp.name for bp in available] + [ALL_OPTION, CANCEL_OPTION]
        choice = self.prompter.choose("Available configurations to restore:", options)
        if choice is None or choice == CANCEL_OPTION:
            return None
        if choice == ALL_OPTION:
            return list(available)
        for bp in available:
            if bp.name == choice:
                return [bp]
        raise UnknownComponent(choice, [bp.name for bp in available])

    def _backup_live(self, live: Path) -> Optional[Path]:
        """Copy ``live`` to a timestamped sibling. Returns None if ``live`` is absent."""
        if not live.exists():
            logger.info(f"{live} does not exist, nothing to back up")
            return None

        suffix = self.clock().strftime("%Y%m%d_%H%M%S")
        copy = live.with_name(f"{live.name}.backup_{suffix}")
        n = 1
        while copy.exists():
            copy = live.with_name(f"{live.name}.backup_{suffix}_{n}")
            n += 1

        try:
            shutil.copytree(live, copy, symlinks=True)
        except (OSError, shutil.Error) as e:
            raise RestoreError(f"Safety copy of {live} failed, aborting before any change: {e}") from e
        logger.info(f"Previous config backed up to: {copy}")
        return copy

    def _apply(self, source: Path, live: Path) -> None:
        """Replace ``live`` with a mirror of ``source`` using rename-based swaps."""
        token = f"{os.getpid()}"
        staged = live.with_name(f".{live.name}.restore-{token}")
        retired = live.with_name(f".{live.name}.retired-{token}")
        swapped_out = False

        try:
            for leftover in (staged, retired):
                if leftover.exists():
                    shutil.rmtree(leftover)
            live.parent.mkdir(parents=True, exist_ok=True)
            mirror_tree(source, staged)
            if live.exists():
                live_stat = live.stat()
                os.chmod(staged, live_stat.st_mode & 0o7777)
                if os.geteuid() == 0:
                    os.chown(staged, live_stat.st_uid, live_stat.st_gid)
                os.rename(live, retired)
                swapped_out = True
                os.rename(staged, live)
            else:
                os.rename(staged, live)
        except (OSError, SyncFailure) as e:
            if swapped_out and not live.exists():
                os.rename(retired, live)
            if staged.exists():
                shutil.rmtree(staged, ignore_errors=True)
            raise RestoreError(f"Failed to restore {live}: {e}") from e

        # live already holds the snapshot
        if retired.exists():
            try:
                shutil.rmtree(retired)
            except OSError as e:
                logger.warning(f"Restored {live} but could not remove {retired}: {e}")


class RestoreError(BackupError):
    """A restore could not be completed."""
    pass


class CommitNotFound(RestoreError):
    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Commit {reference!r} not found")


class UnknownComponent(RestoreError):
    """Requested component is not a configured backup path (or not in the snapshot)."""

    def __init__(self, component: str, available: Sequence[str]):
        self.component = component
        self.available = list(available)
        super().__init__(
            f"Unknown component {component!r}. Available: {', '.join(self.available) or 'none'}"
        )
