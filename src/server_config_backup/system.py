"""Top-level orchestration.

``BackupSystem`` composes every component from one ``BackupConfig`` and
implements the user-facing operations. It owns notification wiring:
components report results, ``BackupSystem`` turns them into webhook
events, and notification failures never change an operation's outcome.
"""
import logging
import time
from pathlib import Path
from typing import Optional, Sequence

import httpx

from .commit_store import CommitInfo, CommitStore, PrivilegedExecutor
from .config.loader import save_config, with_webhook
from .config.schema import BackupConfig
from .drift import DriftDetector, DriftReport
from .errors import BackupError, ConfigurationError
from .notify import NotificationDispatcher, events
from .restore import (
    ConsolePrompter,
    Prompter,
    RestoreError,
    RestoreOrchestrator,
    RestoreSession,
    RestoreState,
)
from .services import RestartReport, ServiceReconciler, ServiceRestartFailure
from .snapshot import BackupResult, SnapshotEngine
from .utils.locking import RepositoryLock
from .utils.logging_config import get_log_file, timed_section
from .validation import PermissionAudit, ValidationBlocked, ValidationGate, ValidationReport

logger = logging.getLogger(__name__)

README_TEMPLATE = """# Configuration backups for {hostname}

System ID: {system_id}

Each directory below mirrors one backed-up configuration path:

{paths}
"""


class BackupSystem:
    """Backup, drift, restore and service operations for one host."""

    def __init__(
        self,
        config: BackupConfig,
        config_path: Optional[Path] = None,
        prompter: Optional[Prompter] = None,
        reconciler: Optional[ServiceReconciler] = None,
        http_client: Optional[httpx.Client] = None,
        executor: Optional[PrivilegedExecutor] = None,
        gate: Optional[ValidationGate] = None,
    ):
        """
        Initialize BackupSystem.

        Args:
            config: Validated configuration (already bound to this host)
            config_path: File the config came from; needed to persist changes
            prompter: Restore prompts (default: console)
            reconciler: Service reconciler (default: built from config)
            http_client: HTTP client for webhooks
            executor: Runs git as the backup identity (default: from config)
            gate: Validation gate (default: built from config)
        """
        if not config.hostname:
            raise ConfigurationError("Configuration is not bound to a hostname")

        self.config = config
        self.config_path = config_path
        self.prompter = prompter or ConsolePrompter()
        self._http_client = http_client
        self._gate = gate

        repo = config.repository
        self.store = CommitStore(
            Path(repo.working_dir),
            executor=executor or PrivilegedExecutor(config.backup.backup_user),
            branch=repo.branch,
            user_name=repo.user_name,
            user_email=repo.user_email,
        )
        self.lock = RepositoryLock(Path(repo.working_dir), timeout=config.backup.lock_timeout)
        self.reconciler = reconciler or ServiceReconciler(
            grace_period=config.services.grace_period,
            probe_timeout=config.services.probe_timeout,
            http_probe_url=config.services.http_probe_url,
        )
        self.dispatcher = self._build_dispatcher()

    def _build_dispatcher(self) -> NotificationDispatcher:
        return NotificationDispatcher(
            self.config.webhook,
            self.config.system,
            repo_url=self.config.repository.url,
            backup_user=self.config.backup.backup_user,
            commit_lookup=self.store.head,
            client=self._http_client,
        )

    @property
    def hostname(self) -> str:
        return self.config.hostname

    @property
    def snapshot_engine(self) -> SnapshotEngine:
        return SnapshotEngine(self.store, self.hostname, self.lock)

    @property
    def validation_gate(self) -> ValidationGate:
        if self._gate is not None:
            return self._gate
        return ValidationGate(
            self.config.backup.paths,
            Path(self.config.repository.working_dir),
            backup_user=self.config.backup.backup_user,
            disk_usage_limit=self.config.backup.disk_usage_limit,
        )

    @property
    def permission_audit(self) -> PermissionAudit:
        return PermissionAudit(
            self.config_path,
            Path(self.config.repository.working_dir),
            backup_user=self.config.backup.backup_user,
            log_file=get_log_file(self.config.logging.file),
        )

    @property
    def drift_detector(self) -> DriftDetector:
        return DriftDetector(
            self.store,
            self.hostname,
            self.config.backup.paths,
            self.config.backup.exclude_patterns,
        )

    def restore_orchestrator(self, prompter: Optional[Prompter] = None) -> RestoreOrchestrator:
        return RestoreOrchestrator(
            self.store,
            self.hostname,
            self.config.backup.paths,
            self.lock,
            prompter or self.prompter,
            reconciler=self.reconciler,
        )

    # Repository

    def init_repository(self) -> Optional[str]:
        """
        Initialize the repository and create this host's namespace.

        Returns:
            Hash of the initial commit, or None if the namespace already existed
        """
        repo = self.config.repository
        self.store.init(repo.url)

        with self.lock.hold("init"):
            readme = self.store.repo_path / self.hostname / "README.md"
            if readme.exists():
                logger.info(f"Repository already initialized for {self.hostname}")
                return None
            readme.parent.mkdir(parents=True, exist_ok=True)
            readme.write_text(README_TEMPLATE.format(
                hostname=self.hostname,
                system_id=self.config.system.system_id,
                paths="\n".join(
                    f"- `{bp.name}/` <- `{bp.path}`" for bp in self.config.backup.paths
                ),
            ))
            self.store.stage_all()
            commit = self.store.commit(f"Initial commit for {self.hostname}")
            if commit is not None:
                self.store.push()

        logger.info(f"Repository ready at {self.store.repo_path}")
        return commit

    def list_backups(self, limit: int = 20) -> list[CommitInfo]:
        """Backups of this host, newest first."""
        return self.store.log(grep=self.hostname, limit=limit)

    def show(self, reference: str) -> str:
        return self.store.show(reference)

    def _last_backup_date(self) -> Optional[str]:
        try:
            commits = self.store.log(grep=f"Config backup for {self.hostname}", limit=1)
        except BackupError:
            return None
        return commits[0].date.isoformat() if commits else None

    # Operations

    def validate(self) -> ValidationReport:
        """Run the validation gate and notify when it finds issues."""
        report = self.validation_gate.run()
        if report.issues:
            self.dispatcher.dispatch(events.validation_failed(report))
        return report

    def backup(self, validate_first: bool = False, restart_services: bool = False) -> BackupResult:
        """
        One full backup cycle.

        Args:
            validate_first: Run the validation gate and abort on blocking issues
            restart_services: Reconcile services for changed paths after committing

        Raises:
            ValidationBlocked, NoBackupTargets, CommitStoreError, PushFailure
        """
        start = time.monotonic()
        try:
            with timed_section("backup", host=self.hostname):
                if validate_first:
                    report = self.validate()
                    if report.backup_blocked:
                        raise ValidationBlocked(report)
                result = self.snapshot_engine.run(
                    self.config.backup.paths,
                    self.config.backup.exclude_patterns,
                )
        except (BackupError, OSError) as e:
            logger.error(f"Backup failed: {e}")
            self.dispatcher.dispatch(events.backup_failed(
                str(e), time.monotonic() - start, self._last_backup_date()
            ))
            if isinstance(e, OSError):
                raise BackupError(f"Backup failed: {e}") from e
            raise

        self.dispatcher.dispatch(events.backup_success(result))

        if restart_services and result.changed and result.paths_changed:
            self._reconcile(result.paths_changed, trigger="post_backup")

        return result

    def drift_check(self, reference: Optional[str] = None) -> DriftReport:
        """Compare live state with ``reference`` (default: latest backup)."""
        report = self.drift_detector.run(reference)
        if report.has_drift:
            self.dispatcher.dispatch(events.drift_detected(report))
        return report

    def restore(
        self,
        reference: str,
        component: Optional[str] = None,
        restart_services: bool = False,
        prompter: Optional[Prompter] = None,
    ) -> RestoreSession:
        """Restore from ``reference``; see ``RestoreOrchestrator.run``."""
        orchestrator = self.restore_orchestrator(prompter)
        try:
            session = orchestrator.run(reference, component, restart_services=restart_services)
        except (BackupError, OSError) as e:
            self.dispatcher.dispatch(events.restore_failed(reference, str(e)))
            if isinstance(e, OSError):
                raise RestoreError(f"Restore from {reference} failed: {e}") from e
            raise

        if session.state == RestoreState.DONE:
            self.dispatcher.dispatch(events.restore_success(session))
            if session.services is not None:
                self.dispatcher.dispatch(events.service_restart(session.services, "post_restore"))
        return session

    def restart_services(self, names: Optional[Sequence[str]] = None) -> RestartReport:
        """
        Restart the named services, or those of every configured path.

        Raises:
            ServiceRestartFailure: A service failed to restart or its probe failed
        """
        if names:
            report = self.reconciler.restart_services(names)
        else:
            report = self.reconciler.restart([bp.path for bp in self.config.backup.paths])
        self.dispatcher.dispatch(events.service_restart(report, "manual"))
        if not report.all_successful:
            raise ServiceRestartFailure(report)
        return report

    def audit_permissions(self) -> ValidationReport:
        """Check modes and ownership of the files this installation relies on."""
        return self.permission_audit.run()

    def fix_permissions(self) -> list[str]:
        return self.permission_audit.fix()

    def _reconcile(self, paths: Sequence[str], trigger: str) -> RestartReport:
        report = self.reconciler.restart(paths)
        self.dispatcher.dispatch(events.service_restart(report, trigger))
        return report

    # Webhook settings

    def _persist(self, config: BackupConfig) -> None:
        if self.config_path is None:
            raise ConfigurationError("No configuration file to save settings to")
        save_config(config, self.config_path)
        self.config = config
        self.dispatcher = self._build_dispatcher()

    def setup_webhook(self, url: str, event_types: Optional[Sequence[str]] = None) -> None:
        """Enable notifications to ``url`` and persist the setting."""
        self._persist(with_webhook(
            self.config, url, list(event_types) if event_types else None, enabled=True
        ))
        logger.info(f"Webhook configured: {url} (events: {', '.join(self.config.webhook.events)})")

    def disable_webhook(self) -> None:
        self._persist(with_webhook(self.config, None, enabled=False))
        logger.info("Webhook notifications disabled")

    def test_webhook(self) -> bool:
        return self.dispatcher.send_test()

    def status(self) -> dict:
        """Snapshot of the system state for display."""
        head = self.store.head()
        return {
            "hostname": self.hostname,
            "system_id": self.config.system.system_id,
            "bound_since": (
                self.config.system.bound_timestamp.isoformat()
                if self.config.system.bound_timestamp else None
            ),
            "repository": str(self.store.repo_path),
            "remote": self.config.repository.url or "(local only)",
            "initialized": self.store.is_initialized(),
            "latest_commit": head,
            "last_backup": self._last_backup_date() if head else None,
            "paths": {bp.path: Path(bp.path).is_dir() for bp in self.config.backup.paths},
            "webhook": self.config.webhook.url if self.dispatcher.active else "disabled",
        }
