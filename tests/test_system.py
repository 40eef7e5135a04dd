"""Tests for BackupSystem orchestration and notification wiring."""
import json
import shutil
import subprocess
import tempfile

import httpx
import pytest

from server_config_backup.config import HostIdentity, load_config, save_config, with_webhook
from server_config_backup.errors import ConfigurationError
from server_config_backup.restore import AssumeYesPrompter, CommitNotFound, RestoreError
from server_config_backup.services import ServiceReconciler, ServiceRestartFailure
from server_config_backup.snapshot import NoBackupTargets, SyncFailure
from server_config_backup.system import BackupSystem
from server_config_backup.validation import ValidationBlocked, ValidationGate

from conftest import HOSTNAME, make_config


class Hooks:
    """Collects webhook payloads."""

    def __init__(self):
        self.payloads = []

    def __call__(self, request):
        self.payloads.append(json.loads(request.content))
        return httpx.Response(200)

    @property
    def events(self):
        return [p["event"] for p in self.payloads]


def ok_runner(argv):
    if argv[:2] == ["systemctl", "list-unit-files"]:
        return subprocess.CompletedProcess(argv, 0, stdout="php-fpm.service enabled\n", stderr="")
    return subprocess.CompletedProcess(argv, 0, stdout="", stderr="")


@pytest.fixture
def hooks():
    return Hooks()


@pytest.fixture
def config_path(tmp_path, config):
    path = tmp_path / "config.yaml"
    config = with_webhook(config, "https://hooks.example.com/x", [
        "backup_success", "backup_failed", "drift_detected", "validation_failed",
        "service_restart", "restore_success", "restore_failed",
    ])
    save_config(config, path)
    return path


@pytest.fixture
def make_system(config_path, hooks, tmp_path):
    def factory(config=None, **kwargs):
        config = config or load_config(config_path)
        kwargs.setdefault("reconciler", ServiceReconciler(runner=ok_runner, sleep=lambda s: None))
        kwargs.setdefault("gate", ValidationGate(
            config.backup.paths, tmp_path / "repo", backup_user=None,
            disk_usage=lambda p: 10.0, which=lambda tool: None,
        ))
        return BackupSystem(
            config,
            config_path,
            http_client=httpx.Client(transport=httpx.MockTransport(hooks)),
            **kwargs,
        )
    return factory


@pytest.fixture
def system(make_system):
    s = make_system()
    s.init_repository()
    return s


class TestInitRepository:
    """Tests for repository initialization."""

    def test_creates_host_namespace(self, make_system):
        system = make_system()
        commit = system.init_repository()

        readme = system.store.repo_path / HOSTNAME / "README.md"
        assert commit is not None
        assert readme.exists()
        assert "mysql/" in readme.read_text()
        assert system.store.log()[0].message == f"Initial commit for {HOSTNAME}"

    def test_second_init_is_noop(self, system):
        assert system.init_repository() is None
        assert len(system.store.log()) == 1

    def test_unbound_config_rejected(self, repo_dir):
        config = make_config(repo_dir, []).model_copy(update={"system": HostIdentity()})
        with pytest.raises(ConfigurationError, match="not bound"):
            BackupSystem(config)


class TestBackup:
    """Tests for BackupSystem.backup."""

    def test_success_notifies(self, system, hooks):
        result = system.backup()
        assert result.changed
        assert hooks.events == ["backup_success"]
        assert hooks.payloads[0]["data"]["commit_hash"] == result.commit_id
        assert hooks.payloads[0]["metadata"]["git_commit"] == result.commit_id

    def test_no_change_run_still_reports_success(self, system, hooks):
        system.backup()
        result = system.backup()
        assert not result.changed
        assert hooks.events == ["backup_success", "backup_success"]

    def test_failure_notifies_and_raises(self, make_system, hooks, repo_dir, tmp_path):
        config = make_config(repo_dir, [tmp_path / "missing"])
        config = with_webhook(config, "https://hooks.example.com/x")
        system = make_system(config)
        system.init_repository()

        with pytest.raises(NoBackupTargets):
            system.backup()
        assert hooks.events == ["backup_failed"]
        assert hooks.payloads[0]["severity"] == "error"

    def test_filesystem_error_notifies_and_raises(self, system, hooks):
        host_dir = system.store.repo_path / HOSTNAME
        shutil.rmtree(host_dir)
        host_dir.write_text("not a directory\n")

        with pytest.raises(SyncFailure, match="cannot create host directory"):
            system.backup()
        assert hooks.events == ["backup_failed"]

    def test_blocked_validation_aborts(self, make_system, hooks, config_path, tmp_path):
        config = load_config(config_path)
        gate = ValidationGate(
            config.backup.paths, tmp_path / "repo", disk_usage=lambda p: 99.0,
            which=lambda tool: None,
        )
        system = make_system(gate=gate)
        system.init_repository()
        head = system.store.head()

        with pytest.raises(ValidationBlocked):
            system.backup(validate_first=True)
        assert system.store.head() == head
        assert hooks.events == ["validation_failed", "backup_failed"]

    def test_restart_after_changes(self, system, hooks):
        system.backup(restart_services=True)
        assert hooks.events == ["backup_success", "service_restart"]
        restart = hooks.payloads[1]["data"]
        assert restart["trigger"] == "post_backup"
        assert [s["name"] for s in restart["services"]] == ["php-fpm"]

    def test_no_restart_without_changes(self, system, hooks):
        system.backup()
        system.backup(restart_services=True)
        assert "service_restart" not in hooks.events


class TestDriftAndRestore:
    """Tests for drift and restore wiring."""

    def test_drift_notifies_only_when_found(self, system, hooks, live_root):
        system.backup()
        assert not system.drift_check().has_drift
        (live_root / "php" / "php.ini").write_text("memory_limit = 1G\n")
        report = system.drift_check()

        assert report.has_drift
        assert hooks.events == ["backup_success", "drift_detected"]
        assert hooks.payloads[1]["data"]["total_changes"] == 1

    def test_restore_notifies(self, system, hooks, live_root):
        system.backup()
        (live_root / "php" / "php.ini").write_text("broken\n")
        session = system.restore("HEAD", "php", restart_services=True, prompter=AssumeYesPrompter())

        assert session.restored_paths == [str(live_root / "php")]
        assert hooks.events == ["backup_success", "restore_success", "service_restart"]
        assert hooks.payloads[2]["data"]["trigger"] == "post_restore"

    def test_failed_restore_notifies(self, system, hooks):
        system.backup()
        with pytest.raises(CommitNotFound):
            system.restore("no-such-commit", "php", prompter=AssumeYesPrompter())
        assert hooks.events[-1] == "restore_failed"

    def test_filesystem_error_during_restore_notifies(self, system, hooks, monkeypatch):
        system.backup()

        def no_space(*args, **kwargs):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(tempfile, "mkdtemp", no_space)
        with pytest.raises(RestoreError):
            system.restore("HEAD", "php", prompter=AssumeYesPrompter())
        assert hooks.events[-1] == "restore_failed"

    def test_list_backups_only_this_host(self, system):
        system.backup()
        messages = [c.message for c in system.list_backups()]
        assert len(messages) == 2
        assert all(HOSTNAME in m for m in messages)


class TestServicesAndWebhook:
    """Tests for manual service restarts and webhook settings."""

    def test_manual_restart_failure_raises(self, make_system, hooks):
        def failing(argv):
            if argv[:2] == ["systemctl", "restart"]:
                return subprocess.CompletedProcess(argv, 1, stdout="", stderr="")
            return ok_runner(argv)

        system = make_system(reconciler=ServiceReconciler(runner=failing, sleep=lambda s: None))
        with pytest.raises(ServiceRestartFailure, match="php-fpm"):
            system.restart_services(["php-fpm"])
        assert hooks.events == ["service_restart"]
        assert hooks.payloads[0]["data"]["trigger"] == "manual"

    def test_setup_and_disable_webhook_persist(self, system, config_path, hooks):
        system.setup_webhook("https://other.example.com/hook", ["backup_failed"])
        saved = load_config(config_path)
        assert saved.webhook.enabled
        assert saved.webhook.url == "https://other.example.com/hook"
        assert saved.webhook.events == ["backup_failed"]

        system.backup()
        assert hooks.events == []

        system.disable_webhook()
        assert not load_config(config_path).webhook.enabled
        assert system.test_webhook() is True

    def test_status(self, system):
        status = system.status()
        assert status["hostname"] == HOSTNAME
        assert status["initialized"] is True
        assert status["remote"] == "(local only)"
        assert all(status["paths"].values())

    def test_permission_audit_uses_installation_paths(self, system, config_path):
        audit = system.permission_audit
        assert audit.config_path == config_path
        assert audit.repo_dir == system.store.repo_path
        assert audit.backup_user is None
        assert system.audit_permissions().title == "Permissions audit"
