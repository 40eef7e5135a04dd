"""Tests for service restarts and health probes."""
import subprocess

import httpx
import pytest

from server_config_backup.services import (
    RestartAction,
    ServiceReconciler,
    services_for_path,
)

UNIT_FILES = """\
mysql.service                enabled enabled
nginx.service                enabled enabled
php8.2-fpm.service           enabled enabled
ssh.service                  enabled enabled
"""


class FakeSystem:
    """Records commands and answers them from a table of exit codes."""

    def __init__(self, failing=(), unit_files=UNIT_FILES):
        self.failing = set(failing)
        self.unit_files = unit_files
        self.calls: list[list[str]] = []

    def __call__(self, argv):
        self.calls.append(argv)
        if argv[:2] == ["systemctl", "list-unit-files"]:
            return subprocess.CompletedProcess(argv, 0, stdout=self.unit_files, stderr="")
        code = 1 if " ".join(argv) in self.failing else 0
        return subprocess.CompletedProcess(argv, code, stdout="", stderr="")


def http_client(status=200):
    return httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(status)))


def make_reconciler(system, status=200):
    return ServiceReconciler(
        grace_period=2.0,
        runner=system,
        sleep=lambda s: None,
        http_client=http_client(status),
    )


class TestServiceMapping:
    """Tests for path -> service mapping."""

    @pytest.mark.parametrize("path, expected", [
        ("/etc/mysql", ["mysql", "mariadb"]),
        ("/etc/mariadb", ["mysql", "mariadb"]),
        ("/etc/php", ["php-fpm"]),
        ("/usr/local/lsws/conf", ["lsws", "httpd", "apache2"]),
        ("/etc/nginx", ["nginx"]),
        ("/etc/ssh", []),
    ])
    def test_services_for_path(self, path, expected):
        assert services_for_path(path) == expected

    def test_paths_deduplicated(self):
        reconciler = ServiceReconciler(runner=FakeSystem())
        assert reconciler.services_for_paths(["/etc/mysql", "/etc/mariadb", "/etc/php"]) == [
            "mysql", "mariadb", "php-fpm",
        ]


class TestRestart:
    """Tests for restart_services."""

    def test_database_restart_checked_with_ping(self):
        system = FakeSystem()
        report = make_reconciler(system).restart(["/etc/mysql"])

        assert [r.name for r in report.records] == ["mysql"]
        record = report.records[0]
        assert record.action == RestartAction.RESTART
        assert record.status == "success"
        assert record.health_check == "passed"
        assert report.all_successful
        assert report.skipped == ["mariadb"]
        assert ["systemctl", "restart", "mysql"] in system.calls
        assert system.calls[-1][0] == "mysqladmin"

    def test_web_server_reloads_first(self):
        system = FakeSystem()
        report = make_reconciler(system).restart_services(["nginx"])

        assert report.records[0].action == RestartAction.RELOAD
        assert ["systemctl", "restart", "nginx"] not in system.calls

    def test_reload_failure_falls_back_to_restart(self):
        system = FakeSystem(failing={"systemctl reload nginx"})
        report = make_reconciler(system).restart_services(["nginx"])

        assert report.records[0].action == RestartAction.RESTART
        assert ["systemctl", "restart", "nginx"] in system.calls
        assert report.all_successful

    def test_versioned_php_fpm_resolved(self):
        system = FakeSystem()
        report = make_reconciler(system).restart(["/etc/php"])
        assert [r.name for r in report.records] == ["php8.2-fpm"]
        assert ["systemctl", "restart", "php8.2-fpm"] in system.calls

    def test_failed_health_check_fails_report(self):
        system = FakeSystem(failing={"mysqladmin --connect-timeout=10 ping"})
        report = make_reconciler(system).restart_services(["mysql"])

        record = report.records[0]
        assert record.status == "success"
        assert record.health_check == "failed"
        assert not report.all_successful

    def test_inactive_service_fails_health_check(self):
        system = FakeSystem(failing={"systemctl is-active --quiet nginx"})
        report = make_reconciler(system).restart_services(["nginx"])
        assert report.records[0].health_check == "failed"

    def test_http_5xx_fails_health_check(self):
        report = make_reconciler(FakeSystem(), status=503).restart_services(["nginx"])
        assert not report.all_successful

    def test_failed_restart_skips_health_check(self):
        system = FakeSystem(failing={"systemctl restart mysql"})
        report = make_reconciler(system).restart_services(["mysql"])

        record = report.records[0]
        assert record.status == "failed"
        assert record.health_check == "skipped"
        assert not any(call[0] == "mysqladmin" for call in system.calls)

    def test_uninstalled_services_skipped(self):
        report = make_reconciler(FakeSystem()).restart_services(["apache2", "httpd"])
        assert report.records == []
        assert report.skipped == ["apache2", "httpd"]
        assert report.all_successful
        assert report.summary() == "No services restarted"

    def test_grace_period_before_health_check(self):
        sleeps = []
        reconciler = ServiceReconciler(
            grace_period=3.5, runner=FakeSystem(), sleep=sleeps.append,
            http_client=http_client(),
        )
        reconciler.restart_services(["mysql", "nginx"])
        assert sleeps == [3.5, 3.5]

    def test_record_to_dict(self):
        report = make_reconciler(FakeSystem()).restart_services(["nginx"])
        data = report.records[0].to_dict()
        assert data["name"] == "nginx"
        assert data["action"] == "reload"
        assert data["health_check"] == "passed"
        assert isinstance(data["duration"], int)
