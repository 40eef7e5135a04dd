"""Restart or reload the services affected by configuration changes.

Each changed path is mapped to candidate systemd units through a static
table. Web servers get a graceful reload first and fall back to a full
restart; everything else is restarted. After a successful action the
service is given a grace period and then health-probed.
"""
import logging
import re
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Callable, Iterable, Optional

import httpx

from ..errors import BackupError

logger = logging.getLogger(__name__)

# Path component -> candidate units
SERVICE_MAP: dict[str, tuple[str, ...]] = {
    "mysql": ("mysql", "mariadb"),
    "mariadb": ("mysql", "mariadb"),
    "php": ("php-fpm",),
    "php-fpm": ("php-fpm",),
    "php.ini": ("php-fpm",),
    "lsws": ("lsws", "httpd", "apache2"),
    "httpd": ("lsws", "httpd", "apache2"),
    "apache2": ("lsws", "httpd", "apache2"),
    "nginx": ("nginx",),
}

WEB_SERVICES = {"apache2", "httpd", "nginx", "lsws"}
DATABASE_SERVICES = {"mysql", "mariadb"}

# Distribution-versioned PHP-FPM units (php8.2-fpm, php7.4-fpm, ...)
VERSIONED_PHP_FPM = re.compile(r"^php[\d.]*-fpm$")

Runner = Callable[[list[str]], subprocess.CompletedProcess]


class RestartAction(str, Enum):
    RESTART = "restart"
    RELOAD = "reload"


@dataclass
class ServiceRestartRecord:
    """Outcome of restarting one service."""
    name: str
    action: RestartAction
    status: str  # 'success', 'failed'
    duration_ms: float
    health_check: str  # 'passed', 'failed', 'skipped'
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "success" and self.health_check == "passed"

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "action": self.action.value,
            "status": self.status,
            "duration": round(self.duration_ms),
            "health_check": self.health_check,
        }


@dataclass
class RestartReport:
    """All restart records of one reconciliation."""
    records: list[ServiceRestartRecord] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def all_successful(self) -> bool:
        """True when every attempted service restarted and passed its probe."""
        return all(record.ok for record in self.records)

    @property
    def attempted(self) -> bool:
        return bool(self.records)

    def summary(self) -> str:
        if not self.records:
            return "No services restarted"
        lines = []
        for r in self.records:
            status = "OK" if r.ok else "FAIL"
            lines.append(
                f"  {r.name}: {r.action.value} {r.status}, health {r.health_check} "
                f"({r.duration_ms:.0f}ms) {status}"
            )
        if self.skipped:
            lines.append(f"  skipped (not installed): {', '.join(self.skipped)}")
        return "\n".join(lines)


def run_command(argv: list[str]) -> subprocess.CompletedProcess:
    return subprocess.run(argv, capture_output=True, text=True, check=False, timeout=120)


def services_for_path(path: str) -> list[str]:
    """Candidate units for a changed path, matched on its components.

    The base name is tried first, then the parent components from the
    innermost outwards (``/usr/local/lsws/conf`` maps through ``lsws``).
    """
    parts = [p for p in PurePosixPath(path).parts if p != "/"]
    for part in reversed(parts):
        if part in SERVICE_MAP:
            return list(SERVICE_MAP[part])
    return []


class ServiceReconciler:
    """Restart services for changed paths and verify they came back healthy."""

    def __init__(
        self,
        grace_period: float = 2.0,
        probe_timeout: float = 10.0,
        http_probe_url: str = "http://localhost/server-status",
        runner: Runner = run_command,
        sleep: Callable[[float], None] = time.sleep,
        http_client: Optional[httpx.Client] = None,
    ):
        """
        Initialize ServiceReconciler.

        Args:
            grace_period: Seconds to wait between restart and probe
            probe_timeout: Timeout of each health probe
            http_probe_url: URL probed for web servers
            runner: Executes systemctl / mysqladmin (replaced in tests)
            sleep: Sleep function (replaced in tests)
            http_client: Client for the HTTP probe
        """
        self.grace_period = grace_period
        self.probe_timeout = probe_timeout
        self.http_probe_url = http_probe_url
        self._run = runner
        self._sleep = sleep
        self._http = http_client

    def services_for_paths(self, paths: Iterable[str]) -> list[str]:
        names: list[str] = []
        for path in paths:
            for name in services_for_path(path):
                if name not in names:
                    names.append(name)
        return names

    def restart(self, paths: Iterable[str]) -> RestartReport:
        """Restart every service mapped from ``paths``."""
        names = self.services_for_paths(paths)
        if not names:
            logger.info("No services mapped to the changed paths")
        return self.restart_services(names)

    def restart_services(self, names: Iterable[str]) -> RestartReport:
        """
        Restart the named services.

        Units that are not installed are skipped with a warning and do not
        count toward ``all_successful``.
        """
        report = RestartReport()
        installed = self._installed_units()
        done: set[str] = set()

        for name in names:
            units = self._resolve_units(name, installed)
            if not units:
                logger.warning(f"Service {name} is not installed, skipping")
                report.skipped.append(name)
                continue
            for unit in units:
                if unit in done:
                    continue
                done.add(unit)
                report.records.append(self._restart_one(unit))

        level = logging.INFO if report.all_successful else logging.ERROR
        logger.log(level, f"Service restart finished:\n{report.summary()}")
        return report

    def _installed_units(self) -> set[str]:
        try:
            result = self._run(["systemctl", "list-unit-files", "--type=service", "--no-legend"])
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Cannot list installed units: {e}")
            return set()
        units = set()
        for line in result.stdout.splitlines():
            fields = line.split()
            if fields and fields[0].endswith(".service"):
                units.add(fields[0][: -len(".service")])
        return units

    def _resolve_units(self, name: str, installed: set[str]) -> list[str]:
        if name in installed:
            return [name]
        if name == "php-fpm":
            return sorted(u for u in installed if VERSIONED_PHP_FPM.match(u))
        return []

    def _systemctl(self, *args: str) -> bool:
        try:
            result = self._run(["systemctl", *args])
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"systemctl {' '.join(args)} failed: {e}")
            return False
        return result.returncode == 0

    def _restart_one(self, unit: str) -> ServiceRestartRecord:
        start = time.perf_counter()
        action = RestartAction.RESTART

        if self._family(unit) in WEB_SERVICES and self._systemctl("reload", unit):
            action = RestartAction.RELOAD
            succeeded = True
        else:
            succeeded = self._systemctl("restart", unit)

        if not succeeded:
            elapsed = (time.perf_counter() - start) * 1000
            logger.error(f"Failed to {action.value} {unit}")
            return ServiceRestartRecord(
                name=unit, action=action, status="failed", duration_ms=elapsed,
                health_check="skipped", error=f"systemctl {action.value} failed",
            )

        self._sleep(self.grace_period)
        healthy = self.probe(unit)
        elapsed = (time.perf_counter() - start) * 1000
        if healthy:
            logger.info(f"{unit}: {action.value} ok, health check passed")
        else:
            logger.error(f"{unit}: {action.value} ok, but health check failed")
        return ServiceRestartRecord(
            name=unit,
            action=action,
            status="success",
            duration_ms=elapsed,
            health_check="passed" if healthy else "failed",
        )

    def _family(self, unit: str) -> str:
        return "php-fpm" if VERSIONED_PHP_FPM.match(unit) else unit

    def probe(self, unit: str) -> bool:
        """Service-specific health probe."""
        if not self._systemctl("is-active", "--quiet", unit):
            return False

        family = self._family(unit)
        if family in DATABASE_SERVICES:
            return self._probe_database()
        if family in WEB_SERVICES:
            return self._probe_http()
        return True

    def _probe_database(self) -> bool:
        try:
            result = self._run(["mysqladmin", f"--connect-timeout={int(self.probe_timeout)}", "ping"])
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"mysqladmin ping failed: {e}")
            return False
        return result.returncode == 0

    def _probe_http(self) -> bool:
        client = self._http or httpx.Client()
        try:
            response = client.get(self.http_probe_url, timeout=self.probe_timeout)
        except httpx.HTTPError as e:
            logger.warning(f"HTTP probe of {self.http_probe_url} failed: {e}")
            return False
        finally:
            if self._http is None:
                client.close()
        return response.status_code < 500


class ServiceRestartFailure(BackupError):
    """One or more services failed to restart or failed their health probe."""

    def __init__(self, report: RestartReport):
        self.report = report
        failed = [r.name for r in report.records if not r.ok]
        super().__init__(f"Service restart failed: {', '.join(failed)}")
