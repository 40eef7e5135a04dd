"""Typed configuration schema.

The configuration file is parsed into these pydantic models. Models are
frozen and reject unknown keys, so a typo in the YAML is an error rather
than a silently ignored setting.
"""
import posixpath
import re
from datetime import datetime
from pathlib import PurePosixPath
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# ssh-identity@host:path/to/repo.git
SSH_REMOTE_PATTERN = re.compile(r"^[A-Za-z0-9._-]+@[A-Za-z0-9.-]+:[A-Za-z0-9._/-]+\.git$")

KNOWN_EVENTS = (
    "backup_success",
    "backup_failed",
    "drift_detected",
    "validation_failed",
    "service_restart",
    "restore_success",
    "restore_failed",
)

DEFAULT_EVENTS = [
    "backup_success",
    "backup_failed",
    "drift_detected",
    "validation_failed",
    "service_restart",
]

DEFAULT_BACKUP_PATHS = [
    "/etc/mysql",
    "/etc/mariadb",
    "/usr/local/lsws/conf",
    "/etc/php",
    "/etc/lsws",
]

DEFAULT_EXCLUDE_PATTERNS = ["*.log", "*.tmp", "*.cache", "*.pid", "*.sock", "*.lock"]

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class _Settings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class HostIdentity(_Settings):
    """Hostname this configuration (and its history namespace) is bound to."""
    bound_hostname: str = ""
    bound_timestamp: Optional[datetime] = None
    system_id: str = ""

    @property
    def is_bound(self) -> bool:
        return bool(self.bound_hostname)


class RepositorySettings(_Settings):
    """Where the version history lives and who commits to it."""
    url: Optional[str] = None
    branch: str = "main"
    user_name: str = "Server Config Backup"
    user_email: str = "backup@localhost"
    working_dir: str = "/var/lib/server-config-backup/repo"

    @field_validator("url", mode="before")
    @classmethod
    def validate_url(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        if not isinstance(v, str) or not SSH_REMOTE_PATTERN.match(v.strip()):
            raise ValueError(
                f"Invalid repository URL: {v!r}. Expected ssh form user@host:path/repo.git"
            )
        return v.strip()

    @field_validator("branch")
    @classmethod
    def validate_branch(cls, v: str) -> str:
        if not re.match(r"^[A-Za-z0-9._/-]+$", v) or v.startswith("-") or ".." in v:
            raise ValueError(f"Invalid branch name: {v!r}")
        return v

    @field_validator("working_dir")
    @classmethod
    def validate_working_dir(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"working_dir must be absolute: {v!r}")
        return v.rstrip("/") or "/"


class BackupPath(_Settings):
    """One tracked source directory and its own extra exclude patterns."""
    path: str
    excludes: list[str] = Field(default_factory=list)

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"Backup path must be absolute: {v!r}")
        if ".." in PurePosixPath(v).parts:
            raise ValueError(f"Backup path must not contain '..': {v!r}")
        normalized = posixpath.normpath(v)
        if normalized == "/":
            raise ValueError("Backup path must not be the filesystem root")
        return normalized

    @property
    def name(self) -> str:
        """Base name, used as the component name inside a snapshot."""
        return posixpath.basename(self.path)


class BackupSettings(_Settings):
    """What to back up and how."""
    backup_user: Optional[str] = "backup-service"
    paths: list[BackupPath] = Field(
        default_factory=lambda: [BackupPath(path=p) for p in DEFAULT_BACKUP_PATHS]
    )
    exclude_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS))
    lock_timeout: float = Field(default=300.0, gt=0)
    disk_usage_limit: int = Field(default=90, ge=1, le=100)

    @field_validator("backup_user", mode="before")
    @classmethod
    def empty_user_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("paths", mode="before")
    @classmethod
    def coerce_paths(cls, v):
        # Plain strings are accepted as paths without per-path excludes
        if isinstance(v, list):
            return [{"path": item} if isinstance(item, str) else item for item in v]
        return v

    @model_validator(mode="after")
    def check_unique(self) -> "BackupSettings":
        seen_paths: set[str] = set()
        seen_names: dict[str, str] = {}
        for bp in self.paths:
            if bp.path in seen_paths:
                raise ValueError(f"Duplicate backup path: {bp.path}")
            seen_paths.add(bp.path)
            if bp.name in seen_names:
                raise ValueError(
                    f"Backup paths {seen_names[bp.name]} and {bp.path} share the "
                    f"base name '{bp.name}' and would collide in the snapshot"
                )
            seen_names[bp.name] = bp.path
        return self

    def find(self, name: str) -> Optional[BackupPath]:
        """Look up a configured path by base name (or full path)."""
        for bp in self.paths:
            if bp.name == name or bp.path == name.rstrip("/"):
                return bp
        return None

    def excludes_for(self, backup_path: BackupPath) -> list[str]:
        """Global patterns followed by the path's own patterns."""
        return list(self.exclude_patterns) + list(backup_path.excludes)


class WebhookSettings(_Settings):
    """Outbound event notification endpoint."""
    enabled: bool = False
    url: Optional[str] = None
    events: list[str] = Field(default_factory=lambda: list(DEFAULT_EVENTS))
    timeout: float = Field(default=30.0, gt=0)
    retry_count: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=5.0, ge=0)

    @field_validator("url", mode="before")
    @classmethod
    def validate_url(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        if not isinstance(v, str) or not re.match(r"^https?://", v):
            raise ValueError(f"Webhook URL must be http(s): {v!r}")
        return v.strip()

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: list[str]) -> list[str]:
        unknown = [e for e in v if e not in KNOWN_EVENTS]
        if unknown:
            raise ValueError(f"Unknown webhook events: {unknown}. Known: {list(KNOWN_EVENTS)}")
        return v

    @model_validator(mode="after")
    def enabled_needs_url(self) -> "WebhookSettings":
        if self.enabled and not self.url:
            raise ValueError("Webhook is enabled but no url is set")
        return self


class MonitorSettings(_Settings):
    """Change monitoring and continuous drift checks."""
    interval: int = Field(default=300, ge=1)
    debounce_seconds: float = Field(default=2.0, ge=0)


class ServiceSettings(_Settings):
    """Service restart and health probing."""
    grace_period: float = Field(default=2.0, ge=0)
    probe_timeout: float = Field(default=10.0, gt=0)
    http_probe_url: str = "http://localhost/server-status"


class LoggingSettings(_Settings):
    level: str = "INFO"
    file: Optional[str] = None
    max_size_mb: int = Field(default=10, ge=1)
    backup_count: int = Field(default=5, ge=0)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        if v.upper() not in LOG_LEVELS:
            raise ValueError(f"Invalid log level: {v}. Must be one of {LOG_LEVELS}")
        return v.upper()


class BackupConfig(_Settings):
    """Complete, validated configuration for one host."""
    system: HostIdentity = Field(default_factory=HostIdentity)
    repository: RepositorySettings = Field(default_factory=RepositorySettings)
    backup: BackupSettings = Field(default_factory=BackupSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    monitor: MonitorSettings = Field(default_factory=MonitorSettings)
    services: ServiceSettings = Field(default_factory=ServiceSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @property
    def hostname(self) -> str:
        """Namespace of this host's snapshots inside the repository."""
        return self.system.bound_hostname
