"""Configuration loading, schema and host binding."""
from .binding import BindingMode, BindingStatus, resolve_binding, new_identity, current_hostname
from .loader import (
    DEFAULT_CONFIG_PATH,
    resolve_config_path,
    parse_config,
    load_config,
    load_or_create,
    save_config,
    with_webhook,
)
from .schema import (
    SSH_REMOTE_PATTERN,
    KNOWN_EVENTS,
    BackupConfig,
    BackupPath,
    BackupSettings,
    HostIdentity,
    LoggingSettings,
    MonitorSettings,
    RepositorySettings,
    ServiceSettings,
    WebhookSettings,
)

__all__ = [
    "BindingMode",
    "BindingStatus",
    "resolve_binding",
    "new_identity",
    "current_hostname",
    "DEFAULT_CONFIG_PATH",
    "resolve_config_path",
    "parse_config",
    "load_config",
    "load_or_create",
    "save_config",
    "with_webhook",
    "SSH_REMOTE_PATTERN",
    "KNOWN_EVENTS",
    "BackupConfig",
    "BackupPath",
    "BackupSettings",
    "HostIdentity",
    "LoggingSettings",
    "MonitorSettings",
    "RepositorySettings",
    "ServiceSettings",
    "WebhookSettings",
]
