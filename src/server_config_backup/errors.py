"""Exception hierarchy shared across the backup system.

Component-specific errors live next to the component that raises them
(e.g. ``CommitStoreError`` in ``commit_store.git_store``) and all derive
from ``BackupError`` so command handlers can catch one base type.
"""


class BackupError(Exception):
    """Base class for every error raised by the backup system."""
    pass


class ConfigurationError(BackupError):
    """Malformed or inconsistent settings. Raised before any mutation."""
    pass


class HostnameMismatch(BackupError):
    """The running host does not match the hostname the config is bound to."""

    def __init__(self, bound: str, current: str):
        self.bound = bound
        self.current = current
        super().__init__(
            f"Configuration is bound to '{bound}' but this host is '{current}'. "
            f"Use --rebind-hostname, --recovery-mode or --force."
        )


class RepositoryLocked(BackupError):
    """Another process holds the repository lock."""
    pass
