"""Snapshotting of live configuration trees into the repository."""
from .engine import SnapshotEngine, BackupResult, NoBackupTargets, backup_message
from .mirror import (
    ExcludeRules,
    MirrorStats,
    PathMissing,
    SyncFailure,
    mirror_tree,
    sanitize_pattern,
)

__all__ = [
    "SnapshotEngine",
    "BackupResult",
    "NoBackupTargets",
    "backup_message",
    "ExcludeRules",
    "MirrorStats",
    "PathMissing",
    "SyncFailure",
    "mirror_tree",
    "sanitize_pattern",
]
