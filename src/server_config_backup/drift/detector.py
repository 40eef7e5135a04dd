"""Drift detection between the live filesystem and a reference backup."""
import logging
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence

from ..commit_store import CommitStore, RefNotFound
from ..config.schema import BackupPath
from ..errors import BackupError
from ..snapshot.mirror import ExcludeRules, PathMissing, SyncFailure, mirror_tree
from ..utils.logging_config import timed
from ..validation.checks import DATABASE_PATH
from .compare import FileChange, compare_trees, list_entries, read_lines

logger = logging.getLogger(__name__)

# Refs meaning "the most recent backup"
LATEST_REFS = {"", "last-backup", "last-commit", "latest", "HEAD"}

CRITICAL_LINES = 20
MAJOR_DATABASE_LINES = 5


class Severity(str, Enum):
    MINOR = "minor"
    MAJOR = "major"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RANK[self]

    @property
    def webhook_level(self) -> str:
        return {"minor": "info", "major": "warn", "critical": "error"}[self.value]


_RANK = {Severity.MINOR: 1, Severity.MAJOR: 2, Severity.CRITICAL: 3}


def classify(name: str, lines_changed: int) -> Severity:
    """Severity of a changed backup path.

    More than 20 changed lines is critical anywhere; a database path with
    more than 5 is major; everything else is minor.
    """
    if lines_changed > CRITICAL_LINES:
        return Severity.CRITICAL
    if DATABASE_PATH.search(name) and lines_changed > MAJOR_DATABASE_LINES:
        return Severity.MAJOR
    return Severity.MINOR


@dataclass
class ChangeEntry:
    """Drift of one backup path."""
    path: str
    kind: str  # 'new', 'modified'
    lines_changed: int
    severity: Severity
    files: list[FileChange] = field(default_factory=list)

    @property
    def diff_preview(self) -> str:
        lines: list[str] = []
        for change in self.files:
            lines.extend(change.diff)
        return "\n".join(lines[:20])

    def to_dict(self) -> dict:
        return {
            "file": self.path,
            "type": self.kind,
            "lines_changed": self.lines_changed,
            "severity": self.severity.value,
            "files": [f"{c.change}: {c.path}" for c in self.files],
            "diff_preview": self.diff_preview,
        }


@dataclass
class DriftReport:
    """Drift of the live filesystem against a reference commit."""
    reference_commit: str
    checked_at: datetime
    changes: list[ChangeEntry] = field(default_factory=list)

    @property
    def has_drift(self) -> bool:
        return bool(self.changes)

    @property
    def overall_severity(self) -> Optional[Severity]:
        if not self.changes:
            return None
        return max((c.severity for c in self.changes), key=lambda s: s.rank)

    def summary(self) -> str:
        """Human-readable summary."""
        if not self.has_drift:
            return f"No drift against {self.reference_commit[:8]}"

        lines = [
            f"DRIFT against {self.reference_commit[:8]}: {len(self.changes)} paths changed "
            f"(severity: {self.overall_severity.value})"
        ]
        for change in self.changes:
            lines.append(
                f"  - {change.path}: {change.kind}, {change.lines_changed} lines "
                f"[{change.severity.value}]"
            )
            for file_change in change.files[:5]:
                lines.append(f"      {file_change.change}: {file_change.path}")
            if len(change.files) > 5:
                lines.append(f"      ... and {len(change.files) - 5} more")
        return "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "reference_commit": self.reference_commit,
            "changes_count": len(self.changes),
            "overall_severity": self.overall_severity.value if self.overall_severity else None,
            "changes": [c.to_dict() for c in self.changes],
        }


class DriftDetector:
    """
    Compares live configuration with a backup commit.

    Works entirely in temporary directories: the reference subtree is
    extracted with ``git archive`` and each live path is mirrored with the
    same exclude rules as a backup, so excluded artifacts never show up
    as drift.
    """

    def __init__(
        self,
        store: CommitStore,
        hostname: str,
        paths: Sequence[BackupPath],
        exclude_patterns: Sequence[str] = (),
    ):
        self.store = store
        self.hostname = hostname
        self.paths = list(paths)
        self.exclude_patterns = list(exclude_patterns)

    def resolve_reference(self, reference: Optional[str]) -> str:
        """Resolve a commit ref, or a latest-backup sentinel, to a hash."""
        if reference is None or reference in LATEST_REFS:
            head = self.store.head()
            if head is None:
                raise ReferenceNotFound(reference or "last-backup", "no backups exist yet")
            return head
        try:
            return self.store.rev_parse(reference)
        except RefNotFound as e:
            raise ReferenceNotFound(reference, "does not resolve to a commit") from e

    @timed("drift_check")
    def run(self, reference: Optional[str] = None) -> DriftReport:
        """
        Compute drift against ``reference``.

        Args:
            reference: Commit ref, or None / "last-backup" for the latest backup

        Returns:
            DriftReport (transient)

        Raises:
            ReferenceNotFound: ``reference`` cannot be resolved
        """
        commit = self.resolve_reference(reference)
        report = DriftReport(reference_commit=commit, checked_at=datetime.now(timezone.utc))

        with tempfile.TemporaryDirectory(prefix="server-backup-drift-") as tmp:
            tmp_path = Path(tmp)
            reference_host = self.store.checkout_subtree(commit, self.hostname, tmp_path / "reference")

            for backup_path in self.paths:
                rules = ExcludeRules(self.exclude_patterns + list(backup_path.excludes))
                live_dir = tmp_path / "live" / backup_path.name
                try:
                    mirror_tree(Path(backup_path.path), live_dir, rules)
                except PathMissing:
                    logger.debug(f"{backup_path.path} does not exist, skipping")
                    continue
                except SyncFailure as e:
                    logger.warning(f"Cannot read {backup_path.path} for drift check: {e.reason}")
                    continue

                reference_dir = reference_host / backup_path.name if reference_host else None
                entry = self._compare(backup_path, reference_dir, live_dir, rules)
                if entry is not None:
                    report.changes.append(entry)

        if report.has_drift:
            logger.warning(report.summary())
        else:
            logger.info(report.summary())
        return report

    def _compare(
        self,
        backup_path: BackupPath,
        reference_dir: Optional[Path],
        live_dir: Path,
        rules: ExcludeRules,
    ) -> Optional[ChangeEntry]:
        if reference_dir is None or not reference_dir.is_dir():
            files = []
            for rel, path in sorted(list_entries(live_dir, rules).items()):
                lines = read_lines(path)
                files.append(FileChange(
                    path=rel, change="added", lines_changed=max(len(lines or []), 1)
                ))
            return ChangeEntry(
                path=backup_path.path,
                kind="new",
                lines_changed=sum(f.lines_changed for f in files),
                severity=Severity.MAJOR,
                files=files,
            )

        files = compare_trees(reference_dir, live_dir, rules)
        if not files:
            return None
        lines_changed = sum(f.lines_changed for f in files)
        return ChangeEntry(
            path=backup_path.path,
            kind="modified",
            lines_changed=lines_changed,
            severity=classify(backup_path.name, lines_changed),
            files=files,
        )


class ReferenceNotFound(BackupError):
    """The drift reference could not be resolved."""

    def __init__(self, reference: str, reason: str):
        self.reference = reference
        super().__init__(f"Reference {reference!r} not found: {reason}")
