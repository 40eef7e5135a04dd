"""Delete-sync mirroring of a directory tree.

``mirror_tree`` makes the destination an exact copy of the source,
including deletions, while:
- honoring exclude patterns (excluded entries are removed from the mirror)
- copying symlinks as links only when they are relative and stay inside the tree
- never copying device files, FIFOs or sockets
- never mirroring ``.git`` directories
"""
import fnmatch
import logging
import os
import re
import shutil
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Union

from ..errors import BackupError

logger = logging.getLogger(__name__)

# Characters stripped from user-supplied exclude patterns
SHELL_SIGNIFICANT = re.compile(r"[;&|`$()]")

ALWAYS_EXCLUDED = (".git",)


def sanitize_pattern(pattern: str) -> str:
    """Strip shell-significant characters and surrounding whitespace."""
    return SHELL_SIGNIFICANT.sub("", pattern).strip()


class ExcludeRules:
    """
    Compiled exclude patterns.

    A pattern without ``/`` matches an entry's base name at any depth
    (``*.log``). A pattern containing ``/`` matches the path relative to
    the mirrored root (``conf.d/*.bak``); a leading ``/`` is ignored.
    """

    def __init__(self, patterns: Iterable[str] = ()):
        self.patterns: list[str] = []
        for raw in patterns:
            cleaned = sanitize_pattern(raw)
            if cleaned != raw.strip():
                logger.warning(f"Exclude pattern {raw!r} sanitized to {cleaned!r}")
            cleaned = cleaned.strip("/")
            if cleaned:
                self.patterns.append(cleaned)

    def matches(self, rel_path: str) -> bool:
        name = rel_path.rsplit("/", 1)[-1]
        if name in ALWAYS_EXCLUDED:
            return True
        for pattern in self.patterns:
            if "/" in pattern:
                if fnmatch.fnmatchcase(rel_path, pattern):
                    return True
            elif fnmatch.fnmatchcase(name, pattern):
                return True
        return False


@dataclass
class MirrorStats:
    """Counters for one mirrored tree."""
    files_copied: int = 0
    files_unchanged: int = 0
    links_written: int = 0
    entries_deleted: int = 0
    skipped: list[str] = field(default_factory=list)

    @property
    def files_total(self) -> int:
        """Files and links present in the mirror after the sync."""
        return self.files_copied + self.files_unchanged + self.links_written

    @property
    def changed(self) -> bool:
        return bool(self.files_copied or self.links_written or self.entries_deleted)


def is_safe_symlink(link_path: str, root: str) -> bool:
    """A link is safe when its target is relative and resolves inside ``root``."""
    target = os.readlink(link_path)
    if os.path.isabs(target):
        return False
    resolved = os.path.normpath(os.path.join(os.path.dirname(link_path), target))
    root = os.path.normpath(root)
    return resolved == root or resolved.startswith(root + os.sep)


def _remove(path: Path) -> None:
    if path.is_symlink() or not path.is_dir():
        path.unlink()
    else:
        shutil.rmtree(path)


def _kind(mode: int) -> str:
    if stat.S_ISLNK(mode):
        return "link"
    if stat.S_ISDIR(mode):
        return "dir"
    if stat.S_ISREG(mode):
        return "file"
    return "special"


def mirror_tree(
    src: Path,
    dest: Path,
    excludes: Union[ExcludeRules, Iterable[str], None] = None,
) -> MirrorStats:
    """
    Make ``dest`` an exact mirror of ``src``.

    Args:
        src: Source directory (a symlink to a directory is followed at the top only)
        dest: Destination directory, created if missing
        excludes: ExcludeRules or raw patterns

    Returns:
        MirrorStats for the run

    Raises:
        PathMissing: ``src`` is not a directory
        SyncFailure: An entry could not be read or written
    """
    rules = excludes if isinstance(excludes, ExcludeRules) else ExcludeRules(excludes or ())
    if not src.is_dir():
        raise PathMissing(src)

    stats = MirrorStats()
    try:
        dest.mkdir(parents=True, exist_ok=True)
        _sync_dir(str(src), dest, "", rules, stats, root=os.path.normpath(str(src)))
    except OSError as e:
        raise SyncFailure(src, str(e)) from e

    logger.debug(
        f"Mirrored {src} -> {dest}: {stats.files_copied} copied, "
        f"{stats.files_unchanged} unchanged, {stats.entries_deleted} deleted, "
        f"{len(stats.skipped)} skipped"
    )
    return stats


def _sync_dir(
    src_dir: str,
    dest_dir: Path,
    rel: str,
    rules: ExcludeRules,
    stats: MirrorStats,
    root: str,
) -> None:
    with os.scandir(src_dir) as it:
        src_entries = {entry.name: entry for entry in it}

    # Delete pass: anything not in the source, or excluded, goes away
    with os.scandir(dest_dir) as it:
        dest_names = [entry.name for entry in it]
    for name in dest_names:
        rel_child = f"{rel}/{name}" if rel else name
        if name not in src_entries or rules.matches(rel_child):
            _remove(dest_dir / name)
            stats.entries_deleted += 1

    for name in sorted(src_entries):
        entry = src_entries[name]
        rel_child = f"{rel}/{name}" if rel else name
        if rules.matches(rel_child):
            continue

        target = dest_dir / name
        src_stat = entry.stat(follow_symlinks=False)
        src_kind = _kind(src_stat.st_mode)
        try:
            dest_stat: Optional[os.stat_result] = os.lstat(target)
        except FileNotFoundError:
            dest_stat = None

        if dest_stat is not None and _kind(dest_stat.st_mode) != src_kind:
            _remove(target)
            stats.entries_deleted += 1
            dest_stat = None

        if src_kind == "link":
            if not is_safe_symlink(entry.path, root):
                logger.warning(f"Skipping unsafe symlink {entry.path} -> {os.readlink(entry.path)}")
                stats.skipped.append(rel_child)
                if dest_stat is not None:
                    _remove(target)
                    stats.entries_deleted += 1
                continue
            link_target = os.readlink(entry.path)
            if dest_stat is not None and os.readlink(target) == link_target:
                stats.files_unchanged += 1
                continue
            if dest_stat is not None:
                target.unlink()
            os.symlink(link_target, target)
            stats.links_written += 1

        elif src_kind == "dir":
            if dest_stat is None:
                target.mkdir()
            _sync_dir(entry.path, target, rel_child, rules, stats, root)
            shutil.copystat(entry.path, target, follow_symlinks=False)

        elif src_kind == "file":
            if (
                dest_stat is not None
                and dest_stat.st_size == src_stat.st_size
                and dest_stat.st_mtime_ns == src_stat.st_mtime_ns
            ):
                stats.files_unchanged += 1
                continue
            shutil.copy2(entry.path, target, follow_symlinks=False)
            stats.files_copied += 1

        else:
            logger.warning(f"Skipping special file {entry.path}")
            stats.skipped.append(rel_child)


class PathMissing(BackupError):
    """A configured source path does not exist."""

    def __init__(self, path: Path):
        self.path = path
        super().__init__(f"Path does not exist: {path}")


class SyncFailure(BackupError):
    """Mirroring one path failed."""

    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to sync {path}: {reason}")
