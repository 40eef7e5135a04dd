"""File-tree comparison with changed-line counting."""
import difflib
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..snapshot.mirror import ExcludeRules


@dataclass
class FileChange:
    """A differing file between reference and live trees."""
    path: str  # relative to the compared root
    change: str  # 'added', 'removed', 'modified'
    lines_changed: int
    diff: list[str] = field(default_factory=list)


def list_entries(root: Path, rules: Optional[ExcludeRules] = None) -> dict[str, Path]:
    """Non-directory entries under ``root`` keyed by relative POSIX path."""
    entries: dict[str, Path] = {}
    if not root.is_dir():
        return entries
    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = os.path.relpath(dirpath, root)
        rel_dir = "" if rel_dir == "." else rel_dir.replace(os.sep, "/")
        kept_dirs = []
        for name in dirnames:
            rel = f"{rel_dir}/{name}" if rel_dir else name
            full = Path(dirpath) / name
            if rules is not None and rules.matches(rel):
                continue
            # os.walk lists links to directories as dirnames; treat them as entries
            if full.is_symlink():
                entries[rel] = full
            else:
                kept_dirs.append(name)
        dirnames[:] = kept_dirs
        for name in filenames:
            rel = f"{rel_dir}/{name}" if rel_dir else name
            if rules is not None and rules.matches(rel):
                continue
            entries[rel] = Path(dirpath) / name
    return entries


def read_lines(path: Path) -> Optional[list[str]]:
    """Lines of a text file, ``None`` for binary content.

    A symlink reads as a single line naming its target.
    """
    if path.is_symlink():
        return [f"-> {os.readlink(path)}"]
    data = path.read_bytes()
    if b"\0" in data:
        return None
    return data.decode("utf-8", errors="replace").splitlines()


def _same_content(a: Path, b: Path) -> bool:
    if a.is_symlink() or b.is_symlink():
        return a.is_symlink() and b.is_symlink() and os.readlink(a) == os.readlink(b)
    if a.stat().st_size != b.stat().st_size:
        return False
    return a.read_bytes() == b.read_bytes()


def count_changed_lines(old: list[str], new: list[str]) -> int:
    """Edited line count: replaced blocks count their larger side."""
    changed = 0
    matcher = difflib.SequenceMatcher(None, old, new, autojunk=False)
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "replace":
            changed += max(i2 - i1, j2 - j1)
        elif tag == "delete":
            changed += i2 - i1
        elif tag == "insert":
            changed += j2 - j1
    return changed


def compare_trees(
    reference: Path,
    live: Path,
    rules: Optional[ExcludeRules] = None,
    preview_lines: int = 20,
) -> list[FileChange]:
    """
    Compare two trees file by file.

    Args:
        reference: Tree extracted from the reference commit
        live: Mirror of the live directory
        rules: Exclude rules applied to both sides
        preview_lines: Max unified diff lines kept per file

    Returns:
        One FileChange per differing file, sorted by path
    """
    ref_entries = list_entries(reference, rules)
    live_entries = list_entries(live, rules)
    changes = []

    for rel in sorted(set(ref_entries) | set(live_entries)):
        old_path = ref_entries.get(rel)
        new_path = live_entries.get(rel)

        if old_path is not None and new_path is not None and _same_content(old_path, new_path):
            continue

        old = read_lines(old_path) if old_path is not None else []
        new = read_lines(new_path) if new_path is not None else []

        if old_path is None:
            kind = "added"
        elif new_path is None:
            kind = "removed"
        else:
            kind = "modified"

        if old is None or new is None:
            changes.append(FileChange(path=rel, change=kind, lines_changed=1,
                                      diff=[f"Binary files a/{rel} and b/{rel} differ"]))
            continue

        lines = max(count_changed_lines(old, new), 1)
        diff = list(difflib.unified_diff(
            old, new, fromfile=f"a/{rel}", tofile=f"b/{rel}", lineterm=""
        ))
        changes.append(FileChange(path=rel, change=kind, lines_changed=lines,
                                  diff=diff[:preview_lines]))

    return changes
