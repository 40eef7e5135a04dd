"""Drift detection against backup history."""
from .compare import FileChange, compare_trees, count_changed_lines
from .detector import (
    ChangeEntry,
    DriftDetector,
    DriftReport,
    ReferenceNotFound,
    Severity,
    classify,
)

__all__ = [
    "FileChange",
    "compare_trees",
    "count_changed_lines",
    "ChangeEntry",
    "DriftDetector",
    "DriftReport",
    "ReferenceNotFound",
    "Severity",
    "classify",
]
