"""Pre-flight validation and permission auditing."""
from .checks import IssueKind, ValidationIssue, ValidationReport, SyntaxChecker
from .gate import ValidationGate, ValidationBlocked
from .permissions import PermissionAudit

__all__ = [
    "IssueKind",
    "ValidationIssue",
    "ValidationReport",
    "SyntaxChecker",
    "ValidationGate",
    "ValidationBlocked",
    "PermissionAudit",
]
