"""Issue types and per-file checks used by the validation gate."""
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class IssueKind(str, Enum):
    DISK_SPACE = "disk_space"
    USER_MISSING = "user_missing"
    PERMISSION_DENIED = "permission_denied"
    PATH_MISSING = "path_missing"
    SYNTAX_ERROR = "syntax_error"
    DEPRECATED = "deprecated"
    INSECURE_PERMISSIONS = "insecure_permissions"
    WRONG_OWNER = "wrong_owner"


@dataclass
class ValidationIssue:
    """One finding of the validation gate."""
    file: str
    issue_kind: IssueKind
    message: str
    suggestion: str = ""
    line: Optional[int] = None
    blocking: bool = False

    def to_dict(self) -> dict:
        return {
            "file": self.file,
            "issue": self.issue_kind.value,
            "line": self.line or 0,
            "message": self.message,
            "suggestion": self.suggestion,
            "blocking": self.blocking,
        }


@dataclass
class ValidationReport:
    """Result of a validation run."""
    issues: list[ValidationIssue] = field(default_factory=list)
    title: str = "Pre-backup validation"

    @property
    def backup_blocked(self) -> bool:
        return any(issue.blocking for issue in self.issues)

    @property
    def blocking_issues(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.blocking]

    @property
    def advisories(self) -> list[ValidationIssue]:
        return [i for i in self.issues if not i.blocking]

    def summary(self) -> str:
        if not self.issues:
            return f"{self.title}: PASSED"
        lines = [
            f"{self.title}: {len(self.issues)} issues "
            f"({len(self.blocking_issues)} blocking)",
        ]
        for issue in self.issues:
            location = f"{issue.file}:{issue.line}" if issue.line else issue.file
            marker = "BLOCKING" if issue.blocking else "advisory"
            lines.append(f"  - [{marker}] {location}: {issue.message}")
            if issue.suggestion:
                lines.append(f"      {issue.suggestion}")
        return "\n".join(lines)


# Path families, matched against the configured backup path
DATABASE_PATH = re.compile(r"mysql|mariadb", re.IGNORECASE)
PHP_PATH = re.compile(r"/php", re.IGNORECASE)
APACHE_PATH = re.compile(r"/(apache|httpd)", re.IGNORECASE)

# Directives that are almost always a typo: pattern -> (message, suggestion)
MALFORMED_DB_DIRECTIVES = {
    re.compile(r"^\s*max_connection(?!s)\b"): (
        "Invalid directive 'max_connection'",
        "Did you mean 'max_connections'?",
    ),
    re.compile(r"^\s*innodb_buffer_pool(?!_)\b"): (
        "Invalid directive 'innodb_buffer_pool'",
        "Did you mean 'innodb_buffer_pool_size'?",
    ),
}

DEPRECATED_DB_OPTIONS = {
    "query_cache_size": "query_cache_size is deprecated in MySQL 8.0+",
    "query_cache_type": "query_cache_type is deprecated in MySQL 8.0+",
    "query_cache_limit": "query_cache_limit is deprecated in MySQL 8.0+",
    "innodb_file_format": "innodb_file_format was removed in MySQL 8.0",
}

DEPRECATED_PHP_OPTIONS = {
    "safe_mode": "safe_mode was removed in PHP 5.4",
    "register_globals": "register_globals was removed in PHP 5.4",
    "magic_quotes_gpc": "magic_quotes_gpc was removed in PHP 5.4",
    "track_errors": "track_errors was removed in PHP 8.0",
}

COMMENT_LINE = re.compile(r"^\s*[#;]")


def _option_name(line: str) -> str:
    return re.split(r"[\s=]", line.strip(), maxsplit=1)[0].replace("-", "_").lower()


def check_database_config(path: str, text: str) -> list[ValidationIssue]:
    """Directive checks for a MySQL/MariaDB option file."""
    issues = []
    for line_num, line in enumerate(text.splitlines(), start=1):
        if not line.strip() or COMMENT_LINE.match(line) or line.strip().startswith("["):
            continue

        for pattern, (message, suggestion) in MALFORMED_DB_DIRECTIVES.items():
            if pattern.search(line):
                issues.append(ValidationIssue(
                    file=path,
                    issue_kind=IssueKind.SYNTAX_ERROR,
                    message=message,
                    suggestion=suggestion,
                    line=line_num,
                ))

        option = _option_name(line)
        if option in DEPRECATED_DB_OPTIONS:
            issues.append(ValidationIssue(
                file=path,
                issue_kind=IssueKind.DEPRECATED,
                message=DEPRECATED_DB_OPTIONS[option],
                suggestion="Consider removing this option",
                line=line_num,
            ))
    return issues


def check_php_config(path: str, text: str) -> list[ValidationIssue]:
    """Removed-option checks for a php.ini style file."""
    issues = []
    for line_num, line in enumerate(text.splitlines(), start=1):
        if not line.strip() or COMMENT_LINE.match(line):
            continue
        option = _option_name(line)
        if option in DEPRECATED_PHP_OPTIONS:
            issues.append(ValidationIssue(
                file=path,
                issue_kind=IssueKind.DEPRECATED,
                message=DEPRECATED_PHP_OPTIONS[option],
                suggestion="Consider removing this option",
                line=line_num,
            ))
    return issues


@dataclass(frozen=True)
class SyntaxChecker:
    """An external syntax-checking tool.

    ``command`` is formatted with ``{file}``; ``failure_markers`` are
    searched in the combined output, and a nonzero exit also counts as a
    failure when ``exit_code_matters`` is set.
    """
    tool: str
    command: tuple[str, ...]
    failure_markers: tuple[str, ...] = ()
    exit_code_matters: bool = True
    label: str = ""

    def argv(self, file: str) -> list[str]:
        return [part.format(file=file) for part in self.command]

    def failed(self, returncode: int, output: str) -> bool:
        if self.exit_code_matters and returncode != 0:
            return True
        return any(marker in output for marker in self.failure_markers)


MYSQL_CHECKER = SyntaxChecker(
    tool="mysqld",
    command=("mysqld", "--defaults-file={file}", "--validate-config"),
    label="MySQL",
)

PHP_CHECKER = SyntaxChecker(
    tool="php",
    command=("php", "-c", "{file}", "-r", ""),
    failure_markers=("Parse error", "Fatal error", "syntax error"),
    exit_code_matters=False,
    label="PHP",
)

# Whole-server checks: run once per backup path rather than per file
APACHE_CHECKERS = (
    SyntaxChecker(
        tool="apache2ctl",
        command=("apache2ctl", "-t"),
        failure_markers=("Syntax error",),
        exit_code_matters=False,
        label="Apache",
    ),
    SyntaxChecker(
        tool="httpd",
        command=("httpd", "-t"),
        failure_markers=("Syntax error",),
        exit_code_matters=False,
        label="Apache",
    ),
)
