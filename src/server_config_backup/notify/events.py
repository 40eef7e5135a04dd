"""Webhook event types and the events the backup system emits."""
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class WebhookEvent:
    """One outbound notification."""
    event_type: str
    severity: str  # 'info', 'warn', 'error'
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


def backup_success(result: Any) -> WebhookEvent:
    """``result`` is a ``BackupResult``."""
    return WebhookEvent(
        event_type="backup_success",
        severity="info",
        message=f"Backup completed successfully in {result.duration_s:.0f}s",
        data={
            "duration": round(result.duration_s, 2),
            "files_backed_up": result.files_backed_up,
            "commit_hash": result.commit_id,
            "pushed": result.pushed,
            "warnings": list(result.warnings),
        },
    )


def backup_failed(error: str, duration_s: float, last_successful_backup: Optional[str]) -> WebhookEvent:
    return WebhookEvent(
        event_type="backup_failed",
        severity="error",
        message=f"Backup failed: {error}",
        data={
            "error": error,
            "duration": round(duration_s, 2),
            "last_successful_backup": last_successful_backup or "unknown",
        },
    )


def drift_detected(report: Any) -> WebhookEvent:
    """``report`` is a ``DriftReport`` with at least one change."""
    data = report.to_dict()
    data["total_changes"] = len(report.changes)
    return WebhookEvent(
        event_type="drift_detected",
        severity=report.overall_severity.webhook_level,
        message=f"Configuration drift detected: {len(report.changes)} changes",
        data=data,
    )


def validation_failed(report: Any) -> WebhookEvent:
    """``report`` is a ``ValidationReport`` with issues."""
    return WebhookEvent(
        event_type="validation_failed",
        severity="error" if report.backup_blocked else "warn",
        message="Configuration validation failed",
        data={
            "issues": [issue.to_dict() for issue in report.issues],
            "backup_blocked": report.backup_blocked,
        },
    )


def service_restart(report: Any, trigger: str) -> WebhookEvent:
    """``report`` is a ``RestartReport``; ``trigger`` names what caused it."""
    return WebhookEvent(
        event_type="service_restart",
        severity="info" if report.all_successful else "error",
        message="Service restart completed",
        data={
            "trigger": trigger,
            "services": [record.to_dict() for record in report.records],
            "skipped": list(report.skipped),
            "all_successful": report.all_successful,
        },
    )


def restore_success(session: Any) -> WebhookEvent:
    """``session`` is a finished ``RestoreSession``."""
    return WebhookEvent(
        event_type="restore_success",
        severity="info",
        message=f"Restored {', '.join(session.restored_paths)} from {session.source_commit[:8]}",
        data={
            "commit": session.source_commit,
            "restored_paths": list(session.restored_paths),
            "pre_restore_backups": list(session.pre_restore_backup_paths),
        },
    )


def restore_failed(reference: str, error: str) -> WebhookEvent:
    return WebhookEvent(
        event_type="restore_failed",
        severity="error",
        message=f"Restore from {reference} failed: {error}",
        data={"reference": reference, "error": error},
    )


def connectivity_check() -> WebhookEvent:
    return WebhookEvent(
        event_type="test",
        severity="info",
        message="Webhook test from server-config-backup",
        data={"test": True},
    )
