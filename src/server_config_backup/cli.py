#!/usr/bin/env python3
"""Command line interface.

Usage:
    server-backup [--config PATH] [--rebind-hostname | --recovery-mode | --force] COMMAND ...

Environment variables:
    SERVER_BACKUP_CONFIG      Config file (default: /etc/server-config-backup/config.yaml)
    SERVER_BACKUP_LOG_LEVEL   Console log level
    SERVER_BACKUP_LOG_FILE    Log file path
"""
import argparse
import logging
import sys
from typing import Optional, Sequence

from .config import (
    BindingMode,
    BindingStatus,
    load_or_create,
    resolve_binding,
    resolve_config_path,
    save_config,
)
from .config.loader import config_to_yaml
from .errors import BackupError
from .monitor import BackupMonitor, DriftMonitor
from .restore import AssumeYesPrompter, ConsolePrompter, RestoreState
from .services import ServiceRestartFailure
from .system import BackupSystem
from .utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="server-backup",
        description="Versioned backup, drift detection and restore of server configuration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    server-backup init
    server-backup backup --validate-first
    server-backup restore HEAD~1 mysql --restart-services
    server-backup drift-check --continuous 600
    server-backup setup-webhook https://hooks.example.com/backup backup_failed,drift_detected
    server-backup --rebind-hostname backup
    server-backup audit-permissions
""",
    )
    parser.add_argument("--config", help="Configuration file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    binding = parser.add_mutually_exclusive_group()
    binding.add_argument(
        "--rebind-hostname", dest="binding", action="store_const", const=BindingMode.REBIND,
        help="Update hostname binding to this host",
    )
    binding.add_argument(
        "--recovery-mode", dest="binding", action="store_const", const=BindingMode.RECOVERY,
        help="Disaster recovery: run with the bound identity on a different host",
    )
    binding.add_argument(
        "--force", dest="binding", action="store_const", const=BindingMode.FORCE,
        help="Skip hostname validation (dangerous)",
    )
    parser.set_defaults(binding=BindingMode.STRICT)

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Initialize the backup repository")

    p = sub.add_parser("backup", help="Back up configuration now")
    p.add_argument("--validate-first", action="store_true", help="Run validation, abort if blocked")
    p.add_argument("--restart-services", action="store_true", help="Restart services for changed paths")

    p = sub.add_parser("restore", help="Restore configuration from a commit")
    p.add_argument("ref", help="Commit hash or ref (e.g. HEAD~1)")
    p.add_argument("path", nargs="?", help="Component base name or path (default: choose interactively)")
    p.add_argument("--restart-services", action="store_true", help="Restart affected services")
    p.add_argument("-y", "--yes", action="store_true", help="Do not prompt (restores everything if no path)")

    p = sub.add_parser("drift-check", help="Compare live configuration with a backup")
    p.add_argument("ref", nargs="?", default=None, help="Reference commit (default: last backup)")
    p.add_argument(
        "--continuous", nargs="?", type=int, const=0, default=None, metavar="INTERVAL",
        help="Keep checking every INTERVAL seconds (default: monitor interval)",
    )

    sub.add_parser("validate", help="Run pre-backup validation")

    p = sub.add_parser("restart-services", help="Restart services with health checks")
    p.add_argument("names", nargs="*", help="Service names (default: all mapped services)")

    p = sub.add_parser("setup-webhook", help="Enable webhook notifications")
    p.add_argument("url")
    p.add_argument("events", nargs="?", help="Comma-separated event types")

    sub.add_parser("disable-webhook", help="Disable webhook notifications")
    sub.add_parser("show-webhook", help="Show webhook settings")
    sub.add_parser("test-webhook", help="Send a test notification")

    p = sub.add_parser("list", help="List recent backups")
    p.add_argument("-n", "--limit", type=int, default=20)

    p = sub.add_parser("show", help="Show a backup commit")
    p.add_argument("ref")

    p = sub.add_parser("monitor", help="Back up automatically on changes")
    p.add_argument("--poll", action="store_true", help="Back up every interval instead of watching")

    sub.add_parser("audit-permissions", help="Check modes and ownership of backup files")
    sub.add_parser("fix-permissions", help="Tighten modes and ownership of backup files")
    sub.add_parser("status", help="Show system status")
    sub.add_parser("show-config", help="Print the effective configuration")

    return parser


def cmd_init(system: BackupSystem, args: argparse.Namespace) -> int:
    commit = system.init_repository()
    if commit:
        logger.info(f"Initial commit {commit[:8]} for {system.hostname}")
    return 0


def cmd_backup(system: BackupSystem, args: argparse.Namespace) -> int:
    result = system.backup(validate_first=args.validate_first, restart_services=args.restart_services)
    print(result.summary())
    for warning in result.warnings:
        print(f"  warning: {warning}")
    return 0


def cmd_restore(system: BackupSystem, args: argparse.Namespace) -> int:
    prompter = AssumeYesPrompter() if args.yes else ConsolePrompter()
    session = system.restore(
        args.ref, args.path, restart_services=args.restart_services, prompter=prompter
    )
    if session.state == RestoreState.CANCELLED:
        print("Restore cancelled")
        return 0

    print(system.show(session.source_commit))
    for path in session.restored_paths:
        print(f"Restored {path}")
    for copy in session.pre_restore_backup_paths:
        print(f"Previous config backed up to: {copy}")
    if session.services is not None:
        print(session.services.summary())
        if not session.services.all_successful:
            return 1
    elif not args.restart_services and session.restored_paths:
        names = system.reconciler.services_for_paths(session.restored_paths)
        if names:
            print(f"Consider restarting: {', '.join(names)}")
    return 0


def cmd_drift_check(system: BackupSystem, args: argparse.Namespace) -> int:
    if args.continuous is not None:
        DriftMonitor(system, interval=args.continuous or None).run(args.ref)
        return 0
    report = system.drift_check(args.ref)
    print(report.summary())
    return 1 if report.has_drift else 0


def cmd_validate(system: BackupSystem, args: argparse.Namespace) -> int:
    report = system.validate()
    print(report.summary())
    return 1 if report.issues else 0


def cmd_restart_services(system: BackupSystem, args: argparse.Namespace) -> int:
    try:
        report = system.restart_services(args.names)
    except ServiceRestartFailure as e:
        print(e.report.summary())
        return 1
    print(report.summary())
    return 0


def cmd_setup_webhook(system: BackupSystem, args: argparse.Namespace) -> int:
    event_types = [e.strip() for e in args.events.split(",") if e.strip()] if args.events else None
    system.setup_webhook(args.url, event_types)
    print(f"Webhook enabled: {args.url}")
    print(f"Events: {', '.join(system.config.webhook.events)}")
    return 0


def cmd_disable_webhook(system: BackupSystem, args: argparse.Namespace) -> int:
    system.disable_webhook()
    print("Webhook disabled")
    return 0


def cmd_show_webhook(system: BackupSystem, args: argparse.Namespace) -> int:
    webhook = system.config.webhook
    print(f"Enabled:     {webhook.enabled}")
    print(f"URL:         {webhook.url or '(not configured)'}")
    print(f"Events:      {', '.join(webhook.events)}")
    print(f"Timeout:     {webhook.timeout:g}s")
    print(f"Retry count: {webhook.retry_count}")
    print(f"Retry delay: {webhook.retry_delay:g}s")
    print(f"Config file: {system.config_path}")
    return 0


def cmd_test_webhook(system: BackupSystem, args: argparse.Namespace) -> int:
    if system.test_webhook():
        print("Webhook test succeeded")
        return 0
    print("Webhook test failed")
    return 1


def cmd_list(system: BackupSystem, args: argparse.Namespace) -> int:
    commits = system.list_backups(limit=args.limit)
    if not commits:
        print("No backups found")
    for c in commits:
        print(f"{c.short_hash}  {c.date:%Y-%m-%d %H:%M:%S}  {c.message}")
    return 0


def cmd_show(system: BackupSystem, args: argparse.Namespace) -> int:
    print(system.show(args.ref))
    return 0


def cmd_monitor(system: BackupSystem, args: argparse.Namespace) -> int:
    monitor = BackupMonitor(system)
    if args.poll:
        monitor.poll()
    else:
        monitor.watch()
    return 0


def cmd_audit_permissions(system: BackupSystem, args: argparse.Namespace) -> int:
    report = system.audit_permissions()
    print(report.summary())
    if report.issues:
        print("To fix permission issues, run: server-backup fix-permissions")
        return 1
    return 0


def cmd_fix_permissions(system: BackupSystem, args: argparse.Namespace) -> int:
    changes = system.fix_permissions()
    for change in changes:
        print(f"  {change}")
    print(f"{len(changes)} changes applied. Run 'server-backup audit-permissions' to verify")
    return 0


def cmd_status(system: BackupSystem, args: argparse.Namespace) -> int:
    status = system.status()
    for key in ("hostname", "system_id", "bound_since", "repository", "remote",
                "initialized", "latest_commit", "last_backup", "webhook"):
        print(f"{key:15s} {status[key]}")
    print("paths:")
    for path, present in status["paths"].items():
        print(f"  {'ok     ' if present else 'missing'} {path}")
    return 0


def cmd_show_config(system: BackupSystem, args: argparse.Namespace) -> int:
    print(config_to_yaml(system.config), end="")
    return 0


COMMANDS = {
    "init": cmd_init,
    "backup": cmd_backup,
    "restore": cmd_restore,
    "drift-check": cmd_drift_check,
    "validate": cmd_validate,
    "restart-services": cmd_restart_services,
    "setup-webhook": cmd_setup_webhook,
    "disable-webhook": cmd_disable_webhook,
    "show-webhook": cmd_show_webhook,
    "test-webhook": cmd_test_webhook,
    "list": cmd_list,
    "show": cmd_show,
    "monitor": cmd_monitor,
    "audit-permissions": cmd_audit_permissions,
    "fix-permissions": cmd_fix_permissions,
    "status": cmd_status,
    "show-config": cmd_show_config,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(verbose=args.verbose)

    try:
        config_path = resolve_config_path(args.config)
        existed = config_path.exists()
        config = load_or_create(config_path)
        setup_logging(config.logging, verbose=args.verbose)

        config, binding = resolve_binding(config, args.binding, config_exists=existed)
        if binding in (BindingStatus.NEW, BindingStatus.UNBOUND, BindingStatus.REBOUND):
            save_config(config, config_path)

        system = BackupSystem(config, config_path)
        return COMMANDS[args.command](system, args)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    except BackupError as e:
        logger.error(str(e))
        return 1
    except OSError as e:
        logger.error(f"Filesystem error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
