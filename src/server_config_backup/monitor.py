"""Long-running monitoring loops.

``BackupMonitor.watch`` blocks on filesystem events from the backup
paths (watchdog observer thread -> queue), debounces them, then runs one
backup cycle to completion before waiting again; cycles never overlap.
``BackupMonitor.poll`` runs a cycle every interval instead.
``DriftMonitor`` runs drift checks every interval.
"""
import logging
import os
import queue
import threading
from pathlib import Path
from typing import Callable, Optional, Sequence

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .errors import BackupError
from .snapshot.mirror import ExcludeRules
from .system import BackupSystem

logger = logging.getLogger(__name__)

# Event types that indicate content changes (watchdog also reports opens/closes)
CHANGE_EVENTS = {"created", "modified", "deleted", "moved"}


class ConfigChangeHandler(FileSystemEventHandler):
    """Enqueues changed paths under one backup root that are not excluded.

    Uses the same rules as the mirror for that root, so an event on an
    excluded entry (or anything inside an excluded directory) is dropped.
    """

    def __init__(
        self,
        changes: "queue.Queue[str]",
        root: str,
        exclude_patterns: Sequence[str] = (),
    ):
        self.changes = changes
        self.root = root
        self.rules = ExcludeRules(exclude_patterns)

    def excluded(self, path: str) -> bool:
        rel = os.path.relpath(path, self.root)
        if rel.startswith(".."):
            return False
        parts = rel.split(os.sep)
        return any(self.rules.matches("/".join(parts[:i])) for i in range(1, len(parts) + 1))

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type not in CHANGE_EVENTS:
            return
        path = str(event.src_path)
        if self.excluded(path):
            return
        logger.debug(f"Change detected: {event.event_type} {path}")
        self.changes.put(path)


class BackupMonitor:
    """Runs backup cycles when configuration changes."""

    def __init__(
        self,
        system: BackupSystem,
        observer_factory: Callable[[], Observer] = Observer,
    ):
        self.system = system
        self.interval = system.config.monitor.interval
        self.debounce = system.config.monitor.debounce_seconds
        self.observer_factory = observer_factory
        self.changes: "queue.Queue[str]" = queue.Queue()
        self.stop_event = threading.Event()
        self.cycles = 0

    def run_cycle(self) -> bool:
        """One backup cycle. Failures are logged and the loop continues."""
        self.cycles += 1
        try:
            result = self.system.backup()
        except BackupError as e:
            logger.error(f"Monitor backup cycle {self.cycles} failed: {e}")
            return False
        logger.info(f"Monitor backup cycle {self.cycles}: {result.summary()}")
        return True

    def _drain(self) -> int:
        drained = 0
        while True:
            try:
                self.changes.get_nowait()
            except queue.Empty:
                return drained
            drained += 1

    def watch(self, max_cycles: Optional[int] = None) -> None:
        """Block on change events and back up after each burst."""
        backup = self.system.config.backup
        observer = self.observer_factory()
        watched = 0
        for bp in backup.paths:
            if Path(bp.path).is_dir():
                handler = ConfigChangeHandler(self.changes, bp.path, backup.excludes_for(bp))
                observer.schedule(handler, bp.path, recursive=True)
                watched += 1
            else:
                logger.warning(f"Not watching {bp.path}: does not exist")
        if not watched:
            raise BackupError("None of the backup paths exist; nothing to watch")

        observer.start()
        logger.info(f"Watching {watched} paths for changes")
        try:
            while not self.stop_event.is_set():
                try:
                    first = self.changes.get(timeout=1.0)
                except queue.Empty:
                    continue
                # Let a burst of writes settle, then back up once
                self.stop_event.wait(self.debounce)
                extra = self._drain()
                logger.info(f"Configuration changed ({first} and {extra} more events)")
                self.run_cycle()
                if max_cycles is not None and self.cycles >= max_cycles:
                    break
        finally:
            observer.stop()
            observer.join()

    def poll(self, max_cycles: Optional[int] = None) -> None:
        """Back up every ``interval`` seconds."""
        logger.info(f"Polling every {self.interval}s")
        while not self.stop_event.is_set():
            self.run_cycle()
            if max_cycles is not None and self.cycles >= max_cycles:
                break
            self.stop_event.wait(self.interval)

    def stop(self) -> None:
        self.stop_event.set()


class DriftMonitor:
    """Runs drift checks every ``interval`` seconds."""

    def __init__(self, system: BackupSystem, interval: Optional[int] = None):
        self.system = system
        self.interval = interval or system.config.monitor.interval
        self.stop_event = threading.Event()
        self.checks = 0
        self.drift_found = 0

    def run(self, reference: Optional[str] = None, max_checks: Optional[int] = None) -> None:
        logger.info(f"Continuous drift monitoring every {self.interval}s")
        while not self.stop_event.is_set():
            self.checks += 1
            try:
                report = self.system.drift_check(reference)
            except BackupError as e:
                logger.error(f"Drift check failed: {e}")
            else:
                if report.has_drift:
                    self.drift_found += 1
            if max_checks is not None and self.checks >= max_checks:
                break
            self.stop_event.wait(self.interval)

    def stop(self) -> None:
        self.stop_event.set()
