"""Tests for drift detection and severity classification."""
import pytest

from server_config_backup.drift import (
    DriftDetector,
    ReferenceNotFound,
    Severity,
    classify,
    count_changed_lines,
)
from server_config_backup.snapshot import SnapshotEngine

from conftest import HOSTNAME


@pytest.fixture
def engine(store, lock):
    return SnapshotEngine(store, HOSTNAME, lock)


@pytest.fixture
def detector(store, config):
    return DriftDetector(store, HOSTNAME, config.backup.paths, config.backup.exclude_patterns)


def edit_lines(path, count):
    """Rewrite the first ``count`` option lines of a config file."""
    lines = path.read_text().splitlines()
    for i in range(1, count + 1):
        lines[i] = f"option_{i - 1} = changed"
    path.write_text("\n".join(lines) + "\n")


class TestClassify:
    """Tests for severity classification."""

    @pytest.mark.parametrize("name, lines, expected", [
        ("mysql", 25, Severity.CRITICAL),
        ("php", 21, Severity.CRITICAL),
        ("php", 20, Severity.MINOR),
        ("mysql", 6, Severity.MAJOR),
        ("mariadb", 6, Severity.MAJOR),
        ("mysql", 5, Severity.MINOR),
        ("php", 6, Severity.MINOR),
        ("mysql", 3, Severity.MINOR),
    ])
    def test_thresholds(self, name, lines, expected):
        assert classify(name, lines) == expected

    def test_webhook_levels(self):
        assert Severity.MINOR.webhook_level == "info"
        assert Severity.MAJOR.webhook_level == "warn"
        assert Severity.CRITICAL.webhook_level == "error"


class TestCountChangedLines:
    """Tests for changed-line counting."""

    def test_replacement_counts_larger_side(self):
        assert count_changed_lines(["a", "b", "c"], ["a", "x", "y", "c"]) == 2

    def test_insert_and_delete(self):
        assert count_changed_lines(["a"], ["a", "b", "c"]) == 2
        assert count_changed_lines(["a", "b", "c"], ["a"]) == 2

    def test_identical(self):
        assert count_changed_lines(["a", "b"], ["a", "b"]) == 0


class TestDriftDetector:
    """Tests for DriftDetector.run against real backups."""

    def test_no_drift_right_after_backup(self, engine, detector, backup_paths):
        result = engine.run(backup_paths)
        report = detector.run()

        assert not report.has_drift
        assert report.changes == []
        assert report.reference_commit == result.commit_id
        assert report.overall_severity is None

    def test_large_edit_is_critical(self, engine, detector, backup_paths, live_root):
        engine.run(backup_paths)
        edit_lines(live_root / "mysql" / "my.cnf", 25)

        report = detector.run()
        assert len(report.changes) == 1
        change = report.changes[0]
        assert change.path == str(live_root / "mysql")
        assert change.kind == "modified"
        assert change.lines_changed == 25
        assert change.severity == Severity.CRITICAL
        assert report.overall_severity == Severity.CRITICAL

    def test_small_edit_is_minor(self, engine, detector, backup_paths, live_root):
        engine.run(backup_paths)
        edit_lines(live_root / "mysql" / "my.cnf", 3)

        change = detector.run().changes[0]
        assert change.lines_changed == 3
        assert change.severity == Severity.MINOR

    def test_medium_database_edit_is_major(self, engine, detector, backup_paths, live_root):
        engine.run(backup_paths)
        edit_lines(live_root / "mysql" / "my.cnf", 6)

        assert detector.run().changes[0].severity == Severity.MAJOR

    def test_added_and_removed_files(self, engine, detector, backup_paths, live_root):
        engine.run(backup_paths)
        (live_root / "php" / "extra.ini").write_text("a = 1\nb = 2\n")
        (live_root / "mysql" / "conf.d" / "tuning.cnf").unlink()

        report = detector.run()
        by_path = {c.path: c for c in report.changes}
        php = by_path[str(live_root / "php")]
        assert php.lines_changed == 2
        assert [f.change for f in php.files] == ["added"]
        mysql = by_path[str(live_root / "mysql")]
        assert [(f.change, f.path) for f in mysql.files] == [("removed", "conf.d/tuning.cnf")]

    def test_excluded_files_are_not_drift(self, engine, detector, backup_paths, live_root):
        engine.run(backup_paths, exclude_patterns=detector.exclude_patterns)
        (live_root / "mysql" / "slow.log").write_text("x\n" * 100)
        assert not detector.run().has_drift

    def test_path_missing_from_reference_is_new(self, engine, store, backup_paths, live_root):
        engine.run(backup_paths[:1])
        detector = DriftDetector(store, HOSTNAME, backup_paths)

        report = detector.run()
        assert len(report.changes) == 1
        change = report.changes[0]
        assert change.path == str(live_root / "php")
        assert change.kind == "new"
        assert change.severity == Severity.MAJOR

    def test_reference_commit_selects_history(self, engine, store, detector, backup_paths, live_root):
        first = engine.run(backup_paths)
        ini = live_root / "php" / "php.ini"
        original = ini.read_text()
        ini.write_text("memory_limit = 1G\n")
        engine.run(backup_paths)

        assert not detector.run("last-backup").has_drift
        assert detector.run(first.commit_id).has_drift
        ini.write_text(original)
        assert not detector.run("HEAD~1").has_drift

    def test_diff_preview_in_report(self, engine, detector, backup_paths, live_root):
        engine.run(backup_paths)
        edit_lines(live_root / "mysql" / "my.cnf", 2)

        data = detector.run().to_dict()
        assert data["changes_count"] == 1
        entry = data["changes"][0]
        assert entry["type"] == "modified"
        assert entry["severity"] == "minor"
        assert "+option_0 = changed" in entry["diff_preview"]

    def test_unknown_reference(self, engine, detector, backup_paths):
        engine.run(backup_paths)
        with pytest.raises(ReferenceNotFound):
            detector.run("no-such-ref")

    def test_no_backups_yet(self, detector):
        with pytest.raises(ReferenceNotFound, match="no backups"):
            detector.run()

    def test_repository_untouched(self, engine, store, detector, backup_paths, live_root):
        engine.run(backup_paths)
        edit_lines(live_root / "mysql" / "my.cnf", 4)
        detector.run()
        assert store._run_git("status", "--porcelain").stdout == ""
