"""Shared fixtures."""
import shutil
from datetime import datetime, timezone
from pathlib import Path

import pytest

from server_config_backup.commit_store import CommitStore
from server_config_backup.config.schema import BackupConfig, BackupPath, HostIdentity
from server_config_backup.utils.locking import RepositoryLock

HOSTNAME = "testhost"


@pytest.fixture(autouse=True)
def isolated_git(monkeypatch, tmp_path):
    """Keep the user's git configuration out of the tests."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(tmp_path / "gitconfig"))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("HOME", str(tmp_path))


@pytest.fixture
def live_root(tmp_path) -> Path:
    """A fake /etc with a database and a PHP configuration directory."""
    root = tmp_path / "etc"
    mysql = root / "mysql"
    (mysql / "conf.d").mkdir(parents=True)
    (mysql / "my.cnf").write_text(
        "[mysqld]\n" + "".join(f"option_{i} = {i}\n" for i in range(40))
    )
    (mysql / "conf.d" / "tuning.cnf").write_text("[mysqld]\nmax_connections = 200\n")

    php = root / "php"
    php.mkdir()
    (php / "php.ini").write_text("memory_limit = 256M\nupload_max_filesize = 64M\n")
    return root


@pytest.fixture
def repo_dir(tmp_path) -> Path:
    return tmp_path / "repo"


@pytest.fixture
def store(repo_dir) -> CommitStore:
    s = CommitStore(repo_dir, user_name="Test", user_email="test@example.com")
    s.init()
    return s


@pytest.fixture
def lock(repo_dir) -> RepositoryLock:
    return RepositoryLock(repo_dir, timeout=2)


def make_config(repo_dir: Path, paths: list[Path], **backup) -> BackupConfig:
    return BackupConfig.model_validate({
        "system": HostIdentity(
            bound_hostname=HOSTNAME,
            bound_timestamp=datetime(2026, 1, 1, tzinfo=timezone.utc),
            system_id=f"{HOSTNAME}-1767225600",
        ).model_dump(),
        "repository": {"working_dir": str(repo_dir)},
        "backup": {
            "backup_user": None,
            "paths": [str(p) for p in paths],
            **backup,
        },
    })


@pytest.fixture
def config(repo_dir, live_root) -> BackupConfig:
    return make_config(repo_dir, [live_root / "mysql", live_root / "php"])


@pytest.fixture
def backup_paths(config) -> list[BackupPath]:
    return list(config.backup.paths)
