"""Tests for the git-backed commit store and the privileged executor."""
import subprocess

import pytest

from server_config_backup.commit_store import (
    CommitStore,
    PrivilegedExecutor,
    PushFailure,
    RefNotFound,
)


def write(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


class TestInit:
    """Tests for repository initialization."""

    def test_init_creates_repo_on_branch(self, repo_dir):
        store = CommitStore(repo_dir, branch="main")
        assert store.init() is True
        assert store.is_initialized()
        head_ref = subprocess.run(
            ["git", "-C", str(repo_dir), "symbolic-ref", "HEAD"],
            capture_output=True, text=True, check=True,
        ).stdout.strip()
        assert head_ref == "refs/heads/main"

    def test_init_is_idempotent(self, store):
        assert store.init() is False
        assert store.is_initialized()

    def test_init_sets_and_updates_remote(self, store, tmp_path):
        store.init("git@example.com:org/one.git")
        store.init("git@example.com:org/two.git")
        url = store._run_git("remote", "get-url", "origin").stdout.strip()
        assert url == "git@example.com:org/two.git"
        assert store.has_remote()

    def test_empty_repo_has_no_head(self, store):
        assert store.head() is None
        assert store.log() == []


class TestCommit:
    """Tests for staging and committing."""

    def test_commit_returns_hash(self, store):
        write(store.repo_path / "host" / "a.conf", "a = 1\n")
        store.stage_all()
        commit = store.commit("first")
        assert commit is not None and len(commit) == 40
        assert store.head() == commit

    def test_commit_without_changes_returns_none(self, store):
        write(store.repo_path / "host" / "a.conf", "a = 1\n")
        store.stage_all()
        store.commit("first")

        store.stage_all()
        assert store.commit("second") is None
        assert len(store.log()) == 1

    def test_deletions_are_staged(self, store):
        conf = store.repo_path / "host" / "a.conf"
        write(conf, "a = 1\n")
        store.stage_all()
        first = store.commit("first")

        conf.unlink()
        store.stage_all()
        assert store.commit("removed") is not None
        assert store.has_path(first, "host/a.conf")
        assert not store.has_path("HEAD", "host/a.conf")

    def test_commit_author(self, repo_dir):
        store = CommitStore(repo_dir, user_name="Backup Bot", user_email="bot@example.com")
        store.init()
        write(repo_dir / "x", "x\n")
        store.stage_all()
        store.commit("authored")
        assert store.log()[0].author == "Backup Bot"


class TestHistory:
    """Tests for log, show and rev_parse."""

    @pytest.fixture
    def history(self, store):
        for i, message in enumerate(["Config backup for web01 - a", "Other", "Config backup for web01 - b"]):
            write(store.repo_path / "web01" / "f.conf", f"v = {i}\n")
            store.stage_all()
            store.commit(message)
        return store

    def test_log_newest_first_with_parents(self, history):
        commits = history.log()
        assert [c.message for c in commits] == [
            "Config backup for web01 - b", "Other", "Config backup for web01 - a",
        ]
        assert commits[0].parent == commits[1].hash
        assert commits[-1].parent is None

    def test_log_grep_is_literal(self, history):
        commits = history.log(grep="backup for web01")
        assert len(commits) == 2
        assert history.log(grep="web0.") == []

    def test_log_limit(self, history):
        assert len(history.log(limit=1)) == 1

    def test_rev_parse_relative_ref(self, history):
        commits = history.log()
        assert history.rev_parse("HEAD~1") == commits[1].hash
        assert history.rev_parse(commits[2].short_hash) == commits[2].hash

    @pytest.mark.parametrize("ref", ["nonexistent", "HEAD~10", "--all", ""])
    def test_rev_parse_rejects(self, history, ref):
        with pytest.raises(RefNotFound):
            history.rev_parse(ref)

    def test_show_contains_stat(self, history):
        output = history.show("HEAD")
        assert "Config backup for web01 - b" in output
        assert "web01/f.conf" in output

    def test_diff_between_commits(self, history):
        diff = history.diff("HEAD~2", "HEAD", path="web01")
        assert "-v = 0" in diff
        assert "+v = 2" in diff

    def test_list_dir(self, history):
        assert history.list_dir("HEAD", "web01") == ["f.conf"]
        assert history.list_dir("HEAD", "missing") == []


class TestCheckoutSubtree:
    """Tests for extracting a subtree of an old commit."""

    def test_extracts_old_content_without_touching_working_tree(self, store, tmp_path):
        conf = store.repo_path / "web01" / "mysql" / "my.cnf"
        write(conf, "old\n")
        store.stage_all()
        first = store.commit("first")
        write(conf, "new\n")
        store.stage_all()
        store.commit("second")

        extracted = store.checkout_subtree(first, "web01", tmp_path / "out")
        assert extracted == tmp_path / "out" / "web01"
        assert (extracted / "mysql" / "my.cnf").read_text() == "old\n"
        assert conf.read_text() == "new\n"
        status = store._run_git("status", "--porcelain").stdout
        assert status == ""

    def test_missing_subtree_returns_none(self, store, tmp_path):
        write(store.repo_path / "web01" / "a", "a\n")
        store.stage_all()
        commit = store.commit("first")
        assert store.checkout_subtree(commit, "web02", tmp_path / "out") is None


class TestPush:
    """Tests for pushing to a remote."""

    def test_no_remote_keeps_history_local(self, store):
        write(store.repo_path / "a", "a\n")
        store.stage_all()
        store.commit("first")
        assert store.push() is False

    def test_push_to_bare_remote(self, store, tmp_path):
        remote = tmp_path / "remote.git"
        subprocess.run(["git", "init", "--bare", "-q", str(remote)], check=True)
        store.init(str(remote))
        write(store.repo_path / "a", "a\n")
        store.stage_all()
        commit = store.commit("first")

        assert store.push() is True
        remote_head = subprocess.run(
            ["git", "-C", str(remote), "rev-parse", "main"],
            capture_output=True, text=True, check=True,
        ).stdout.strip()
        assert remote_head == commit

    def test_unreachable_remote_raises(self, store, tmp_path):
        store.init(str(tmp_path / "does-not-exist.git"))
        write(store.repo_path / "a", "a\n")
        store.stage_all()
        store.commit("first")
        with pytest.raises(PushFailure):
            store.push()


class TestPrivilegedExecutor:
    """Tests for identity switching."""

    def test_no_user_runs_directly(self):
        executor = PrivilegedExecutor(None)
        assert not executor.switches_identity
        assert executor.command(["git", "status"]) == ["git", "status"]

    def test_other_user_wraps_with_sudo(self):
        executor = PrivilegedExecutor("backup-service-that-is-not-me")
        assert executor.switches_identity
        assert executor.command(["git", "status"]) == [
            "sudo", "-n", "-u", "backup-service-that-is-not-me", "-H", "--", "git", "status",
        ]

    def test_run_never_raises_on_exit_status(self):
        result = PrivilegedExecutor().run(["git", "definitely-not-a-command"])
        assert result.returncode != 0
