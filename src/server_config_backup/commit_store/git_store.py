"""Git-backed version history for configuration snapshots.

Provides:
- Repository initialization with remote and commit identity
- Staging and committing (no-op when nothing changed)
- Push to the configured remote
- History, stat summaries and ref resolution
- Extraction of a commit's subtree without touching the working tree
"""
import io
import logging
import subprocess
import tarfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from ..errors import BackupError
from .executor import PrivilegedExecutor

logger = logging.getLogger(__name__)


@dataclass
class CommitInfo:
    """Information about a git commit."""
    hash: str
    short_hash: str
    author: str
    date: datetime
    message: str
    parent: Optional[str] = None


class CommitStore:
    """
    Typed wrapper over the git commands the backup system needs.

    Every git invocation goes through the ``PrivilegedExecutor`` so that
    the repository is only ever written by the backup identity.
    """

    def __init__(
        self,
        repo_path: Path,
        executor: Optional[PrivilegedExecutor] = None,
        branch: str = "main",
        user_name: str = "Server Config Backup",
        user_email: str = "backup@localhost",
    ):
        """
        Initialize CommitStore.

        Args:
            repo_path: Working tree of the repository (git root)
            executor: Runs git as the backup identity (default: current user)
            branch: Branch commits are made on and pushed to
            user_name: Commit author name
            user_email: Commit author email
        """
        self.repo_path = repo_path
        self.executor = executor or PrivilegedExecutor()
        self.branch = branch
        self.user_name = user_name
        self.user_email = user_email

    def _run_git(
        self,
        *args: str,
        check: bool = True,
        text: bool = True,
    ) -> subprocess.CompletedProcess:
        """Run a git command in the repo directory."""
        cmd = ["git", "-C", str(self.repo_path)] + list(args)
        logger.debug(f"Running: {' '.join(cmd)}")

        try:
            result = self.executor.run(cmd, text=text)
        except OSError as e:
            raise CommitStoreError(f"Cannot execute git: {e}") from e

        if check and result.returncode != 0:
            stderr = result.stderr if text else result.stderr.decode(errors="replace")
            logger.error(f"Git command failed: {stderr.strip()}")
            raise CommitStoreError(f"git {args[0]} failed: {stderr.strip()}")

        return result

    def is_initialized(self) -> bool:
        """Check if the git repo is initialized."""
        return (self.repo_path / ".git").exists()

    def init(self, remote_url: Optional[str] = None) -> bool:
        """
        Initialize the repository. Safe to call repeatedly.

        Args:
            remote_url: ``origin`` URL (None keeps history local)

        Returns:
            True if newly initialized, False if it already existed
        """
        created = False
        if not self.is_initialized():
            self.repo_path.mkdir(parents=True, exist_ok=True)
            self.executor.hand_over(self.repo_path)
            self._run_git("init")
            self._run_git("symbolic-ref", "HEAD", f"refs/heads/{self.branch}")
            created = True
            logger.info(f"Initialized git repo at {self.repo_path}")
        else:
            logger.debug("Git repo already initialized")

        self._run_git("config", "user.name", self.user_name)
        self._run_git("config", "user.email", self.user_email)

        if remote_url:
            current = self._run_git("remote", "get-url", "origin", check=False)
            if current.returncode != 0:
                self._run_git("remote", "add", "origin", remote_url)
            elif current.stdout.strip() != remote_url:
                self._run_git("remote", "set-url", "origin", remote_url)

        return created

    def stage_all(self) -> None:
        """Stage every change (including deletions) in the working tree."""
        self.executor.hand_over(self.repo_path)
        self._run_git("add", "--all", ".")

    def has_staged_changes(self) -> bool:
        result = self._run_git("diff", "--cached", "--quiet", check=False)
        return result.returncode != 0

    def commit(self, message: str) -> Optional[str]:
        """
        Commit what is staged.

        Args:
            message: Commit message

        Returns:
            Commit hash, or None if nothing was staged
        """
        if not self.has_staged_changes():
            logger.debug("No changes to commit")
            return None

        self._run_git(
            "-c", f"user.name={self.user_name}",
            "-c", f"user.email={self.user_email}",
            "commit", "--quiet", "-m", message,
        )
        commit_hash = self._run_git("rev-parse", "HEAD").stdout.strip()

        logger.info(f"Committed: {commit_hash[:8]} - {message.splitlines()[0]}")
        return commit_hash

    def has_remote(self) -> bool:
        result = self._run_git("remote", "get-url", "origin", check=False)
        return result.returncode == 0 and bool(result.stdout.strip())

    def push(self, branch: Optional[str] = None) -> bool:
        """
        Push ``branch`` to origin.

        Returns:
            True if pushed, False if no remote is configured

        Raises:
            PushFailure: The remote rejected the push or was unreachable
        """
        branch = branch or self.branch
        if not self.has_remote():
            logger.warning("No remote configured, keeping history local")
            return False

        result = self._run_git("push", "-u", "origin", branch, check=False)
        if result.returncode != 0:
            raise PushFailure(f"Push to origin/{branch} failed: {result.stderr.strip()}")

        logger.info(f"Pushed {branch} to origin")
        return True

    def log(
        self,
        grep: Optional[str] = None,
        limit: int = 20,
        path: Optional[str] = None,
    ) -> list[CommitInfo]:
        """
        Get commit history, newest first.

        Args:
            grep: Only commits whose message contains this text
            limit: Maximum commits to return
            path: Only commits touching this path

        Returns:
            List of CommitInfo objects
        """
        if not self.is_initialized() or self.head() is None:
            return []

        # Format: hash|short|author|date|parents|subject
        format_str = "%H|%h|%an|%aI|%P|%s"
        args = ["log", f"--format={format_str}", f"-n{limit}"]
        if grep:
            args.extend(["--fixed-strings", f"--grep={grep}"])
        if path:
            args.extend(["--", path])

        result = self._run_git(*args)

        commits = []
        for line in result.stdout.strip().split("\n"):
            if not line:
                continue

            parts = line.split("|", 5)
            if len(parts) < 6:
                continue

            try:
                commits.append(CommitInfo(
                    hash=parts[0],
                    short_hash=parts[1],
                    author=parts[2],
                    date=datetime.fromisoformat(parts[3]),
                    message=parts[5],
                    parent=parts[4].split()[0] if parts[4] else None,
                ))
            except (ValueError, IndexError) as e:
                logger.warning(f"Failed to parse commit: {e}")

        return commits

    def show(self, commit_id: str) -> str:
        """Header and per-file stat summary of a commit."""
        commit_id = self.rev_parse(commit_id)
        result = self._run_git(
            "show", "--stat", "--format=commit %H%nAuthor: %an <%ae>%nDate:   %aI%n%n    %s%n",
            commit_id,
        )
        return result.stdout

    def diff(self, ref_a: str, ref_b: str = "HEAD", path: Optional[str] = None) -> str:
        """Unified diff between two revisions, optionally limited to a path."""
        args = ["diff", self.rev_parse(ref_a), self.rev_parse(ref_b)]
        if path:
            args.extend(["--", path])
        return self._run_git(*args).stdout

    def rev_parse(self, ref: str) -> str:
        """
        Resolve ``ref`` to a full commit hash.

        Raises:
            RefNotFound: ``ref`` does not name a commit
        """
        if not ref or ref.startswith("-"):
            raise RefNotFound(ref)
        result = self._run_git("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", check=False)
        if result.returncode != 0 or not result.stdout.strip():
            raise RefNotFound(ref)
        return result.stdout.strip()

    def head(self) -> Optional[str]:
        """Hash of the latest commit, or None on an empty repository."""
        if not self.is_initialized():
            return None
        try:
            return self.rev_parse("HEAD")
        except RefNotFound:
            return None

    def has_path(self, commit_id: str, path: str) -> bool:
        """Check whether ``path`` exists in ``commit_id``'s tree."""
        result = self._run_git("cat-file", "-e", f"{commit_id}:{path}", check=False)
        return result.returncode == 0

    def list_dir(self, commit_id: str, path: str) -> list[str]:
        """Names of the entries directly under ``path`` in a commit."""
        result = self._run_git("ls-tree", "--name-only", f"{commit_id}:{path}", check=False)
        if result.returncode != 0:
            return []
        return [n for n in result.stdout.split("\n") if n]

    def checkout_subtree(self, commit_id: str, subtree: str, dest_dir: Path) -> Optional[Path]:
        """
        Extract ``subtree`` of ``commit_id`` into ``dest_dir``.

        Streams ``git archive`` so neither the index nor the working tree
        of the repository is touched.

        Returns:
            Path of the extracted subtree (``dest_dir / subtree``), or None
            if the commit has no such subtree
        """
        if not self.has_path(commit_id, subtree):
            logger.debug(f"{subtree} not present in {commit_id[:8]}")
            return None

        result = self._run_git("archive", "--format=tar", commit_id, subtree, text=False)
        dest_dir.mkdir(parents=True, exist_ok=True)
        try:
            with tarfile.open(fileobj=io.BytesIO(result.stdout), mode="r:") as tar:
                tar.extractall(dest_dir, filter="data")
        except (tarfile.TarError, OSError) as e:
            raise CommitStoreError(f"Cannot extract {subtree} from {commit_id[:8]}: {e}") from e

        logger.debug(f"Extracted {subtree} of {commit_id[:8]} into {dest_dir}")
        return dest_dir / subtree


class CommitStoreError(BackupError):
    """Exception raised for git operation failures."""
    pass


class RefNotFound(CommitStoreError):
    """A ref did not resolve to a commit."""

    def __init__(self, ref: str):
        self.ref = ref
        super().__init__(f"Reference not found: {ref!r}")


class PushFailure(CommitStoreError):
    """Pushing to the remote failed."""
    pass
