"""Advisory lock serializing writers of the backup repository."""
import fcntl
import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from ..errors import BackupError, RepositoryLocked

logger = logging.getLogger(__name__)


class RepositoryLock:
    """Exclusive ``flock`` on a lock file that sits beside the working tree.

    Held around mirror -> stage -> commit -> push and around
    restore's extract -> apply. Not reentrant.
    """

    def __init__(self, repo_path: Path, timeout: float = 300.0, poll_interval: float = 0.1):
        self.lock_path = repo_path.with_name(repo_path.name + ".lock")
        self.timeout = timeout
        self.poll_interval = poll_interval

    @contextmanager
    def hold(self, purpose: str = "") -> Iterator[None]:
        """Acquire the lock, waiting up to ``timeout`` seconds."""
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            lock_fh = self.lock_path.open("a+")
        except OSError as e:
            raise LockUnavailable(f"Cannot open lock file {self.lock_path}: {e}") from e

        with lock_fh:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(lock_fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= self.timeout:
                        raise RepositoryLocked(
                            f"Timed out after {self.timeout:.0f}s waiting for {self.lock_path}"
                        )
                    time.sleep(self.poll_interval)

            logger.debug(f"Acquired repository lock {self.lock_path} ({purpose or 'unnamed'})")
            try:
                yield
            finally:
                fcntl.flock(lock_fh.fileno(), fcntl.LOCK_UN)
                logger.debug(f"Released repository lock {self.lock_path}")


class LockUnavailable(BackupError):
    """The lock file itself cannot be created or opened."""
    pass
