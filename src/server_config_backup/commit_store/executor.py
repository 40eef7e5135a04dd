"""Run commands under the backup identity.

The repository is owned and written by a dedicated unprivileged user,
distinct from the identity that reads the source configuration files.
``PrivilegedExecutor`` is the only place that knows how to switch to it.
"""
import logging
import os
import pwd
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def _effective_user() -> str:
    try:
        return pwd.getpwuid(os.geteuid()).pw_name
    except KeyError:
        return str(os.geteuid())


class PrivilegedExecutor:
    """Executes commands as ``user`` via ``sudo -u`` when needed.

    When ``user`` is None, or the process already runs as that user,
    commands execute directly.
    """

    def __init__(self, user: Optional[str] = None):
        self.user = user

    @property
    def switches_identity(self) -> bool:
        return bool(self.user) and self.user != _effective_user()

    def command(self, cmd: list[str]) -> list[str]:
        """Wrap ``cmd`` for execution under the backup identity."""
        if self.switches_identity:
            return ["sudo", "-n", "-u", self.user, "-H", "--"] + list(cmd)
        return list(cmd)

    def run(
        self,
        cmd: list[str],
        text: bool = True,
        input: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        """Run ``cmd`` and capture its output. Never raises on exit status."""
        full_cmd = self.command(cmd)
        return subprocess.run(
            full_cmd,
            capture_output=True,
            text=text,
            input=input,
            check=False,
        )

    def hand_over(self, path: Path) -> None:
        """Give ownership of ``path`` (recursively) to the backup identity.

        Only possible (and only needed) when running as root.
        """
        if not self.switches_identity or os.geteuid() != 0:
            return
        result = subprocess.run(
            ["chown", "-R", f"{self.user}:", str(path)],
            capture_output=True,
            text=True,
            check=False,
        )
        if result.returncode != 0:
            logger.warning(f"Could not hand {path} over to {self.user}: {result.stderr.strip()}")
