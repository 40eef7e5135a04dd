"""Version history storage.

This package provides:
- CommitStore: git wrapper (init, stage, commit, push, log, show, rev-parse, subtree extraction)
- PrivilegedExecutor: runs git as the dedicated backup identity
- CommitInfo: one entry of the history

Repository layout:
    <working_dir>/
    └── <hostname>/
        ├── README.md
        ├── mysql/          # mirror of /etc/mysql
        └── php/            # mirror of /etc/php
"""

from .executor import PrivilegedExecutor
from .git_store import CommitStore, CommitInfo, CommitStoreError, RefNotFound, PushFailure

__all__ = [
    "CommitStore",
    "CommitInfo",
    "CommitStoreError",
    "RefNotFound",
    "PushFailure",
    "PrivilegedExecutor",
]
