"""Utility modules."""
from .locking import LockUnavailable, RepositoryLock
from .logging_config import setup_logging, timed, timed_section

__all__ = ["LockUnavailable", "RepositoryLock", "setup_logging", "timed", "timed_section"]
