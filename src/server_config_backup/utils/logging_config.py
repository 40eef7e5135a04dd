"""Logging configuration for the backup system.

Provides:
- Console output at the configured level
- Optional file logging with rotation (DEBUG, captures everything)
- A separate performance logger with timing helpers

Environment Variables:
    SERVER_BACKUP_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (overrides config)
    SERVER_BACKUP_LOG_FILE: Path to log file (overrides config)

Usage:
    from server_config_backup.utils.logging_config import setup_logging, timed

    setup_logging(config.logging)  # Call once at startup

    @timed("backup")
    def run(self):
        ...

    with timed_section("drift_check", host="web01"):
        ...
"""
import functools
import logging
import os
import time
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable, Any, Optional

# Performance logger - separate from main logger for easy filtering
perf_logger = logging.getLogger("server_backup.perf")

MAIN_FORMAT = "%(asctime)s.%(msecs)03d | %(name)-25s | %(levelname)-7s | %(message)s"
PERF_FORMAT = "%(asctime)s.%(msecs)03d | PERF | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_log_level(default: str = "INFO") -> int:
    """Get log level from environment, falling back to ``default``."""
    level_str = os.environ.get("SERVER_BACKUP_LOG_LEVEL", default).upper()
    return getattr(logging, level_str, logging.INFO)


def get_log_file(default: Optional[str] = None) -> Optional[Path]:
    """Get log file path from environment, falling back to ``default``."""
    path_str = os.environ.get("SERVER_BACKUP_LOG_FILE", default or "")
    return Path(path_str) if path_str else None


def setup_logging(settings: Any = None, verbose: bool = False) -> None:
    """Configure logging for the application.

    Sets up:
    - Console handler (INFO+ by default, respects SERVER_BACKUP_LOG_LEVEL)
    - File handler with rotation when a log file is configured
    - Performance logger for timing metrics

    Args:
        settings: ``LoggingSettings`` from the loaded config (optional)
        verbose: Force DEBUG on the console
    """
    level_name = getattr(settings, "level", "INFO")
    log_level = logging.DEBUG if verbose else get_log_level(level_name)
    log_file = get_log_file(getattr(settings, "file", None))
    max_size_mb = getattr(settings, "max_size_mb", 10)
    backup_count = getattr(settings, "backup_count", 5)

    main_format = logging.Formatter(MAIN_FORMAT, datefmt=DATE_FORMAT)
    perf_format = logging.Formatter(PERF_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(main_format)

    root_logger = logging.getLogger("server_config_backup")
    root_logger.setLevel(logging.DEBUG)  # Capture all, handlers filter
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)

    perf_logger.setLevel(logging.DEBUG)
    perf_logger.handlers.clear()
    perf_logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding="utf-8"
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(main_format)
        root_logger.addHandler(file_handler)

        perf_handler = RotatingFileHandler(
            log_file.with_name(f"{log_file.stem}-perf.log"),
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding="utf-8"
        )
        perf_handler.setLevel(logging.DEBUG)
        perf_handler.setFormatter(perf_format)
        perf_logger.addHandler(perf_handler)

    root_logger.debug(
        f"Logging initialized: level={logging.getLevelName(log_level)}, file={log_file}"
    )


def _format_line(operation: str, elapsed: float, outcome: str, extra: dict) -> str:
    msg = f"{operation:20s} | {elapsed:8.2f}ms | {outcome}"
    if extra:
        msg += " | " + " | ".join(f"{k}={v}" for k, v in extra.items())
    return msg


def timed(operation: str) -> Callable:
    """Decorator to log execution time of a function.

    Args:
        operation: Name of the operation (e.g., "backup", "drift_check")

    Usage:
        @timed("restore")
        def run(self, ref):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.warning(_format_line(operation, elapsed, f"FAIL: {e}", {}))
                raise
            elapsed = (time.perf_counter() - start) * 1000
            perf_logger.info(_format_line(operation, elapsed, "OK", {}))
            return result

        return wrapper

    return decorator


@contextmanager
def timed_section(operation: str, **extra):
    """Context manager for timing code sections."""
    start = time.perf_counter()
    try:
        yield
    except Exception as e:
        elapsed = (time.perf_counter() - start) * 1000
        perf_logger.warning(_format_line(operation, elapsed, f"FAIL: {e}", extra))
        raise
    elapsed = (time.perf_counter() - start) * 1000
    perf_logger.info(_format_line(operation, elapsed, "OK", extra))
