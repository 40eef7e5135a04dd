"""Load and persist the YAML configuration file."""
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from ..errors import ConfigurationError
from .schema import BackupConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("/etc/server-config-backup/config.yaml")
CONFIG_ENV_VAR = "SERVER_BACKUP_CONFIG"


def resolve_config_path(explicit: Optional[str] = None) -> Path:
    """Pick the config file: explicit argument, then environment, then default."""
    if explicit:
        return Path(explicit)
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def parse_config(text: str, source: str = "<string>") -> BackupConfig:
    """Parse YAML text into a validated ``BackupConfig``.

    Raises:
        ConfigurationError: On YAML syntax errors, a non-mapping document,
            unknown keys or invalid values.
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"{source}: invalid YAML: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{source}: top level must be a mapping")

    try:
        return BackupConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"{source}: {e}") from e


def load_config(path: Path) -> BackupConfig:
    """Load the config file at ``path``."""
    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigurationError(f"Cannot read config {path}: {e}") from e
    config = parse_config(text, source=str(path))
    logger.debug(f"Loaded config from {path}")
    return config


def config_to_yaml(config: BackupConfig) -> str:
    data = config.model_dump(mode="json")
    return yaml.dump(data, default_flow_style=False, sort_keys=False)


def save_config(config: BackupConfig, path: Path) -> None:
    """Write ``config`` to ``path`` atomically (temp file + rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            f.write("# server-config-backup configuration\n")
            f.write(config_to_yaml(config))
        os.chmod(tmp_name, 0o640)
        os.replace(tmp_name, path)
    except OSError as e:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise ConfigurationError(f"Cannot write config {path}: {e}") from e
    logger.info(f"Saved configuration to {path}")


def load_or_create(path: Path) -> BackupConfig:
    """Load ``path``, writing a default configuration first if it is missing."""
    if not path.exists():
        logger.info(f"No configuration at {path}, writing defaults")
        config = BackupConfig()
        save_config(config, path)
        return config
    return load_config(path)


def with_webhook(
    config: BackupConfig,
    url: Optional[str],
    events: Optional[list[str]] = None,
    enabled: bool = True,
) -> BackupConfig:
    """Return a copy of ``config`` with updated webhook settings (validated)."""
    data = config.webhook.model_dump()
    data["enabled"] = enabled
    if url is not None:
        data["url"] = url
    if events is not None:
        data["events"] = events
    try:
        webhook = type(config.webhook).model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid webhook settings: {e}") from e
    return config.model_copy(update={"webhook": webhook})
