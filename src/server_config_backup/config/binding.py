"""Host binding.

A configuration (and the ``<hostname>/`` namespace it writes into the
repository) is bound to the host that created it. Running the same
config on a differently named host is refused unless the operator
explicitly rebinds, declares a recovery, or forces the run.
"""
import logging
import socket
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from ..errors import HostnameMismatch
from .schema import BackupConfig, HostIdentity

logger = logging.getLogger(__name__)


class BindingMode(str, Enum):
    """How a hostname mismatch is handled."""
    STRICT = "strict"
    REBIND = "rebind"
    RECOVERY = "recovery"
    FORCE = "force"


class BindingStatus(str, Enum):
    NEW = "new"
    UNBOUND = "unbound"
    MATCHED = "matched"
    MISMATCHED = "mismatched"
    REBOUND = "rebound"


def current_hostname() -> str:
    return socket.gethostname()


def new_identity(hostname: str, now: Optional[datetime] = None) -> HostIdentity:
    """Create a fresh binding for ``hostname``."""
    now = now or datetime.now(timezone.utc)
    return HostIdentity(
        bound_hostname=hostname,
        bound_timestamp=now.replace(microsecond=0),
        system_id=f"{hostname}-{int(now.timestamp())}",
    )


def resolve_binding(
    config: BackupConfig,
    mode: BindingMode = BindingMode.STRICT,
    hostname: Optional[str] = None,
    config_exists: bool = True,
) -> tuple[BackupConfig, BindingStatus]:
    """Validate the running host against the config's binding.

    Args:
        config: Loaded configuration
        mode: Override mode chosen on the command line
        hostname: Current hostname (default: socket.gethostname())
        config_exists: False when the config was just created

    Returns:
        (config, status). The returned config differs from the input when
        the binding was created or updated; the caller persists it.

    Raises:
        HostnameMismatch: Bound to another host and mode is STRICT
    """
    hostname = hostname or current_hostname()
    identity = config.system

    if mode == BindingMode.REBIND:
        logger.info(f"Rebinding hostname from {identity.bound_hostname or '(none)'} to {hostname}")
        rebound = new_identity(hostname)
        if identity.system_id:
            rebound = rebound.model_copy(update={"system_id": identity.system_id})
        return config.model_copy(update={"system": rebound}), BindingStatus.REBOUND

    if not identity.is_bound:
        if config_exists:
            logger.warning(f"Configuration has no hostname binding, auto-binding to {hostname}")
            status = BindingStatus.UNBOUND
        else:
            logger.info(f"New installation detected. Binding to hostname: {hostname}")
            status = BindingStatus.NEW
        return config.model_copy(update={"system": new_identity(hostname)}), status

    if identity.bound_hostname == hostname:
        logger.debug(f"Hostname binding validated: {hostname}")
        return config, BindingStatus.MATCHED

    if mode == BindingMode.RECOVERY:
        logger.warning(
            f"Recovery mode: running as '{identity.bound_hostname}' on host '{hostname}'"
        )
        return config, BindingStatus.MISMATCHED
    if mode == BindingMode.FORCE:
        logger.warning(
            f"Force mode: hostname validation bypassed "
            f"(bound={identity.bound_hostname}, current={hostname})"
        )
        return config, BindingStatus.MISMATCHED

    raise HostnameMismatch(identity.bound_hostname, hostname)
