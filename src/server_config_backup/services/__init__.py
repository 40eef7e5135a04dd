"""Service restarts with health verification."""
from .reconciler import (
    SERVICE_MAP,
    RestartAction,
    RestartReport,
    ServiceReconciler,
    ServiceRestartFailure,
    ServiceRestartRecord,
    services_for_path,
)

__all__ = [
    "SERVICE_MAP",
    "RestartAction",
    "RestartReport",
    "ServiceReconciler",
    "ServiceRestartFailure",
    "ServiceRestartRecord",
    "services_for_path",
]
