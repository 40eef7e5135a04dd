"""Versioned backup, drift detection and restore of server configuration directories."""

__version__ = "2.0.0"
