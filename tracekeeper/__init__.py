"""Lifecycle and state reconciliation for system trace captures."""

__version__ = "0.1.0"
