"""Claimflow - tenant-scoped insurance claim lifecycle engine."""

__version__ = "0.1.0"
