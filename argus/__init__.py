"""Argus - reconciliation engine for multi-agent coding session monitoring."""

__version__ = "0.1.0"
