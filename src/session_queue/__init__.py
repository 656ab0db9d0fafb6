"""Persistent background queue for CLI agent prompt execution."""

__version__ = "0.1.0"
