"""Offline mutation queue with conflict-aware replay."""

__version__ = "0.1.0"
