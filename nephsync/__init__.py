"""Offline-first, end-to-end encrypted record replication."""

__version__ = "0.1.0"
