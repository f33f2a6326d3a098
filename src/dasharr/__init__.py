"""
Dasharr core - metrics collection and time-series storage engine.

This package polls configured media services through adapters, persists the
resulting snapshots into an embedded SQLite store with encrypted credentials,
and keeps a bounded in-memory cache of recent snapshots.
"""

__version__ = "0.1.0"
