"""Offline-first order synchronisation between a local store and a cloud API."""

__version__ = "0.3.0"
