"""Chorus sync: local-first forum synchronization engine."""

__version__ = "0.1.0"
