"""Database package exposing the declarative base and session helpers."""
