# src/chorus_sync/models/__init__.py
"""SQLAlchemy models for the local sync cache."""

from .delegation import DelegationRecord
from .document import DocumentRecord
from .outbox import OutboxRecord

__all__ = [
    "DelegationRecord",
    "DocumentRecord",
    "OutboxRecord",
]
