"""Repository layer for the local cache."""

from .delegation import DelegationRepository
from .documents import META_STORE, MESSAGE_STORES, DocumentRepository
from .outbox import OutboxRepository

__all__ = [
    "DelegationRepository",
    "DocumentRepository",
    "META_STORE",
    "MESSAGE_STORES",
    "OutboxRepository",
]
