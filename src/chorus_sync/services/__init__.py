"""Sync engine services for the Chorus forum client."""

from .crypto import CryptoService
from .codec import MessageCodec
from .delegation import DelegationManager
from .outbox import Outbox
from .reducer import StateReducer
from .recovery import GapDetector
from .transport import TransportGateway
from .sync import SyncEngine

__all__ = [
    "CryptoService",
    "MessageCodec",
    "DelegationManager",
    "Outbox",
    "StateReducer",
    "GapDetector",
    "TransportGateway",
    "SyncEngine",
]
