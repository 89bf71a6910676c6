"""API endpoint modules for version 1."""

from .delegation import router as delegation_router
from .forum import router as forum_router
from .system import router as system_router

__all__ = [
    "delegation_router",
    "forum_router",
    "system_router",
]
