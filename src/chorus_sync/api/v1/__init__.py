"""Version 1 API endpoints."""

from .endpoints import delegation_router, forum_router, system_router

__all__ = [
    "delegation_router",
    "forum_router",
    "system_router",
]
