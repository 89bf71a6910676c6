"""Shared FastAPI dependencies."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from chorus_sync.services.sync import SyncEngine


def get_engine(request: Request) -> SyncEngine:
    """Return the sync engine started by the application lifecycle."""
    engine: SyncEngine | None = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync engine is not running",
        )
    return engine


EngineDep = Annotated[SyncEngine, Depends(get_engine)]
