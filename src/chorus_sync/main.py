"""Main entry point for a local Chorus sync node."""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from chorus_sync.api.v1 import delegation_router, forum_router, system_router
from chorus_sync.core.logging import configure_logging
from chorus_sync.core.settings import settings
from chorus_sync.db.session import SessionLocal, create_tables
from chorus_sync.schemas.messages import WalletKind
from chorus_sync.services.relay import HttpRelayTransport, MemoryRelay
from chorus_sync.services.sync import SyncEngine
from chorus_sync.services.transport import Transport
from chorus_sync.services.wallet import SoftwareWallet

logger = logging.getLogger(__name__)

EngineFactory = Callable[[], SyncEngine]


def build_engine() -> SyncEngine:
    """Build a sync engine from global settings."""
    transport: Transport
    if settings.relay_enabled:
        transport = HttpRelayTransport()
    else:
        logger.info("Relay disabled; using an in-process relay")
        transport = MemoryRelay().transport()

    wallet = None
    if settings.dev_wallet_kind:
        wallet = SoftwareWallet(WalletKind(settings.dev_wallet_kind))

    create_tables()
    return SyncEngine(
        transport,
        session_factory=SessionLocal,
        wallet=wallet,
        anonymous_session=settings.anonymous_session,
    )


def create_app(engine_factory: EngineFactory | None = None) -> FastAPI:
    """Create the local node API around a sync engine built at startup."""
    app = FastAPI(
        title="Chorus Sync",
        description="Local-first sync node for the Chorus forum",
        version=settings.app_version,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware)

    app.include_router(forum_router, prefix="/api/v1")
    app.include_router(delegation_router, prefix="/api/v1")
    app.include_router(system_router, prefix="/api/v1")

    factory = engine_factory or build_engine

    @app.on_event("startup")
    async def on_startup() -> None:
        configure_logging(settings.log_level)
        engine = factory()
        await engine.init()
        app.state.engine = engine

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        engine: SyncEngine | None = getattr(app.state, "engine", None)
        if engine:
            await engine.shutdown()
        app.state.engine = None

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint to verify the node is running."""
        return {"status": "ok"}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("chorus_sync.main:app", host="127.0.0.1", port=8000, reload=settings.debug)
