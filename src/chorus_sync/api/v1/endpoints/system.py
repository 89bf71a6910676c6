"""System and observability endpoints for the local sync node."""

from __future__ import annotations

import time
from dataclasses import asdict

from fastapi import APIRouter

from chorus_sync.api.deps import EngineDep
from chorus_sync.core.settings import settings

router = APIRouter(prefix="/system", tags=["system"])


@router.get("/status")
async def get_sync_status(engine: EngineDep) -> dict[str, object]:
    """Return missing/recovered accounting, outbox depth and connectivity.

    Args:
        engine: Running sync engine

    Returns:
        Dictionary mirroring ``SyncStatus`` plus the service version
    """
    return {
        "service": "chorus-sync",
        "version": settings.app_version,
        "timestamp": int(time.time()),
        **asdict(engine.status()),
    }


@router.get("/config")
async def get_public_config() -> dict[str, object]:
    """Return a sanitized snapshot of public runtime configuration.

    Excludes secrets and connection strings.
    """
    return {
        "app": {
            "name": settings.app_name,
            "version": settings.app_version,
            "debug": settings.debug,
        },
        "transport": {
            "content_topic": settings.content_topic,
            "publish_timeout_seconds": settings.publish_timeout_seconds,
            "relay_enabled": settings.relay_enabled,
        },
        "outbox": {
            "base_backoff_seconds": settings.outbox_base_backoff_seconds,
            "max_backoff_seconds": settings.outbox_max_backoff_seconds,
            "max_attempts": settings.outbox_max_attempts,
        },
        "recovery": settings.recovery_thresholds,
        "relevance": {
            "decay_rate": settings.relevance_decay_rate,
            "moderation_penalty": settings.relevance_moderation_penalty,
        },
        "permissions": {
            "post": settings.min_tier_to_post,
            "vote": settings.min_tier_to_vote,
            "create_cell": settings.min_tier_to_create_cell,
        },
    }


@router.get("/metrics")
async def get_transport_metrics(engine: EngineDep) -> dict[str, object]:
    """Publish and inbound metrics of the transport gateway."""
    return {
        "timestamp": int(time.time()),
        "transport": engine.gateway.get_metrics(),
        "health": engine.gateway.health_check(),
    }


@router.get("/missing")
async def get_permanently_missing(engine: EngineDep) -> list[dict[str, object]]:
    """Messages dropped because their references never arrived."""
    return [asdict(item) for item in engine.permanently_missing()]


@router.get("/outbox")
async def get_outbox(engine: EngineDep) -> list[dict[str, object]]:
    return [
        {
            "id": entry.message_id,
            "type": entry.message.type,
            "status": entry.status.value,
            "attempt_count": entry.attempt_count,
            "last_error": entry.last_error,
            "created_at": entry.created_at,
        }
        for entry in engine.outbox.entries()
    ]
