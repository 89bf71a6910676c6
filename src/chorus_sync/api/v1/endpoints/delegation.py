"""Delegation status and lifecycle endpoints."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from chorus_sync.api.deps import EngineDep
from chorus_sync.core.errors import (
    WalletSigningRejectedError,
    WalletSigningTimeoutError,
    WalletUnavailableError,
)
from chorus_sync.schemas.forum import DelegationCreate

router = APIRouter(prefix="/delegation", tags=["delegation"])


@router.get("")
async def get_delegation_status(engine: EngineDep) -> dict[str, object]:
    """Return the local delegation and the identity it acts as."""
    current = engine.delegation.status()
    identity = engine.current_identity()
    return {
        "has_delegation": current.has_delegation,
        "is_valid": current.is_valid,
        "time_remaining_ms": current.time_remaining_ms,
        "public_key": current.public_key,
        "address": current.address,
        "wallet_kind": current.wallet_kind.value if current.wallet_kind else None,
        "identity": (
            {
                "address": identity.address,
                "display_name": identity.display_name,
                "tier": identity.tier.value,
            }
            if identity
            else None
        ),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_delegation(body: DelegationCreate, engine: EngineDep) -> dict[str, object]:
    """Ask the connected wallet to authorize a fresh delegated key.

    Raises:
        HTTPException: If the wallet is missing, declines or times out
    """
    try:
        grant = await engine.authorize(body.duration)
    except ValueError as err:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(err)) from err
    except WalletUnavailableError as err:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(err)) from err
    except WalletSigningRejectedError as err:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(err)) from err
    except WalletSigningTimeoutError as err:
        raise HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=str(err)) from err
    return {
        "address": grant.wallet_address,
        "public_key": grant.delegated_public_key,
        "expires_at": grant.expires_at,
    }


@router.delete("", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_delegation(engine: EngineDep) -> None:
    engine.revoke()
