"""User identity: display names and verification tiers."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from chorus_sync.core.settings import settings
from chorus_sync.schemas.messages import DisplayPreference
from chorus_sync.services.reducer import StateReducer
from chorus_sync.services.wallet import WalletAccount
from chorus_sync.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

_SESSION_KEY_PATTERN = re.compile(r"^[0-9a-f]{64}$")


class VerificationTier(str, Enum):
    """How strongly an address is tied to a real wallet, weakest first."""

    ANONYMOUS = "anonymous"
    WALLET_UNCONNECTED = "wallet-unconnected"
    WALLET_CONNECTED = "wallet-connected"
    OWNER_VERIFIED = "owner-verified"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def at_least(self, other: VerificationTier) -> bool:
        return self.rank >= other.rank


_TIER_ORDER = list(VerificationTier)


class NameResolver(Protocol):
    """Name-service and asset-ownership lookups for wallet addresses."""

    async def resolve_name(self, address: str) -> str | None: ...

    async def resolve_ownership(self, address: str) -> str | None:
        """Return an identifier of a qualifying owned asset (ENS name, ordinal id)."""
        ...


class NullNameResolver:
    """Resolver for nodes without name-service access."""

    async def resolve_name(self, address: str) -> str | None:
        return None

    async def resolve_ownership(self, address: str) -> str | None:
        return None


@dataclass(frozen=True)
class UserIdentity:
    address: str
    tier: VerificationTier
    display_name: str
    call_sign: str | None = None
    display_preference: DisplayPreference = DisplayPreference.WALLET_ADDRESS
    resolved_name: str | None = None
    owned_asset: str | None = None

    @property
    def is_verified(self) -> bool:
        """Wallet-backed identities count as verified for ranking bonuses."""
        return self.tier.at_least(VerificationTier.WALLET_CONNECTED)


@dataclass
class _Lookup:
    name: str | None
    owned_asset: str | None
    expires_at: float


def short_address(address: str) -> str:
    if len(address) <= 12:
        return address
    return f"{address[:6]}...{address[-4:]}"


class UserIdentityService:
    """Builds ``UserIdentity`` records from reducer state and name lookups.

    Args:
        reducer: Source of profiles and wallet-backed authors.
        resolver: Name-service lookups; defaults to ``NullNameResolver``.
        clock: Time source for the lookup cache.
        cache_ttl_seconds: How long lookup results are reused.
    """

    def __init__(
        self,
        reducer: StateReducer,
        resolver: NameResolver | None = None,
        *,
        clock: Clock | None = None,
        cache_ttl_seconds: float | None = None,
    ) -> None:
        self._reducer = reducer
        self._resolver = resolver or NullNameResolver()
        self._clock = clock or SystemClock()
        self.cache_ttl_seconds = (
            cache_ttl_seconds
            if cache_ttl_seconds is not None
            else settings.identity_cache_ttl_seconds
        )
        self._cache: dict[str, _Lookup] = {}
        self._connected_wallets: set[str] = set()

    def set_local_wallet(self, account: WalletAccount | None) -> None:
        """Mark the locally connected wallet so it ranks as wallet-connected."""
        self._connected_wallets.clear()
        if account is not None:
            self._connected_wallets.add(account.address)

    async def refresh(self, address: str, *, force: bool = False) -> None:
        """Refresh name and ownership lookups for ``address`` if stale."""
        cached = self._cache.get(address)
        now = self._clock.monotonic()
        if cached is not None and cached.expires_at > now and not force:
            return
        if _SESSION_KEY_PATTERN.match(address):
            self._cache[address] = _Lookup(None, None, now + self.cache_ttl_seconds)
            return
        try:
            name = await self._resolver.resolve_name(address)
            owned = await self._resolver.resolve_ownership(address)
        except (OSError, ValueError, LookupError) as exc:
            logger.warning("Identity lookup for %s failed: %s", address, exc)
            return
        self._cache[address] = _Lookup(name, owned, now + self.cache_ttl_seconds)

    async def resolve(self, address: str) -> UserIdentity:
        await self.refresh(address)
        return self.identity(address)

    def tier_of(self, address: str) -> VerificationTier:
        """Return the tier using cached lookups only."""
        lookup = self._cache.get(address)
        if lookup is not None and lookup.owned_asset:
            return VerificationTier.OWNER_VERIFIED
        if address in self._connected_wallets or address in self._reducer.state.wallet_authors:
            return VerificationTier.WALLET_CONNECTED
        if _SESSION_KEY_PATTERN.match(address):
            return VerificationTier.ANONYMOUS
        return VerificationTier.WALLET_UNCONNECTED

    def tiers(self, addresses: set[str]) -> dict[str, VerificationTier]:
        return {address: self.tier_of(address) for address in addresses}

    def identity(self, address: str) -> UserIdentity:
        """Return the identity for ``address`` without network lookups."""
        lookup = self._cache.get(address)
        profile = self._reducer.state.profiles.get(address)
        call_sign = profile.call_sign if profile else None
        preference = profile.display_preference if profile else DisplayPreference.WALLET_ADDRESS
        resolved_name = lookup.name if lookup else None

        if preference == DisplayPreference.CALL_SIGN and call_sign:
            display_name = call_sign
        elif resolved_name:
            display_name = resolved_name
        else:
            display_name = short_address(address)

        return UserIdentity(
            address=address,
            tier=self.tier_of(address),
            display_name=display_name,
            call_sign=call_sign,
            display_preference=preference,
            resolved_name=resolved_name,
            owned_asset=lookup.owned_asset if lookup else None,
        )
