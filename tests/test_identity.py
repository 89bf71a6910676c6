# tests/test_identity.py
from __future__ import annotations

import pytest
from support import START_MS, FakeClock, OwnershipResolver, Signer

from chorus_sync.schemas.messages import DisplayPreference, ProfileUpdateMessage, WalletKind
from chorus_sync.services.identity import (
    UserIdentityService,
    VerificationTier,
    short_address,
)
from chorus_sync.services.reducer import StateReducer
from chorus_sync.services.wallet import WalletAccount


def test_short_address() -> None:
    assert short_address("0x1234567890abcdef") == "0x1234...cdef"
    assert short_address("0xabc") == "0xabc"


@pytest.mark.asyncio
async def test_tiers_follow_wallet_and_ownership(clock: FakeClock, alice: Signer) -> None:
    resolver = OwnershipResolver({"0xowner": "owner.eth"}, {"0xowner": "owner.eth"})
    service = UserIdentityService(StateReducer(), resolver, clock=clock, cache_ttl_seconds=60)

    assert service.tier_of(alice.address) == VerificationTier.ANONYMOUS
    assert service.tier_of("0xstranger") == VerificationTier.WALLET_UNCONNECTED

    service.set_local_wallet(WalletAccount(address="0xlocal", kind=WalletKind.ETHEREUM))
    assert service.tier_of("0xlocal") == VerificationTier.WALLET_CONNECTED

    identity = await service.resolve("0xowner")
    assert identity.tier == VerificationTier.OWNER_VERIFIED
    assert identity.display_name == "owner.eth"
    assert identity.owned_asset == "owner.eth"
    assert identity.is_verified


@pytest.mark.asyncio
async def test_lookups_are_cached(clock: FakeClock) -> None:
    resolver = OwnershipResolver()
    service = UserIdentityService(StateReducer(), resolver, clock=clock, cache_ttl_seconds=60)

    await service.resolve("0xabc")
    await service.resolve("0xabc")
    assert resolver.calls == 1

    clock.advance(61)
    await service.resolve("0xabc")
    assert resolver.calls == 2

    await service.refresh("0xabc", force=True)
    assert resolver.calls == 3


@pytest.mark.asyncio
async def test_session_keys_skip_name_lookups(clock: FakeClock, alice: Signer) -> None:
    resolver = OwnershipResolver()
    service = UserIdentityService(StateReducer(), resolver, clock=clock)
    await service.resolve(alice.address)
    assert resolver.calls == 0


def test_call_sign_preference_controls_display_name(clock: FakeClock, alice: Signer) -> None:
    reducer = StateReducer()
    service = UserIdentityService(reducer, clock=clock)
    reducer.apply(
        alice.sign(
            ProfileUpdateMessage(
                timestamp=START_MS,
                call_sign="alice",
                display_preference=DisplayPreference.CALL_SIGN,
            )
        )
    )
    identity = service.identity(alice.address)
    assert identity.display_name == "alice"
    assert identity.call_sign == "alice"

    reducer.apply(
        alice.sign(
            ProfileUpdateMessage(
                timestamp=START_MS + 1,
                call_sign="alice",
                display_preference=DisplayPreference.WALLET_ADDRESS,
            )
        )
    )
    assert service.identity(alice.address).display_name == short_address(alice.address)


@pytest.mark.asyncio
async def test_failed_lookups_are_not_cached(clock: FakeClock, mocker) -> None:
    resolver = OwnershipResolver({"0xabc": "abc.eth"})
    lookup = mocker.patch.object(resolver, "resolve_name", side_effect=OSError("ens down"))
    service = UserIdentityService(StateReducer(), resolver, clock=clock)

    identity = await service.resolve("0xabc")
    assert identity.tier == VerificationTier.WALLET_UNCONNECTED
    assert identity.owned_asset is None

    lookup.side_effect = None
    lookup.return_value = "abc.eth"
    identity = await service.resolve("0xabc")
    assert identity.tier == VerificationTier.OWNER_VERIFIED
    assert lookup.await_count == 2
