# tests/test_delegation.py
from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError
from support import START_MS, FakeClock

from chorus_sync.core.errors import (
    NoValidDelegationError,
    SignatureInvalidError,
    WalletSigningRejectedError,
    WalletSigningTimeoutError,
    WalletUnavailableError,
)
from chorus_sync.repositories import DelegationRepository
from chorus_sync.schemas.messages import (
    MAX_TIMESTAMP_MS,
    DelegationProof,
    PostMessage,
    WalletKind,
)
from chorus_sync.services.codec import MessageCodec
from chorus_sync.services.crypto import CryptoService
from chorus_sync.services.delegation import (
    DelegationManager,
    build_auth_message,
    resolve_duration,
)
from chorus_sync.services.wallet import SoftwareWallet, WalletVerifierRegistry

DAY_MS = 24 * 60 * 60 * 1000


def _manager(clock: FakeClock, repository: DelegationRepository | None = None, **kwargs):
    return DelegationManager(
        WalletVerifierRegistry.with_software_verifiers(), repository, clock=clock, **kwargs
    )


def _draft(ts: int) -> PostMessage:
    return PostMessage(timestamp=ts, cell_id="cell", title="t", content="c")


def test_auth_message_format() -> None:
    text = build_auth_message("0xabc", "ff" * 32, 1_700_000_000_000, "n1")
    assert text == (
        f"I, 0xabc, authorize browser key {'ff' * 32} until 2023-11-14T22:13:20.000Z "
        "(ts:1700000000000) (nonce: n1)"
    )


def test_resolve_duration() -> None:
    assert resolve_duration("7days") == timedelta(days=7)
    assert resolve_duration("30days") == timedelta(days=30)
    assert resolve_duration(timedelta(hours=1)) == timedelta(hours=1)
    with pytest.raises(ValueError):
        resolve_duration("forever")
    with pytest.raises(ValueError):
        resolve_duration(timedelta(0))


@pytest.mark.asyncio
async def test_grant_signs_verifiable_messages(clock: FakeClock, wallet: SoftwareWallet) -> None:
    manager = _manager(clock)
    grant = await manager.create_grant(wallet, "7days")

    assert grant.wallet_address == wallet.address
    assert grant.expires_at == START_MS + 7 * DAY_MS

    signed = manager.sign_with_delegation(_draft(clock.now_ms()))
    assert signed.author == wallet.address
    assert signed.signer_public_key == grant.delegated_public_key
    assert signed.delegation_proof == grant.proof()

    codec = MessageCodec(delegation_verifier=manager.verify_delegated_message)
    codec.verify_message(signed)

    # A peer with its own manager verifies the same message.
    peer = _manager(FakeClock(START_MS + 3 * DAY_MS))
    MessageCodec(delegation_verifier=peer.verify_delegated_message).verify_message(signed)


@pytest.mark.asyncio
async def test_late_delivery_is_judged_by_message_time(
    clock: FakeClock, wallet: SoftwareWallet
) -> None:
    manager = _manager(clock)
    grant = await manager.create_grant(wallet, timedelta(hours=1))

    before_expiry = manager.sign_with_delegation(_draft(grant.expires_at - 1))
    clock.advance(2 * 3600)
    manager.verify_delegated_message(before_expiry)

    after_expiry = MessageCodec.sign_message(
        _draft(grant.expires_at),
        grant.delegated_private_key,
        author=grant.wallet_address,
        proof=grant.proof(),
    )
    with pytest.raises(SignatureInvalidError, match="window"):
        manager.verify_delegated_message(after_expiry)


@pytest.mark.asyncio
async def test_expired_grant_stops_signing(clock: FakeClock, wallet: SoftwareWallet) -> None:
    manager = _manager(clock)
    await manager.create_grant(wallet, timedelta(minutes=5))
    clock.advance(301)

    assert manager.get_active_grant() is None
    with pytest.raises(NoValidDelegationError):
        manager.sign_with_delegation(_draft(clock.now_ms()))


@pytest.mark.asyncio
async def test_forged_proofs_are_rejected(clock: FakeClock, wallet: SoftwareWallet) -> None:
    manager = _manager(clock)
    grant = await manager.create_grant(wallet)
    signed = manager.sign_with_delegation(_draft(clock.now_ms()))
    other = SoftwareWallet(WalletKind.ETHEREUM)

    stolen_proof = signed.delegation_proof.model_copy(update={"wallet_address": other.address})
    hijacked = MessageCodec.sign_message(
        _draft(clock.now_ms()),
        grant.delegated_private_key,
        author=other.address,
        proof=stolen_proof,
    )
    with pytest.raises(SignatureInvalidError, match="authorization"):
        manager.verify_delegated_message(hijacked)

    longer = signed.delegation_proof.model_copy(update={"expires_at": grant.expires_at + DAY_MS})
    extended = MessageCodec.sign_message(
        _draft(clock.now_ms()),
        grant.delegated_private_key,
        author=grant.wallet_address,
        proof=longer,
    )
    with pytest.raises(SignatureInvalidError):
        manager.verify_delegated_message(extended)


@pytest.mark.asyncio
async def test_wallet_rejection_and_absence(clock: FakeClock, wallet: SoftwareWallet) -> None:
    manager = _manager(clock)
    wallet.reject_requests = True
    with pytest.raises(WalletSigningRejectedError):
        await manager.create_grant(wallet)
    assert manager.get_active_grant() is None

    with pytest.raises(WalletUnavailableError):
        await manager.create_grant(None)

    wallet.reject_requests = False
    wallet.disconnect()
    with pytest.raises(WalletUnavailableError):
        await manager.create_grant(wallet)


@pytest.mark.asyncio
async def test_wallet_signing_timeout(clock: FakeClock, wallet: SoftwareWallet) -> None:
    manager = _manager(clock, sign_timeout_seconds=0.05)
    wallet.response_delay_seconds = 1.0
    with pytest.raises(WalletSigningTimeoutError):
        await manager.create_grant(wallet)
    assert manager.get_active_grant() is None


@pytest.mark.asyncio
async def test_wallet_switch_revokes_grant(clock: FakeClock, wallet: SoftwareWallet) -> None:
    manager = _manager(clock)
    manager.watch_wallet(wallet)
    await manager.create_grant(wallet)

    wallet.switch_account()
    assert manager.get_active_grant() is None

    await manager.create_grant(wallet)
    wallet.disconnect()
    assert manager.status().has_delegation is False


@pytest.mark.asyncio
async def test_grant_survives_restart(
    clock: FakeClock, wallet: SoftwareWallet, memory_factory
) -> None:
    repository = DelegationRepository(memory_factory)
    manager = _manager(clock, repository)
    grant = await manager.create_grant(wallet, "30days")

    restored = _manager(clock, repository)
    assert restored.get_active_grant() == grant
    status = restored.status()
    assert status.is_valid
    assert status.time_remaining_ms == 30 * DAY_MS

    restored.revoke()
    assert _manager(clock, repository).get_active_grant() is None


@pytest.mark.asyncio
async def test_restored_grant_must_match_connected_wallet(
    clock: FakeClock, wallet: SoftwareWallet, memory_factory
) -> None:
    repository = DelegationRepository(memory_factory)
    await _manager(clock, repository).create_grant(wallet)

    same = _manager(clock, repository)
    assert same.reconcile(wallet.get_account()) is False
    assert same.get_active_grant() is not None

    other = SoftwareWallet(WalletKind.ETHEREUM)
    switched = _manager(clock, repository)
    assert switched.reconcile(other.get_account()) is True
    assert switched.get_active_grant() is None
    assert _manager(clock, repository).get_active_grant() is None


def test_proof_times_are_bounded() -> None:
    fields = {
        "wallet_address": "0xabc",
        "wallet_kind": WalletKind.ETHEREUM,
        "delegated_public_key": "ff" * 32,
        "issued_at": 0,
        "nonce": "n1",
        "authorizing_signature": "00",
    }
    DelegationProof(expires_at=MAX_TIMESTAMP_MS, **fields)
    with pytest.raises(ValidationError):
        DelegationProof(expires_at=10**30, **fields)
    with pytest.raises(ValidationError):
        _draft(MAX_TIMESTAMP_MS + 1)


def test_unrenderable_expiry_is_an_invalid_signature(clock: FakeClock) -> None:
    private_key, public_key = CryptoService.generate_key_pair()
    proof = DelegationProof.model_construct(
        wallet_address="0xabc",
        wallet_kind=WalletKind.ETHEREUM,
        delegated_public_key=public_key,
        issued_at=0,
        expires_at=10**30,
        nonce="n1",
        authorizing_signature="00",
    )
    message = MessageCodec.sign_message(
        _draft(START_MS), private_key, author="0xabc", proof=proof
    )
    with pytest.raises(SignatureInvalidError):
        _manager(clock).verify_delegated_message(message)
