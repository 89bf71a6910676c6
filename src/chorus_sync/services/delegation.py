"""Delegated signing: a wallet authorizes a short-lived local key.

Wallet signatures are slow and interactive, so the wallet signs a single
authorization message that binds a freshly generated Ed25519 key to the
wallet address until an expiry. Every forum message is then signed by that
key and carries the proof so peers can check both links of the chain.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta

from chorus_sync.core.errors import (
    NoValidDelegationError,
    SignatureInvalidError,
    WalletSigningTimeoutError,
    WalletUnavailableError,
)
from chorus_sync.core.settings import settings
from chorus_sync.models import DelegationRecord
from chorus_sync.repositories import DelegationRepository
from chorus_sync.schemas.messages import DelegationProof, KeyScheme, Message, WalletKind
from chorus_sync.services.codec import MessageCodec
from chorus_sync.services.crypto import CryptoService
from chorus_sync.services.wallet import WalletAccount, WalletAdapter, WalletVerifierRegistry
from chorus_sync.utils.clock import Clock, SystemClock, ms_to_iso

logger = logging.getLogger(__name__)

DELEGATION_DURATIONS: dict[str, timedelta] = {
    "7days": timedelta(days=7),
    "30days": timedelta(days=30),
}

_PROOF_CACHE_LIMIT = 4096


def build_auth_message(
    wallet_address: str,
    delegated_public_key: str,
    expires_at: int,
    nonce: str,
) -> str:
    """Return the exact text a wallet signs to authorize a delegated key."""
    return (
        f"I, {wallet_address}, authorize browser key {delegated_public_key} "
        f"until {ms_to_iso(expires_at)} (ts:{expires_at}) (nonce: {nonce})"
    )


def resolve_duration(duration: str | timedelta) -> timedelta:
    """Translate a named preset or timedelta into a positive duration."""
    if isinstance(duration, str):
        try:
            return DELEGATION_DURATIONS[duration]
        except KeyError as exc:
            raise ValueError(f"Unknown delegation duration: {duration}") from exc
    if duration <= timedelta(0):
        raise ValueError("Delegation duration must be positive")
    return duration


@dataclass(frozen=True)
class DelegationGrant:
    """A wallet-authorized delegated key held by this client."""

    wallet_address: str
    wallet_kind: WalletKind
    delegated_public_key: str
    delegated_private_key: str
    issued_at: int
    expires_at: int
    nonce: str
    authorizing_signature: str
    key_scheme: KeyScheme = KeyScheme.ED25519

    def is_valid_at(self, now_ms: int) -> bool:
        return self.issued_at <= now_ms < self.expires_at

    def proof(self) -> DelegationProof:
        """Return the publishable half of the grant."""
        return DelegationProof(
            wallet_address=self.wallet_address,
            wallet_kind=self.wallet_kind,
            delegated_public_key=self.delegated_public_key,
            issued_at=self.issued_at,
            expires_at=self.expires_at,
            nonce=self.nonce,
            authorizing_signature=self.authorizing_signature,
        )

    def to_record(self) -> DelegationRecord:
        return DelegationRecord(
            wallet_address=self.wallet_address,
            wallet_kind=self.wallet_kind.value,
            delegated_public_key=self.delegated_public_key,
            delegated_private_key=self.delegated_private_key,
            key_scheme=self.key_scheme.value,
            issued_at=self.issued_at,
            expires_at=self.expires_at,
            nonce=self.nonce,
            authorizing_signature=self.authorizing_signature,
        )

    @classmethod
    def from_record(cls, record: DelegationRecord) -> DelegationGrant:
        return cls(
            wallet_address=record.wallet_address,
            wallet_kind=WalletKind(record.wallet_kind),
            delegated_public_key=record.delegated_public_key,
            delegated_private_key=record.delegated_private_key,
            key_scheme=KeyScheme(record.key_scheme),
            issued_at=int(record.issued_at),
            expires_at=int(record.expires_at),
            nonce=record.nonce,
            authorizing_signature=record.authorizing_signature,
        )


@dataclass(frozen=True)
class DelegationStatus:
    """Summary of the local delegation for display."""

    has_delegation: bool
    is_valid: bool
    time_remaining_ms: int | None = None
    public_key: str | None = None
    address: str | None = None
    wallet_kind: WalletKind | None = None


class DelegationManager:
    """Owns the single active delegation grant of this client.

    Args:
        verifiers: Wallet signature verifiers used to check peers' proofs.
        repository: Optional persistence for the grant.
        clock: Time source; defaults to the system clock.
        sign_timeout_seconds: Bound on waiting for the wallet signature.
    """

    def __init__(
        self,
        verifiers: WalletVerifierRegistry,
        repository: DelegationRepository | None = None,
        clock: Clock | None = None,
        sign_timeout_seconds: float | None = None,
    ) -> None:
        self._verifiers = verifiers
        self._repository = repository
        self._clock = clock or SystemClock()
        self._sign_timeout = (
            sign_timeout_seconds
            if sign_timeout_seconds is not None
            else settings.wallet_sign_timeout_seconds
        )
        self._grant: DelegationGrant | None = None
        self._verified_proofs: set[tuple[str, ...]] = set()
        self._wallet_unsubscribe: Callable[[], None] | None = None
        if repository is not None:
            record = repository.load()
            if record is not None:
                self._grant = DelegationGrant.from_record(record)

    async def create_grant(
        self,
        wallet: WalletAdapter | None,
        duration: str | timedelta = "7days",
    ) -> DelegationGrant:
        """Ask ``wallet`` to authorize a fresh delegated key and store the grant.

        Raises:
            WalletUnavailableError: No wallet or no connected account.
            WalletSigningRejectedError: The wallet declined.
            WalletSigningTimeoutError: The wallet did not answer in time.
        """
        if wallet is None:
            raise WalletUnavailableError("No wallet adapter configured")
        account = wallet.get_account()
        if account is None:
            raise WalletUnavailableError("Wallet has no connected account")

        lifetime = resolve_duration(duration)
        private_hex, public_hex = CryptoService.generate_key_pair(KeyScheme.ED25519)
        issued_at = self._clock.now_ms()
        expires_at = issued_at + int(lifetime.total_seconds() * 1000)
        nonce = CryptoService.generate_nonce()
        auth_message = build_auth_message(account.address, public_hex, expires_at, nonce)

        try:
            signature = await asyncio.wait_for(wallet.sign(auth_message), self._sign_timeout)
        except TimeoutError as exc:
            raise WalletSigningTimeoutError(
                f"Wallet did not sign within {self._sign_timeout:.0f}s"
            ) from exc

        grant = DelegationGrant(
            wallet_address=account.address,
            wallet_kind=account.kind,
            delegated_public_key=public_hex,
            delegated_private_key=private_hex,
            issued_at=issued_at,
            expires_at=expires_at,
            nonce=nonce,
            authorizing_signature=signature,
        )
        self._grant = grant
        if self._repository is not None:
            self._repository.replace(grant.to_record())
        logger.info(
            "Created delegation for %s until %s", account.address, ms_to_iso(expires_at)
        )
        return grant

    def get_active_grant(self) -> DelegationGrant | None:
        """Return the current grant, clearing it if it has expired."""
        grant = self._grant
        if grant is None:
            return None
        if self._clock.now_ms() >= grant.expires_at:
            logger.info("Delegation for %s expired", grant.wallet_address)
            self._clear()
            return None
        return grant

    def revoke(self) -> None:
        """Drop the local grant immediately. Already published messages stay valid."""
        if self._grant is not None:
            logger.info("Revoking delegation for %s", self._grant.wallet_address)
        self._clear()

    def watch_wallet(self, wallet: WalletAdapter) -> Callable[[], None]:
        """Revoke the grant when ``wallet`` disconnects or switches account."""
        if self._wallet_unsubscribe is not None:
            self._wallet_unsubscribe()

        self._wallet_unsubscribe = wallet.on_change(self.reconcile)
        return self._wallet_unsubscribe

    def reconcile(self, account: WalletAccount | None) -> bool:
        """Revoke the grant unless it belongs to ``account``. Returns True if revoked."""
        grant = self._grant
        if grant is None:
            return False
        if account is not None and account.address == grant.wallet_address:
            return False
        self.revoke()
        return True

    def sign_with_delegation(self, message: Message) -> Message:
        """Sign ``message`` with the delegated key, attributing it to the wallet.

        Raises:
            NoValidDelegationError: No grant is active, or the message time
                falls outside the grant window.
        """
        grant = self.get_active_grant()
        if grant is None:
            raise NoValidDelegationError("No active delegation; authorize a key first")
        if not grant.is_valid_at(message.timestamp):
            raise NoValidDelegationError("Message timestamp falls outside the delegation window")
        return MessageCodec.sign_message(
            message,
            grant.delegated_private_key,
            grant.key_scheme,
            author=grant.wallet_address,
            proof=grant.proof(),
        )

    def verify_delegated_message(self, message: Message) -> None:
        """Check the wallet authorization and the delegated signature.

        Expiry is judged against the message's own timestamp, so a message
        signed before expiry and delivered late is still accepted.

        Raises:
            SignatureInvalidError: If either signature or any binding fails.
        """
        proof = message.delegation_proof
        if proof is None:
            raise SignatureInvalidError("Message carries no delegation proof")
        if proof.delegated_public_key != message.signer_public_key:
            raise SignatureInvalidError("Delegated key does not match signer key")
        if message.key_scheme != KeyScheme.ED25519:
            raise SignatureInvalidError("Delegated keys must use ed25519")
        if proof.wallet_address != message.author:
            raise SignatureInvalidError("Delegation wallet does not match author")
        if not proof.issued_at <= message.timestamp < proof.expires_at:
            raise SignatureInvalidError("Message timestamp is outside the delegation window")

        cache_key = (
            proof.wallet_kind.value,
            proof.wallet_address,
            proof.delegated_public_key,
            str(proof.expires_at),
            proof.nonce,
            proof.authorizing_signature,
        )
        if cache_key not in self._verified_proofs:
            try:
                auth_message = build_auth_message(
                    proof.wallet_address,
                    proof.delegated_public_key,
                    proof.expires_at,
                    proof.nonce,
                )
            except (OverflowError, ValueError, OSError) as exc:
                raise SignatureInvalidError(
                    f"Delegation expiry is not a valid time: {exc}"
                ) from exc
            if not self._verifiers.verify(
                proof.wallet_kind,
                auth_message,
                proof.authorizing_signature,
                proof.wallet_address,
            ):
                raise SignatureInvalidError("Wallet authorization signature is invalid")
            if len(self._verified_proofs) >= _PROOF_CACHE_LIMIT:
                self._verified_proofs.clear()
            self._verified_proofs.add(cache_key)

        if not CryptoService.verify(
            MessageCodec.encode(message),
            message.signature,
            message.signer_public_key,
            message.key_scheme,
        ):
            raise SignatureInvalidError("Delegated signature is invalid")

    def status(self) -> DelegationStatus:
        grant = self._grant
        if grant is None:
            return DelegationStatus(has_delegation=False, is_valid=False)
        now = self._clock.now_ms()
        valid = now < grant.expires_at
        return DelegationStatus(
            has_delegation=True,
            is_valid=valid,
            time_remaining_ms=max(0, grant.expires_at - now),
            public_key=grant.delegated_public_key,
            address=grant.wallet_address,
            wallet_kind=grant.wallet_kind,
        )

    def _clear(self) -> None:
        self._grant = None
        if self._repository is not None:
            self._repository.clear()
