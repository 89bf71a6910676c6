"""Wallet boundary: signing adapters and per-chain signature verifiers.

Chain-specific wallets live outside this package; they plug in through
``WalletAdapter`` for signing and ``WalletVerifier`` for checking
authorizations made by other users. ``SoftwareWallet`` is a local
secp256k1 wallet used for development nodes and tests.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from chorus_sync.core.errors import (
    WalletSigningRejectedError,
    WalletUnavailableError,
)
from chorus_sync.schemas.messages import KeyScheme, WalletKind
from chorus_sync.services.crypto import CryptoService
from chorus_sync.utils.hash import blake3_hexdigest

logger = logging.getLogger(__name__)

AccountListener = Callable[["WalletAccount | None"], None]


@dataclass(frozen=True)
class WalletAccount:
    """A connected wallet account."""

    address: str
    kind: WalletKind


class WalletAdapter(Protocol):
    """Capability interface of a chain wallet."""

    kind: WalletKind

    def get_account(self) -> WalletAccount | None: ...

    async def sign(self, message: str) -> str: ...

    def on_change(self, listener: AccountListener) -> Callable[[], None]: ...


class WalletVerifier(Protocol):
    """Checks a wallet signature over a text message."""

    def verify_signature(self, message: str, signature: str, address: str) -> bool: ...


class WalletVerifierRegistry:
    """Maps wallet kinds to the verifier responsible for them."""

    def __init__(self) -> None:
        self._verifiers: dict[WalletKind, WalletVerifier] = {}

    def register(self, kind: WalletKind, verifier: WalletVerifier) -> None:
        self._verifiers[kind] = verifier

    def verify(self, kind: WalletKind, message: str, signature: str, address: str) -> bool:
        """Return True when the verifier for ``kind`` accepts the signature."""
        verifier = self._verifiers.get(kind)
        if verifier is None:
            logger.debug("No wallet verifier registered for %s", kind.value)
            return False
        return verifier.verify_signature(message, signature, address)

    @classmethod
    def with_software_verifiers(cls) -> WalletVerifierRegistry:
        """Return a registry that understands ``SoftwareWallet`` signatures for every kind."""
        registry = cls()
        for kind in WalletKind:
            registry.register(kind, SoftwareWalletVerifier(kind))
        return registry


def software_address(public_key_hex: str, kind: WalletKind) -> str:
    """Derive the address a software wallet key commits to."""
    digest = blake3_hexdigest(bytes.fromhex(public_key_hex))
    if kind == WalletKind.ETHEREUM:
        return "0x" + digest[:40]
    return "bc1q" + digest[:38]


class SoftwareWallet:
    """Local secp256k1 wallet.

    Signatures have the form ``<public key hex>:<DER signature hex>`` so a
    verifier can recover the key and check it against the address.
    """

    def __init__(self, kind: WalletKind, private_key_hex: str | None = None) -> None:
        self.kind = kind
        if private_key_hex is None:
            private_key_hex, _ = CryptoService.generate_key_pair(KeyScheme.SECP256K1)
        self._private_key_hex = private_key_hex
        self._public_key_hex = CryptoService.public_key_from_private(
            private_key_hex, KeyScheme.SECP256K1
        )
        self._connected = True
        self._listeners: list[AccountListener] = []
        self.reject_requests = False
        self.response_delay_seconds = 0.0

    @property
    def address(self) -> str:
        return software_address(self._public_key_hex, self.kind)

    def get_account(self) -> WalletAccount | None:
        if not self._connected:
            return None
        return WalletAccount(address=self.address, kind=self.kind)

    async def sign(self, message: str) -> str:
        if not self._connected:
            raise WalletUnavailableError("Wallet is disconnected")
        if self.response_delay_seconds:
            await asyncio.sleep(self.response_delay_seconds)
        if self.reject_requests:
            raise WalletSigningRejectedError("User rejected the signature request")
        signature = CryptoService.sign(
            message.encode("utf-8"), self._private_key_hex, KeyScheme.SECP256K1
        )
        return f"{self._public_key_hex}:{signature}"

    def on_change(self, listener: AccountListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def disconnect(self) -> None:
        """Simulate the user disconnecting the wallet."""
        self._connected = False
        self._notify(None)

    def switch_account(self, private_key_hex: str | None = None) -> None:
        """Simulate the user switching to another account."""
        if private_key_hex is None:
            private_key_hex, _ = CryptoService.generate_key_pair(KeyScheme.SECP256K1)
        self._private_key_hex = private_key_hex
        self._public_key_hex = CryptoService.public_key_from_private(
            private_key_hex, KeyScheme.SECP256K1
        )
        self._connected = True
        self._notify(self.get_account())

    def _notify(self, account: WalletAccount | None) -> None:
        for listener in list(self._listeners):
            listener(account)


class SoftwareWalletVerifier:
    """Verifies ``SoftwareWallet`` signatures for one wallet kind."""

    def __init__(self, kind: WalletKind) -> None:
        self.kind = kind

    def verify_signature(self, message: str, signature: str, address: str) -> bool:
        public_key_hex, sep, signature_hex = signature.partition(":")
        if not sep or not public_key_hex or not signature_hex:
            return False
        try:
            if software_address(public_key_hex, self.kind) != address:
                return False
        except ValueError:
            return False
        return CryptoService.verify(
            message.encode("utf-8"), signature_hex, public_key_hex, KeyScheme.SECP256K1
        )
