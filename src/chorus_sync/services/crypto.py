# src/chorus_sync/services/crypto.py
"""Cryptographic services for Chorus sync."""

from __future__ import annotations

import secrets

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from chorus_sync.core.security import sign_bytes as sign_ed25519
from chorus_sync.core.security import verify_signature as verify_ed25519
from chorus_sync.schemas.messages import KeyScheme

PUBKEY_LENGTH_BYTES = 32
SECP256K1_SCALAR_BYTES = 32


class CryptoService:
    """Service handling cryptographic operations.

    Signature scheme selection is driven by the key's scheme tag, never by
    the chain of the wallet that authorized it.
    """

    @staticmethod
    def _decode_hex(data: str) -> bytes:
        try:
            return bytes.fromhex(data)
        except ValueError as err:
            raise ValueError(f"Invalid hex encoding: {err}") from err

    @staticmethod
    def generate_key_pair(scheme: KeyScheme = KeyScheme.ED25519) -> tuple[str, str]:
        """Generate a new key pair.

        Args:
            scheme: Signature scheme of the key pair.

        Returns:
            Tuple of (private_key_hex, public_key_hex)
        """
        if scheme == KeyScheme.SECP256K1:
            ec_key = ec.generate_private_key(ec.SECP256K1())
            private_hex = ec_key.private_numbers().private_value.to_bytes(
                SECP256K1_SCALAR_BYTES, "big"
            ).hex()
            return private_hex, CryptoService.public_key_from_private(private_hex, scheme)

        private_key = Ed25519PrivateKey.generate()
        private_hex = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        ).hex()
        public_hex = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        ).hex()
        return private_hex, public_hex

    @staticmethod
    def public_key_from_private(private_key_hex: str, scheme: KeyScheme) -> str:
        """Derive the hex public key for a hex private key."""
        raw = CryptoService._decode_hex(private_key_hex)
        if scheme == KeyScheme.SECP256K1:
            ec_key = ec.derive_private_key(int.from_bytes(raw, "big"), ec.SECP256K1())
            return ec_key.public_key().public_bytes(
                encoding=serialization.Encoding.X962,
                format=serialization.PublicFormat.CompressedPoint,
            ).hex()
        private_key = Ed25519PrivateKey.from_private_bytes(raw)
        return private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        ).hex()

    @staticmethod
    def sign(payload: bytes, private_key_hex: str, scheme: KeyScheme) -> str:
        """Sign ``payload`` and return a hex signature.

        Args:
            payload: Exact bytes to sign.
            private_key_hex: Hex private key (Ed25519 seed or secp256k1 scalar).
            scheme: Signature scheme of the key.

        Returns:
            Hex signature (raw 64 bytes for Ed25519, DER for secp256k1).
        """
        raw = CryptoService._decode_hex(private_key_hex)
        try:
            if scheme == KeyScheme.SECP256K1:
                ec_key = ec.derive_private_key(int.from_bytes(raw, "big"), ec.SECP256K1())
                return ec_key.sign(payload, ec.ECDSA(hashes.SHA256())).hex()
            return sign_ed25519(private_key_hex, payload)
        except ValueError as err:
            raise ValueError(f"Invalid private key: {err}") from err

    @staticmethod
    def verify(payload: bytes, signature_hex: str, public_key_hex: str, scheme: KeyScheme) -> bool:
        """Verify a hex signature over ``payload``.

        Returns:
            True if the signature is valid, False otherwise.
        """
        if scheme == KeyScheme.ED25519:
            return verify_ed25519(public_key_hex, payload, signature_hex)
        try:
            public_key = ec.EllipticCurvePublicKey.from_encoded_point(
                ec.SECP256K1(), bytes.fromhex(public_key_hex)
            )
            public_key.verify(bytes.fromhex(signature_hex), payload, ec.ECDSA(hashes.SHA256()))
            return True
        except (InvalidSignature, ValueError, TypeError):
            return False

    @staticmethod
    def generate_nonce() -> str:
        """Generate a cryptographically secure nonce.

        Returns:
            Hex-encoded nonce
        """
        return secrets.token_hex(16)
