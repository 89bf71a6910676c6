"""Signature utilities built on Ed25519 primitives."""
from __future__ import annotations

import binascii

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey


def verify_signature(pubkey_hex: str, message: bytes, signature_hex: str) -> bool:
    """Verify an Ed25519 signature.

    Args:
        pubkey_hex: Hex-encoded 32-byte public key.
        message: Exact bytes that were signed.
        signature_hex: Hex-encoded 64-byte signature.

    Returns:
        True if the signature is valid for `message` under `pubkey_hex`; False otherwise.
    """
    try:
        pubkey = VerifyKey(binascii.unhexlify(pubkey_hex))
        signature = binascii.unhexlify(signature_hex)
        pubkey.verify(message, signature)
        return True
    except (BadSignatureError, binascii.Error, ValueError, TypeError):
        return False


def sign_bytes(private_key_hex: str, message: bytes) -> str:
    """Sign raw bytes with a hex-encoded Ed25519 seed and return the hex signature."""
    signing_key = SigningKey(binascii.unhexlify(private_key_hex))
    return signing_key.sign(message).signature.hex()
