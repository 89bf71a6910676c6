# src/chorus_sync/utils/hash.py
"""Hashing helpers built on BLAKE3."""

from __future__ import annotations

from blake3 import blake3


def blake3_hexdigest(data: bytes) -> str:
    """Return the hexadecimal digest of the supplied data."""
    return blake3(data).hexdigest()


def blake3_hexdigest_parts(*parts: bytes) -> str:
    """Hash several length-prefixed parts so boundaries cannot be shifted."""
    hasher = blake3()
    for part in parts:
        hasher.update(len(part).to_bytes(4, "big"))
        hasher.update(part)
    return hasher.hexdigest()
