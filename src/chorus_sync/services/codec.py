"""Canonical encoding, identity and signature checks for wire messages."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

from chorus_sync.core.errors import CodecError, SignatureInvalidError
from chorus_sync.schemas.messages import (
    MESSAGE_ADAPTER,
    DelegationProof,
    KeyScheme,
    Message,
)
from chorus_sync.services.crypto import CryptoService
from chorus_sync.utils.hash import blake3_hexdigest, blake3_hexdigest_parts


# Fields that describe who signed and how, rather than what was said.
_ENVELOPE_FIELDS = frozenset(
    {"id", "signature", "signer_public_key", "key_scheme", "delegation_proof", "timestamp"}
)

DelegationVerifier = Callable[[Message], None]


def canonical_json(data: dict[str, Any]) -> bytes:
    """Serialize ``data`` deterministically: sorted keys, no whitespace, UTF-8."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode(
        "utf-8"
    )


class MessageCodec:
    """Encode, sign, identify and verify wire messages.

    Args:
        delegation_verifier: Callable that validates a message carrying a
            delegation proof, raising ``SignatureInvalidError`` on failure.
            Without one, delegated messages are always rejected.
    """

    def __init__(self, delegation_verifier: DelegationVerifier | None = None) -> None:
        self._delegation_verifier = delegation_verifier

    @staticmethod
    def encode(message: Message) -> bytes:
        """Return the canonical signing payload: every field except ``signature``."""
        data = message.model_dump(mode="json", exclude_none=True, exclude={"signature"})
        return canonical_json(data)

    @staticmethod
    def content_hash(message: Message) -> str:
        """Hash of the message type, author and variant payload."""
        data = message.model_dump(mode="json", exclude_none=True, exclude=set(_ENVELOPE_FIELDS))
        return blake3_hexdigest(canonical_json(data))

    @staticmethod
    def derive_id(message: Message) -> str:
        """Deterministic id from signer key, content hash and timestamp."""
        return blake3_hexdigest_parts(
            message.signer_public_key.encode("utf-8"),
            MessageCodec.content_hash(message).encode("ascii"),
            str(message.timestamp).encode("ascii"),
        )

    @staticmethod
    def sign(encoded: bytes, private_key_hex: str, scheme: KeyScheme) -> str:
        return CryptoService.sign(encoded, private_key_hex, scheme)

    @staticmethod
    def verify(encoded: bytes, signature: str, public_key: str, scheme: KeyScheme) -> bool:
        return CryptoService.verify(encoded, signature, public_key, scheme)

    @staticmethod
    def sign_message(
        message: Message,
        private_key_hex: str,
        scheme: KeyScheme = KeyScheme.ED25519,
        *,
        author: str | None = None,
        proof: DelegationProof | None = None,
    ) -> Message:
        """Fill the envelope fields of ``message`` and sign it.

        Args:
            message: Draft message carrying timestamp and payload.
            private_key_hex: Hex private key of the signing key.
            scheme: Scheme of the signing key.
            author: Address to attribute the message to. Defaults to the
                signing public key.
            proof: Delegation proof to attach.

        Returns:
            A new, fully signed message.
        """
        public_hex = CryptoService.public_key_from_private(private_key_hex, scheme)
        draft = message.model_copy(
            update={
                "id": "",
                "signature": "",
                "author": author or public_hex,
                "signer_public_key": public_hex,
                "key_scheme": scheme,
                "delegation_proof": proof,
            }
        )
        draft = draft.model_copy(update={"id": MessageCodec.derive_id(draft)})
        signature = MessageCodec.sign(MessageCodec.encode(draft), private_key_hex, scheme)
        return draft.model_copy(update={"signature": signature})

    @staticmethod
    def to_frame(message: Message) -> bytes:
        """Serialize a signed message for the transport."""
        return canonical_json(message.model_dump(mode="json", exclude_none=True))

    @staticmethod
    def from_frame(frame: bytes | str) -> Message:
        """Parse a transport frame.

        Raises:
            CodecError: If the frame is not a well-formed message.
        """
        try:
            raw = json.loads(frame)
            return MESSAGE_ADAPTER.validate_python(raw)
        except (ValueError, RecursionError) as exc:
            raise CodecError(f"Malformed frame: {exc}") from exc

    def verify_message(self, message: Message) -> None:
        """Check id derivation, authorship rules and signatures.

        Raises:
            SignatureInvalidError: If any check fails.
        """
        if not message.signature or not message.signer_public_key:
            raise SignatureInvalidError("Message is not signed")
        if message.id != self.derive_id(message):
            raise SignatureInvalidError("Message id does not match its content")

        if message.delegation_proof is not None:
            if self._delegation_verifier is None:
                raise SignatureInvalidError("Delegated messages are not accepted here")
            self._delegation_verifier(message)
            return

        if message.author != message.signer_public_key:
            raise SignatureInvalidError("Undelegated message must be authored by its signer")
        if not self.verify(
            self.encode(message), message.signature, message.signer_public_key, message.key_scheme
        ):
            raise SignatureInvalidError("Message signature is invalid")

    def decode_and_verify(self, frame: bytes | str) -> Message:
        """Parse and verify a frame; raises ``CodecError`` or ``SignatureInvalidError``."""
        message = self.from_frame(frame)
        self.verify_message(message)
        return message
