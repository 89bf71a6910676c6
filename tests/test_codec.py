# tests/test_codec.py
from __future__ import annotations

import json

import pytest
from support import START_MS, Signer

from chorus_sync.core.errors import CodecError, SignatureInvalidError
from chorus_sync.core.security import sign_bytes, verify_signature
from chorus_sync.schemas.messages import (
    CellMessage,
    DelegationProof,
    KeyScheme,
    PostMessage,
    VoteMessage,
    WalletKind,
)
from chorus_sync.services.codec import MessageCodec, canonical_json
from chorus_sync.services.crypto import CryptoService


def test_canonical_json_is_sorted_and_compact() -> None:
    assert canonical_json({"b": 1, "a": [1, 2], "c": "é"}) == '{"a":[1,2],"b":1,"c":"é"}'.encode()


@pytest.mark.parametrize("scheme", [KeyScheme.ED25519, KeyScheme.SECP256K1])
def test_crypto_sign_and_verify(scheme: KeyScheme) -> None:
    private_key, public_key = CryptoService.generate_key_pair(scheme)
    assert CryptoService.public_key_from_private(private_key, scheme) == public_key

    signature = CryptoService.sign(b"payload", private_key, scheme)
    assert CryptoService.verify(b"payload", signature, public_key, scheme)
    assert not CryptoService.verify(b"other", signature, public_key, scheme)
    assert not CryptoService.verify(b"payload", "zz", public_key, scheme)


def test_ed25519_helpers_interoperate() -> None:
    private_key, public_key = CryptoService.generate_key_pair()
    signature = sign_bytes(private_key, b"hello")
    assert verify_signature(public_key, b"hello", signature)
    assert CryptoService.sign(b"hello", private_key, KeyScheme.ED25519) == signature
    assert not verify_signature("not-hex", b"hello", signature)


def test_nonces_are_unique() -> None:
    assert CryptoService.generate_nonce() != CryptoService.generate_nonce()


def test_sign_message_fills_envelope(alice: Signer) -> None:
    message = alice.cell()
    assert message.author == alice.address
    assert message.signer_public_key == alice.address
    assert message.id == MessageCodec.derive_id(message)
    MessageCodec().verify_message(message)


def test_id_is_deterministic_per_signer_and_content(alice: Signer, bob: Signer) -> None:
    assert alice.cell("x").id == alice.cell("x").id
    assert alice.cell("x").id != alice.cell("y").id
    assert alice.cell("x").id != bob.cell("x").id
    assert alice.cell("x", ts=START_MS).id != alice.cell("x", ts=START_MS + 1).id


def test_frame_round_trip_preserves_message(alice: Signer) -> None:
    post = alice.post("cell-1")
    frame = MessageCodec.to_frame(post)
    assert MessageCodec().decode_and_verify(frame) == post


def test_tampered_content_is_rejected(alice: Signer) -> None:
    post = alice.post("cell-1")
    tampered = post.model_copy(update={"content": "something else"})
    with pytest.raises(SignatureInvalidError, match="id"):
        MessageCodec().verify_message(tampered)


def test_tampered_signature_is_rejected(alice: Signer, bob: Signer) -> None:
    post = alice.post("cell-1")
    forged = post.model_copy(update={"signature": bob.post("cell-1").signature})
    with pytest.raises(SignatureInvalidError):
        MessageCodec().verify_message(forged)


def test_author_must_match_signer_without_delegation(alice: Signer, bob: Signer) -> None:
    draft = VoteMessage(timestamp=START_MS, target_id="p", is_upvote=True)
    impersonated = MessageCodec.sign_message(
        draft, alice.private_key, KeyScheme.ED25519, author=bob.address
    )
    with pytest.raises(SignatureInvalidError, match="authored by its signer"):
        MessageCodec().verify_message(impersonated)


def test_unsigned_message_is_rejected() -> None:
    draft = CellMessage(timestamp=START_MS, name="general")
    with pytest.raises(SignatureInvalidError, match="not signed"):
        MessageCodec().verify_message(draft)


def test_secp256k1_session_keys_verify() -> None:
    signer = Signer(KeyScheme.SECP256K1)
    message = signer.cell()
    assert message.key_scheme == KeyScheme.SECP256K1
    MessageCodec().verify_message(message)


@pytest.mark.parametrize(
    "frame",
    [
        b"not json",
        b"[]",
        json.dumps({"type": "banana", "timestamp": 1}).encode(),
        json.dumps({"type": "post", "timestamp": 1}).encode(),
        json.dumps({"type": "vote", "timestamp": 1, "target_id": "x", "is_upvote": True,
                    "target_kind": "user"}).encode(),
    ],
)
def test_malformed_frames_raise_codec_error(frame: bytes) -> None:
    with pytest.raises(CodecError):
        MessageCodec.from_frame(frame)


def test_delegated_message_needs_a_verifier(alice: Signer) -> None:
    proof = DelegationProof(
        wallet_address="0xabc",
        wallet_kind=WalletKind.ETHEREUM,
        delegated_public_key=alice.public_key,
        issued_at=0,
        expires_at=START_MS * 2,
        nonce="n",
        authorizing_signature="sig",
    )
    message = MessageCodec.sign_message(
        PostMessage(timestamp=START_MS, cell_id="c", title="t", content="b"),
        alice.private_key,
        author="0xabc",
        proof=proof,
    )
    with pytest.raises(SignatureInvalidError, match="Delegated"):
        MessageCodec().verify_message(message)

    seen = []
    MessageCodec(delegation_verifier=seen.append).verify_message(message)
    assert seen == [message]
