"""Wire message schemas.

Every forum action travels as one of the message models below. Models are
frozen: signing produces a new instance via ``model_copy``.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

# Last millisecond of year 9999; later times cannot be rendered as dates.
MAX_TIMESTAMP_MS = 253_402_300_799_999


class MessageType(str, Enum):
    """Tag of a wire message variant."""

    CELL = "cell"
    POST = "post"
    COMMENT = "comment"
    VOTE = "vote"
    MODERATE = "moderate"
    USER_PROFILE_UPDATE = "user_profile_update"


class KeyScheme(str, Enum):
    """Signature scheme of the key that signed a message."""

    ED25519 = "ed25519"
    SECP256K1 = "secp256k1"


class WalletKind(str, Enum):
    """Chain family of a wallet that authorizes delegated keys."""

    BITCOIN = "bitcoin"
    ETHEREUM = "ethereum"


class TargetKind(str, Enum):
    """Kind of entity a vote or moderation action points at."""

    POST = "post"
    COMMENT = "comment"
    USER = "user"


class ModerationActionKind(str, Enum):
    MODERATE = "moderate"
    UNMODERATE = "unmoderate"


class DisplayPreference(str, Enum):
    CALL_SIGN = "call-sign"
    WALLET_ADDRESS = "wallet-address"


class DelegationProof(BaseModel):
    """Public half of a delegation grant, attached to delegated messages."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    wallet_address: str = Field(..., min_length=1)
    wallet_kind: WalletKind
    delegated_public_key: str = Field(..., min_length=1)
    issued_at: int = Field(..., ge=0, le=MAX_TIMESTAMP_MS)
    expires_at: int = Field(..., ge=0, le=MAX_TIMESTAMP_MS)
    nonce: str = Field(..., min_length=1)
    authorizing_signature: str = Field(..., min_length=1)


class MessageBase(BaseModel):
    """Fields common to every wire message.

    ``id``, ``author``, ``signer_public_key``, ``signature`` and
    ``delegation_proof`` are filled in when the message is signed.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = ""
    timestamp: int = Field(
        ..., ge=0, le=MAX_TIMESTAMP_MS, description="Author-claimed time in milliseconds"
    )
    author: str = ""
    signer_public_key: str = ""
    key_scheme: KeyScheme = KeyScheme.ED25519
    signature: str = ""
    delegation_proof: DelegationProof | None = None

    def dependencies(self) -> tuple[str, ...]:
        """Return ids this message refers to and cannot be folded without."""
        return ()

    def lww_key(self) -> str | None:
        """Return the last-write-wins slot this message competes for, if any."""
        return None


class CellMessage(MessageBase):
    type: Literal["cell"] = "cell"
    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=5000)
    icon: str | None = None


class PostMessage(MessageBase):
    type: Literal["post"] = "post"
    cell_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=300)
    content: str = Field(..., min_length=1, max_length=40000)

    def dependencies(self) -> tuple[str, ...]:
        return (self.cell_id,)


class CommentMessage(MessageBase):
    type: Literal["comment"] = "comment"
    post_id: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1, max_length=10000)

    def dependencies(self) -> tuple[str, ...]:
        return (self.post_id,)


class VoteMessage(MessageBase):
    type: Literal["vote"] = "vote"
    target_id: str = Field(..., min_length=1)
    target_kind: TargetKind = TargetKind.POST
    is_upvote: bool

    @model_validator(mode="after")
    def _target_is_content(self) -> VoteMessage:
        if self.target_kind == TargetKind.USER:
            raise ValueError("votes target posts or comments only")
        return self

    def dependencies(self) -> tuple[str, ...]:
        return (self.target_id,)

    def lww_key(self) -> str:
        return f"{self.target_id}:{self.author}"


class ModerateMessage(MessageBase):
    type: Literal["moderate"] = "moderate"
    cell_id: str = Field(..., min_length=1)
    target_id: str = Field(..., min_length=1)
    target_kind: TargetKind
    action: ModerationActionKind = ModerationActionKind.MODERATE
    reason: str | None = Field(default=None, max_length=1000)

    def dependencies(self) -> tuple[str, ...]:
        if self.target_kind == TargetKind.USER:
            return (self.cell_id,)
        return (self.cell_id, self.target_id)

    def lww_key(self) -> str:
        return f"{self.cell_id}:{self.target_kind.value}:{self.target_id}"


class ProfileUpdateMessage(MessageBase):
    type: Literal["user_profile_update"] = "user_profile_update"
    call_sign: str | None = Field(default=None, max_length=64)
    display_preference: DisplayPreference = DisplayPreference.WALLET_ADDRESS

    def lww_key(self) -> str:
        return self.author


Message = Annotated[
    Union[
        CellMessage,
        PostMessage,
        CommentMessage,
        VoteMessage,
        ModerateMessage,
        ProfileUpdateMessage,
    ],
    Field(discriminator="type"),
]

MESSAGE_ADAPTER: TypeAdapter[Message] = TypeAdapter(Message)

__all__ = [
    "CellMessage",
    "CommentMessage",
    "DelegationProof",
    "DisplayPreference",
    "KeyScheme",
    "MESSAGE_ADAPTER",
    "Message",
    "MessageBase",
    "MessageType",
    "ModerateMessage",
    "ModerationActionKind",
    "PostMessage",
    "ProfileUpdateMessage",
    "TargetKind",
    "VoteMessage",
    "WalletKind",
]
