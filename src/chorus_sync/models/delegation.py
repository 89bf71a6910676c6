"""SQLAlchemy model for the locally held delegation grant."""

from sqlalchemy import VARCHAR, BigInteger, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from chorus_sync.db.session import Base


class DelegationRecord(Base):
    """The single active delegation grant of this client.

    The private key never leaves this table; only the proof fields are
    published with messages.
    """

    __tablename__ = "delegation_grant"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    wallet_address: Mapped[str] = mapped_column(VARCHAR(128), nullable=False)
    wallet_kind: Mapped[str] = mapped_column(VARCHAR(16), nullable=False)
    delegated_public_key: Mapped[str] = mapped_column(VARCHAR(128), nullable=False)
    delegated_private_key: Mapped[str] = mapped_column(VARCHAR(128), nullable=False)
    key_scheme: Mapped[str] = mapped_column(VARCHAR(16), nullable=False, default="ed25519")
    issued_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    nonce: Mapped[str] = mapped_column(VARCHAR(64), nullable=False)
    authorizing_signature: Mapped[str] = mapped_column(Text, nullable=False)
