"""SQLAlchemy model for the local document cache."""

from typing import Any

from sqlalchemy import JSON, BigInteger, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from chorus_sync.db.session import Base


class DocumentRecord(Base):
    """A cached JSON document keyed by logical store and key.

    Stores: ``cells``, ``posts``, ``comments``, ``votes``, ``moderation``,
    ``profiles`` hold applied wire messages; ``meta`` holds counters.
    """

    __tablename__ = "sync_document"
    __table_args__ = (UniqueConstraint("store", "key", name="uq_sync_document_store_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    key: Mapped[str] = mapped_column(String(256), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
