"""SQLAlchemy model for locally authored messages awaiting confirmation."""

from sqlalchemy import VARCHAR, BigInteger, Integer, SmallInteger, Text
from sqlalchemy.orm import Mapped, mapped_column

from chorus_sync.db.session import Base


class OutboxRecord(Base):
    """Persisted outbox entry wrapping a signed wire frame."""

    __tablename__ = "outbox_entry"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(VARCHAR(64), unique=True, nullable=False)
    message_type: Mapped[str] = mapped_column(VARCHAR(32), nullable=False)
    frame: Mapped[str] = mapped_column(Text, nullable=False)  # canonical JSON frame
    status: Mapped[str] = mapped_column(
        VARCHAR(20), nullable=False, default="pending"
    )  # 'pending', 'sending', 'failed', 'abandoned'
    attempt_count: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    next_retry_at: Mapped[float] = mapped_column(nullable=False, default=0.0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
