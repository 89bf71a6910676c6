"""Data access helpers for persisted outbox entries."""
from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from chorus_sync.models import OutboxRecord

__all__ = ["OutboxRepository"]


class OutboxRepository:
    """Persist outbox entries so unsent actions survive a restart."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def save(
        self,
        *,
        message_id: str,
        message_type: str,
        frame: str,
        status: str,
        attempt_count: int,
        next_retry_at: float,
        last_error: str | None,
        created_at: int,
    ) -> None:
        """Insert or update the row for ``message_id``."""
        with self._session_factory() as db:
            record = db.execute(
                select(OutboxRecord).where(OutboxRecord.message_id == message_id)
            ).scalars().first()
            if record is None:
                record = OutboxRecord(message_id=message_id)
                db.add(record)
            record.message_type = message_type
            record.frame = frame
            record.status = status
            record.attempt_count = attempt_count
            record.next_retry_at = next_retry_at
            record.last_error = last_error
            record.created_at = created_at
            db.commit()

    def remove(self, message_id: str) -> None:
        """Delete the row for ``message_id``."""
        with self._session_factory() as db:
            db.execute(delete(OutboxRecord).where(OutboxRecord.message_id == message_id))
            db.commit()

    def load_all(self) -> list[OutboxRecord]:
        """Return every persisted entry in insertion order, detached from the session."""
        with self._session_factory() as db:
            rows = list(
                db.execute(select(OutboxRecord).order_by(OutboxRecord.id)).scalars()
            )
            db.expunge_all()
            return rows
