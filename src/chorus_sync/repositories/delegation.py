"""Data access helpers for the delegation grant."""
from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from chorus_sync.models import DelegationRecord

__all__ = ["DelegationRepository"]

_GRANT_ROW_ID = 1


class DelegationRepository:
    """Store at most one delegation grant per client."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def load(self) -> DelegationRecord | None:
        """Return the stored grant row, detached, or None."""
        with self._session_factory() as db:
            record = db.execute(
                select(DelegationRecord).where(DelegationRecord.id == _GRANT_ROW_ID)
            ).scalars().first()
            if record is not None:
                db.expunge(record)
            return record

    def replace(self, record: DelegationRecord) -> None:
        """Replace any stored grant with ``record``."""
        record.id = _GRANT_ROW_ID
        with self._session_factory() as db:
            db.execute(delete(DelegationRecord))
            db.add(record)
            db.commit()

    def clear(self) -> None:
        """Remove the stored grant."""
        with self._session_factory() as db:
            db.execute(delete(DelegationRecord))
            db.commit()
