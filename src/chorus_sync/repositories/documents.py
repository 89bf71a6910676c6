"""Data access helpers for the local document cache."""
from __future__ import annotations

from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from chorus_sync.models import DocumentRecord

__all__ = ["DocumentRepository", "META_STORE", "MESSAGE_STORES"]

META_STORE = "meta"
MESSAGE_STORES = ("cells", "posts", "comments", "votes", "moderation", "profiles")


class DocumentRepository:
    """Thin wrapper around the ``sync_document`` table."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        """Initialize the repository with a session factory."""
        self._session_factory = session_factory

    def put(self, store: str, key: str, payload: dict[str, Any], updated_at: int = 0) -> None:
        """Insert or replace the document stored under ``store``/``key``."""
        with self._session_factory() as db:
            record = db.execute(
                select(DocumentRecord).where(
                    DocumentRecord.store == store,
                    DocumentRecord.key == key,
                )
            ).scalars().first()
            if record is None:
                db.add(DocumentRecord(store=store, key=key, payload=payload, updated_at=updated_at))
            else:
                record.payload = payload
                record.updated_at = updated_at
            db.commit()

    def get(self, store: str, key: str) -> dict[str, Any] | None:
        """Return a document payload or None."""
        with self._session_factory() as db:
            record = db.execute(
                select(DocumentRecord).where(
                    DocumentRecord.store == store,
                    DocumentRecord.key == key,
                )
            ).scalars().first()
            return dict(record.payload) if record is not None else None

    def list_all(self, store: str) -> list[dict[str, Any]]:
        """Return every payload in ``store`` ordered by update time then key."""
        with self._session_factory() as db:
            rows = db.execute(
                select(DocumentRecord)
                .where(DocumentRecord.store == store)
                .order_by(DocumentRecord.updated_at, DocumentRecord.key)
            ).scalars()
            return [dict(row.payload) for row in rows]

    def delete(self, store: str, key: str) -> None:
        """Remove a document if present."""
        with self._session_factory() as db:
            db.execute(
                delete(DocumentRecord).where(
                    DocumentRecord.store == store,
                    DocumentRecord.key == key,
                )
            )
            db.commit()

    def get_counter(self, name: str) -> int:
        """Return a persisted integer counter from the meta store."""
        payload = self.get(META_STORE, name)
        if payload is None:
            return 0
        return int(payload.get("value", 0))

    def set_counter(self, name: str, value: int) -> None:
        """Persist an integer counter in the meta store."""
        self.put(META_STORE, name, {"value": int(value)})
