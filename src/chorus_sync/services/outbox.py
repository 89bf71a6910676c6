"""Outbox for locally authored messages.

Entries move ``pending -> sending -> confirmed`` on the happy path. A
publish timeout has an unknown outcome, so the entry returns to
``pending`` and is retried with exponential backoff; an outright transport
failure parks it as ``failed`` and it goes back to ``pending`` once its
retry time arrives. A publish refused by an open circuit breaker never
reached the network and costs no attempt. Once the attempt budget is spent
the entry becomes ``abandoned`` and listeners are told. Confirmed entries
are pruned.

State changes are written to the repository from a worker thread. Writes
are coalesced per message id and always store the latest in-memory state.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from chorus_sync.core.errors import (
    CircuitOpenError,
    CodecError,
    PublishTimeoutError,
    TransportError,
)
from chorus_sync.core.settings import settings
from chorus_sync.repositories import OutboxRepository
from chorus_sync.schemas.messages import Message
from chorus_sync.services.codec import MessageCodec
from chorus_sync.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class OutboxStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    FAILED = "failed"
    CONFIRMED = "confirmed"
    ABANDONED = "abandoned"


@dataclass
class OutboxEntry:
    message: Message
    status: OutboxStatus = OutboxStatus.PENDING
    attempt_count: int = 0
    next_retry_at: float = 0.0
    last_error: str | None = None
    created_at: int = 0
    # Published without acknowledgement; waiting to observe it inbound.
    awaiting_observation: bool = False
    generation: int = 0

    @property
    def message_id(self) -> str:
        return self.message.id


@dataclass(frozen=True)
class PublishAck:
    """Result of a publish call. ``acknowledged`` is False for fire-and-forget transports."""

    acknowledged: bool


Publisher = Callable[[Message], Awaitable[PublishAck]]
EntryListener = Callable[[OutboxEntry], None]


class Outbox:
    """Buffers, sends and retries locally authored messages.

    Args:
        publisher: Coroutine function that publishes one message.
        repository: Optional persistence so entries survive restarts.
        clock: Time source for retry scheduling.
        rng: Random source for jitter.
    """

    def __init__(
        self,
        publisher: Publisher,
        *,
        repository: OutboxRepository | None = None,
        clock: Clock | None = None,
        base_backoff_seconds: float | None = None,
        max_backoff_seconds: float | None = None,
        jitter_ratio: float | None = None,
        max_attempts: int | None = None,
        tick_seconds: float | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._publisher = publisher
        self._repository = repository
        self._clock = clock or SystemClock()
        self.base_backoff_seconds = (
            base_backoff_seconds
            if base_backoff_seconds is not None
            else settings.outbox_base_backoff_seconds
        )
        self.max_backoff_seconds = (
            max_backoff_seconds
            if max_backoff_seconds is not None
            else settings.outbox_max_backoff_seconds
        )
        self.jitter_ratio = jitter_ratio if jitter_ratio is not None else settings.outbox_jitter_ratio
        self.max_attempts = max_attempts if max_attempts is not None else settings.outbox_max_attempts
        self.tick_seconds = tick_seconds if tick_seconds is not None else settings.outbox_tick_seconds
        self._rng = rng or random.Random()

        self._entries: dict[str, OutboxEntry] = {}
        self._connected = True
        self._abandoned_listeners: list[EntryListener] = []
        self._confirmed_listeners: list[EntryListener] = []
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._wake = asyncio.Event()
        self._flush_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        # Insertion-ordered set of message ids with unwritten changes.
        self._dirty: dict[str, None] = {}

    # -- lifecycle ---------------------------------------------------------------

    async def restore(self) -> list[OutboxEntry]:
        """Load persisted entries; anything caught mid-send goes back to pending."""
        if self._repository is None:
            return []
        restored: list[OutboxEntry] = []
        for record in await asyncio.to_thread(self._repository.load_all):
            try:
                message = MessageCodec.from_frame(record.frame)
                status = OutboxStatus(record.status)
            except (CodecError, ValueError):
                logger.error("Discarding unreadable outbox entry %s", record.message_id)
                self._dirty[record.message_id] = None
                continue
            if status in (OutboxStatus.SENDING, OutboxStatus.FAILED):
                status = OutboxStatus.PENDING
            entry = OutboxEntry(
                message=message,
                status=status,
                attempt_count=int(record.attempt_count),
                next_retry_at=0.0,
                last_error=record.last_error,
                created_at=int(record.created_at),
            )
            self._entries[entry.message_id] = entry
            self._persist(entry)
            restored.append(entry)
        await self.write_pending()
        if restored:
            logger.info("Restored %d outbox entries", len(restored))
        return sorted(restored, key=lambda entry: entry.created_at)

    async def start(self) -> None:
        """Start the background retry loop."""
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the background retry loop."""
        if self._task is None:
            return
        self._stopping.set()
        self._wake.set()
        await self._task
        self._task = None
        await self.write_pending()

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.flush()
            except (ValueError, TypeError, KeyError, AttributeError) as e:
                logger.error("Outbox encountered data processing error: %s", e, exc_info=True)
            await self.write_pending()
            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.tick_seconds)
            except TimeoutError:
                pass

    # -- queries -----------------------------------------------------------------

    @property
    def pending_count(self) -> int:
        """Entries still expected to be sent (everything but abandoned)."""
        return sum(
            1 for entry in self._entries.values() if entry.status != OutboxStatus.ABANDONED
        )

    def get(self, message_id: str) -> OutboxEntry | None:
        return self._entries.get(message_id)

    def entries(self) -> list[OutboxEntry]:
        return sorted(self._entries.values(), key=lambda entry: entry.created_at)

    def abandoned(self) -> list[OutboxEntry]:
        return [e for e in self.entries() if e.status == OutboxStatus.ABANDONED]

    def on_abandoned(self, listener: EntryListener) -> Callable[[], None]:
        return self._subscribe(self._abandoned_listeners, listener)

    def on_confirmed(self, listener: EntryListener) -> Callable[[], None]:
        return self._subscribe(self._confirmed_listeners, listener)

    # -- mutations ---------------------------------------------------------------

    def enqueue(self, message: Message) -> OutboxEntry:
        """Add a signed message. Re-enqueueing a known id returns the existing entry."""
        existing = self._entries.get(message.id)
        if existing is not None:
            return existing
        entry = OutboxEntry(message=message, created_at=self._clock.now_ms())
        self._entries[message.id] = entry
        self._persist(entry)
        self._wake.set()
        logger.debug("Queued %s %s", message.type, message.id)
        return entry

    def mark_observed(self, message_id: str) -> bool:
        """Confirm an entry because its message was seen on the inbound stream."""
        entry = self._entries.get(message_id)
        if entry is None:
            return False
        self._confirm(entry)
        return True

    def dismiss(self, message_id: str) -> bool:
        """Forget an abandoned entry."""
        entry = self._entries.get(message_id)
        if entry is None or entry.status != OutboxStatus.ABANDONED:
            return False
        del self._entries[message_id]
        self._persist(entry)
        return True

    def retry(self, message_id: str) -> bool:
        """Give an abandoned entry a fresh attempt budget."""
        entry = self._entries.get(message_id)
        if entry is None or entry.status != OutboxStatus.ABANDONED:
            return False
        entry.status = OutboxStatus.PENDING
        entry.attempt_count = 0
        entry.next_retry_at = 0.0
        entry.awaiting_observation = False
        self._persist(entry)
        self._wake.set()
        return True

    def set_connected(self, connected: bool) -> None:
        """React to connectivity changes reported by the transport."""
        if connected == self._connected:
            return
        self._connected = connected
        if not connected:
            reverted = 0
            for entry in self._entries.values():
                if entry.status == OutboxStatus.SENDING:
                    entry.status = OutboxStatus.PENDING
                    entry.awaiting_observation = False
                    entry.next_retry_at = 0.0
                    entry.generation += 1
                    self._persist(entry)
                    reverted += 1
            if reverted:
                logger.info("Connectivity lost; %d in-flight entries back to pending", reverted)
        else:
            self._wake.set()

    async def flush(self) -> int:
        """Send every entry that is due. Returns the number of publish attempts made."""
        attempts = 0
        async with self._flush_lock:
            now = self._clock.monotonic()
            self._requeue_failed(now)
            due = (
                [entry for entry in self.entries() if self._is_due(entry, now)]
                if self._connected
                else []
            )
            for entry in due:
                if not self._connected or self._stopping.is_set():
                    break
                if entry.message_id not in self._entries:
                    continue
                if entry.awaiting_observation and entry.attempt_count >= self.max_attempts:
                    self._abandon(entry, entry.last_error or "Never observed on the network")
                    continue
                if not await self._send(entry):
                    break
                attempts += 1
        await self.write_pending()
        return attempts

    async def write_pending(self) -> None:
        """Write queued state changes to the repository from a worker thread."""
        if self._repository is None:
            return
        async with self._write_lock:
            while self._dirty:
                batch = [(message_id, self._row_of(message_id)) for message_id in self._dirty]
                self._dirty.clear()
                try:
                    await asyncio.to_thread(self._write_rows, batch)
                except (SQLAlchemyError, OSError) as exc:
                    logger.error("Could not persist %d outbox entries: %s", len(batch), exc)
                    self._dirty.update((message_id, None) for message_id, _ in batch)
                    return

    # -- internals ---------------------------------------------------------------

    def _requeue_failed(self, now: float) -> None:
        for entry in self._entries.values():
            if entry.status == OutboxStatus.FAILED and entry.next_retry_at <= now:
                entry.status = OutboxStatus.PENDING
                self._persist(entry)

    def _is_due(self, entry: OutboxEntry, now: float) -> bool:
        if entry.next_retry_at > now:
            return False
        if entry.status == OutboxStatus.PENDING:
            return True
        return entry.status == OutboxStatus.SENDING and entry.awaiting_observation

    def backoff_delay(self, attempt_count: int) -> float:
        """Return the delay before retry number ``attempt_count``."""
        exponent = max(0, attempt_count - 1)
        delay = min(self.max_backoff_seconds, self.base_backoff_seconds * (2 ** exponent))
        if self.jitter_ratio:
            delay *= 1 + self._rng.uniform(-self.jitter_ratio, self.jitter_ratio)
        return max(0.0, min(self.max_backoff_seconds, delay))

    async def _send(self, entry: OutboxEntry) -> bool:
        """Publish one entry. Returns False when the publish was refused unsent."""
        entry.status = OutboxStatus.SENDING
        entry.awaiting_observation = False
        generation = entry.generation
        self._persist(entry)

        try:
            ack = await self._publisher(entry.message)
        except CircuitOpenError as exc:
            if not self._superseded(entry, generation):
                entry.status = OutboxStatus.PENDING
                entry.next_retry_at = self._clock.monotonic() + self.base_backoff_seconds
                self._persist(entry)
            logger.debug("Deferred %s: %s", entry.message_id, exc)
            return False
        except PublishTimeoutError as exc:
            if self._superseded(entry, generation):
                return True
            entry.attempt_count += 1
            entry.last_error = str(exc) or "Publish timed out"
            if entry.attempt_count >= self.max_attempts:
                self._abandon(entry, entry.last_error)
                return True
            entry.status = OutboxStatus.PENDING
            entry.next_retry_at = self._clock.monotonic() + self.backoff_delay(entry.attempt_count)
            logger.warning(
                "Publish of %s timed out (attempt %d/%d)",
                entry.message_id,
                entry.attempt_count,
                self.max_attempts,
            )
            self._persist(entry)
            return True
        except TransportError as exc:
            self._record_failure(entry, generation, str(exc))
            return True
        except Exception as exc:
            logger.error("Unexpected error publishing %s", entry.message_id, exc_info=True)
            self._record_failure(entry, generation, f"{type(exc).__name__}: {exc}")
            return True

        if entry.message_id not in self._entries or entry.status == OutboxStatus.CONFIRMED:
            return True
        if ack.acknowledged:
            self._confirm(entry)
            return True
        if self._superseded(entry, generation):
            return True
        entry.attempt_count += 1
        entry.awaiting_observation = True
        entry.next_retry_at = self._clock.monotonic() + self.backoff_delay(entry.attempt_count)
        self._persist(entry)
        return True

    def _record_failure(self, entry: OutboxEntry, generation: int, error: str) -> None:
        if self._superseded(entry, generation):
            return
        entry.attempt_count += 1
        entry.last_error = error
        if entry.attempt_count >= self.max_attempts:
            self._abandon(entry, error)
            return
        entry.status = OutboxStatus.FAILED
        entry.next_retry_at = self._clock.monotonic() + self.backoff_delay(entry.attempt_count)
        logger.warning("Publish of %s failed: %s", entry.message_id, error)
        self._persist(entry)

    def _superseded(self, entry: OutboxEntry, generation: int) -> bool:
        return (
            entry.generation != generation
            or entry.message_id not in self._entries
            or entry.status != OutboxStatus.SENDING
        )

    def _confirm(self, entry: OutboxEntry) -> None:
        entry.status = OutboxStatus.CONFIRMED
        entry.awaiting_observation = False
        self._entries.pop(entry.message_id, None)
        self._persist(entry)
        logger.debug("Confirmed %s", entry.message_id)
        for listener in list(self._confirmed_listeners):
            listener(entry)

    def _abandon(self, entry: OutboxEntry, reason: str) -> None:
        entry.status = OutboxStatus.ABANDONED
        entry.awaiting_observation = False
        entry.last_error = reason
        self._persist(entry)
        logger.warning(
            "Abandoned %s after %d attempts: %s", entry.message_id, entry.attempt_count, reason
        )
        for listener in list(self._abandoned_listeners):
            listener(entry)

    def _persist(self, entry: OutboxEntry) -> None:
        if self._repository is None:
            return
        self._dirty[entry.message_id] = None
        self._wake.set()

    def _row_of(self, message_id: str) -> dict[str, Any] | None:
        entry = self._entries.get(message_id)
        if entry is None:
            return None
        return {
            "message_id": entry.message_id,
            "message_type": entry.message.type,
            "frame": MessageCodec.to_frame(entry.message).decode("utf-8"),
            "status": entry.status.value,
            "attempt_count": entry.attempt_count,
            "next_retry_at": entry.next_retry_at,
            "last_error": entry.last_error,
            "created_at": entry.created_at,
        }

    def _write_rows(self, batch: list[tuple[str, dict[str, Any] | None]]) -> None:
        assert self._repository is not None
        for message_id, row in batch:
            if row is None:
                self._repository.remove(message_id)
            else:
                self._repository.save(**row)

    @staticmethod
    def _subscribe(listeners: list[EntryListener], listener: EntryListener) -> Callable[[], None]:
        listeners.append(listener)

        def unsubscribe() -> None:
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe
