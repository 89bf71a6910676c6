"""Gap detection and recovery bookkeeping.

Messages whose references are unknown are parked here, keyed by the id
they wait for. The detector decides when a history query for a missing id
is worth issuing and releases dependents, in arrival order, once the id
turns up. The sync engine owns the actual query tasks.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from chorus_sync.core.settings import settings
from chorus_sync.repositories import DocumentRepository
from chorus_sync.schemas.messages import Message
from chorus_sync.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

TOTAL_MISSING_COUNTER = "recovery.total_missing"
TOTAL_RECOVERED_COUNTER = "recovery.total_recovered"


@dataclass
class PendingDependent:
    message: Message
    seq: int
    received_at: float
    waiting_for: str


@dataclass(frozen=True)
class PermanentlyMissingReference:
    """A held message dropped because its reference never arrived."""

    message_id: str
    message_type: str
    missing_id: str
    waited_seconds: float


@dataclass(frozen=True)
class RecoveryCounters:
    missing: int
    recovered_this_session: int
    total_missing: int
    total_recovered: int
    permanently_missing: int
    held_messages: int


class GapDetector:
    """Tracks missing references and the messages that depend on them.

    Args:
        clock: Time source for cooldown and horizon checks.
        cooldown_seconds: Minimum spacing between queries for one id.
        horizon_seconds: How long a dependent may wait before it is dropped.
        max_inflight: Upper bound on concurrently running history queries.
        counters: Optional store for totals that survive restarts.
    """

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        cooldown_seconds: float | None = None,
        horizon_seconds: float | None = None,
        max_inflight: int | None = None,
        counters: DocumentRepository | None = None,
    ) -> None:
        self._clock = clock or SystemClock()
        self.cooldown_seconds = (
            cooldown_seconds if cooldown_seconds is not None else settings.recovery_cooldown_seconds
        )
        self.horizon_seconds = (
            horizon_seconds if horizon_seconds is not None else settings.recovery_horizon_seconds
        )
        self.max_inflight = max_inflight if max_inflight is not None else settings.recovery_max_inflight
        self._counters = counters

        self._pending: dict[str, list[PendingDependent]] = {}
        self._held_ids: set[str] = set()
        self._last_query: dict[str, float] = {}
        self._inflight: set[str] = set()
        self._seq = 0

        self._recovered_session = 0
        self._permanently_missing = 0
        self._total_missing = counters.get_counter(TOTAL_MISSING_COUNTER) if counters else 0
        self._total_recovered = counters.get_counter(TOTAL_RECOVERED_COUNTER) if counters else 0

    def next_seq(self) -> int:
        """Return an arrival sequence number for a newly received message."""
        self._seq += 1
        return self._seq

    def is_missing(self, entity_id: str) -> bool:
        return entity_id in self._pending

    def is_held(self, message_id: str) -> bool:
        return message_id in self._held_ids

    def hold(self, message: Message, missing: Iterable[str], seq: int) -> list[str]:
        """Park ``message`` until its first missing reference arrives.

        Returns:
            Missing ids for which a history query should start now.
        """
        missing = list(missing)
        if not missing:
            raise ValueError("hold() requires at least one missing reference")
        if message.id in self._held_ids:
            return []

        waiting_for = missing[0]
        if waiting_for not in self._pending:
            self._pending[waiting_for] = []
            self._total_missing += 1
            self._persist(TOTAL_MISSING_COUNTER, self._total_missing)
            logger.debug("Reference %s is missing", waiting_for)
        self._pending[waiting_for].append(
            PendingDependent(
                message=message,
                seq=seq,
                received_at=self._clock.monotonic(),
                waiting_for=waiting_for,
            )
        )
        self._held_ids.add(message.id)
        return self.claim_queries([waiting_for])

    def claim_queries(self, candidates: Iterable[str]) -> list[str]:
        """Mark queries as started for candidates that are due and fit the budget."""
        now = self._clock.monotonic()
        claimed: list[str] = []
        for entity_id in candidates:
            if entity_id not in self._pending or entity_id in self._inflight:
                continue
            if len(self._inflight) >= self.max_inflight:
                break
            last = self._last_query.get(entity_id)
            if last is not None and now - last < self.cooldown_seconds:
                continue
            self._last_query[entity_id] = now
            self._inflight.add(entity_id)
            claimed.append(entity_id)
        return claimed

    def due_queries(self) -> list[str]:
        """Claim queries for every missing id whose cooldown has elapsed."""
        return self.claim_queries(list(self._pending))

    def query_finished(self, entity_id: str) -> None:
        self._inflight.discard(entity_id)

    def is_inflight(self, entity_id: str) -> bool:
        return entity_id in self._inflight

    def release(self, entity_id: str) -> list[PendingDependent]:
        """Return dependents waiting for ``entity_id`` in arrival order."""
        dependents = self._pending.pop(entity_id, None)
        self._last_query.pop(entity_id, None)
        self._inflight.discard(entity_id)
        if dependents is None:
            return []
        self._recovered_session += 1
        self._total_recovered += 1
        self._persist(TOTAL_RECOVERED_COUNTER, self._total_recovered)
        for dependent in dependents:
            self._held_ids.discard(dependent.message.id)
        logger.debug("Reference %s resolved, releasing %d dependents", entity_id, len(dependents))
        return sorted(dependents, key=lambda dep: dep.seq)

    def expire(self) -> list[PermanentlyMissingReference]:
        """Drop dependents that waited longer than the horizon."""
        now = self._clock.monotonic()
        dropped: list[PermanentlyMissingReference] = []
        for entity_id in list(self._pending):
            keep: list[PendingDependent] = []
            for dependent in self._pending[entity_id]:
                waited = now - dependent.received_at
                if waited >= self.horizon_seconds:
                    self._held_ids.discard(dependent.message.id)
                    dropped.append(
                        PermanentlyMissingReference(
                            message_id=dependent.message.id,
                            message_type=dependent.message.type,
                            missing_id=entity_id,
                            waited_seconds=waited,
                        )
                    )
                else:
                    keep.append(dependent)
            if keep:
                self._pending[entity_id] = keep
            else:
                del self._pending[entity_id]
                self._last_query.pop(entity_id, None)
        if dropped:
            self._permanently_missing += len(dropped)
            logger.warning(
                "Dropped %d messages whose references never arrived", len(dropped)
            )
        return dropped

    def counters(self) -> RecoveryCounters:
        return RecoveryCounters(
            missing=len(self._pending),
            recovered_this_session=self._recovered_session,
            total_missing=self._total_missing,
            total_recovered=self._total_recovered,
            permanently_missing=self._permanently_missing,
            held_messages=len(self._held_ids),
        )

    def _persist(self, name: str, value: int) -> None:
        if self._counters is not None:
            self._counters.set_counter(name, value)
