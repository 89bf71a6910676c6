"""Sync engine: wires transport, verification, recovery, reducer and outbox.

``SyncEngine`` is an explicitly constructed context object. It owns the
single serialized apply loop; the inbound pump, recovery queries and local
confirmations all feed that loop through one queue.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from chorus_sync.core.errors import (
    PermissionDeniedError,
    TransportError,
    UnauthorizedActionError,
)
from chorus_sync.core.settings import settings
from chorus_sync.repositories import (
    MESSAGE_STORES,
    DelegationRepository,
    DocumentRepository,
    OutboxRepository,
)
from chorus_sync.schemas.messages import (
    MESSAGE_ADAPTER,
    CellMessage,
    CommentMessage,
    DisplayPreference,
    Message,
    ModerateMessage,
    ModerationActionKind,
    PostMessage,
    ProfileUpdateMessage,
    TargetKind,
    VoteMessage,
)
from chorus_sync.services.codec import MessageCodec
from chorus_sync.services.crypto import CryptoService
from chorus_sync.services.delegation import DelegationGrant, DelegationManager
from chorus_sync.services.identity import (
    NameResolver,
    UserIdentity,
    UserIdentityService,
    VerificationTier,
)
from chorus_sync.services.outbox import Outbox, OutboxEntry
from chorus_sync.services.permissions import PermissionEngine
from chorus_sync.services.recovery import GapDetector, PermanentlyMissingReference
from chorus_sync.services.reducer import (
    ApplyOutcome,
    ApplyResult,
    CellEntity,
    CommentEntity,
    PostEntity,
    StateReducer,
)
from chorus_sync.services.relevance import RelevanceScorer, ScoredItem
from chorus_sync.services.transport import Transport, TransportGateway
from chorus_sync.services.wallet import WalletAccount, WalletAdapter, WalletVerifierRegistry
from chorus_sync.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

_STORE_BY_TYPE = {
    "cell": "cells",
    "post": "posts",
    "comment": "comments",
    "vote": "votes",
    "moderate": "moderation",
    "user_profile_update": "profiles",
}

_PERMANENT_LOG_LIMIT = 100


class MessageSource(str, Enum):
    LIVE = "live"
    HISTORY = "history"
    LOCAL = "local"


@dataclass(frozen=True)
class _Inbound:
    message: Message
    source: MessageSource


@dataclass(frozen=True)
class SyncStatus:
    """Observability snapshot of the engine."""

    missing: int
    recovered_this_session: int
    total_missing: int
    total_recovered: int
    permanently_missing: int
    held_messages: int
    outbox_pending: int
    outbox_abandoned: int
    connected: bool
    dropped_invalid: int
    last_sync_ms: int | None


class SyncEngine:
    """Local-first sync engine for one forum client.

    Args:
        transport: Raw frame transport (memory relay, HTTP relay, ...).
        session_factory: SQLAlchemy session factory for the local cache.
            Without one, state lives only in memory.
        wallet: Optional wallet adapter used to authorize delegated keys.
        verifiers: Wallet verifiers for peers' delegation proofs.
        resolver: Name-service lookups for identity tiers.
        clock: Time source shared by every component.
        anonymous_session: Sign with an ephemeral session key when no
            delegation is active.
        permission_tiers: Overrides for the minimum tiers, keyed by
            ``PermissionEngine`` argument name.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        session_factory: sessionmaker[Session] | None = None,
        wallet: WalletAdapter | None = None,
        verifiers: WalletVerifierRegistry | None = None,
        resolver: NameResolver | None = None,
        clock: Clock | None = None,
        anonymous_session: bool = False,
        publish_timeout_seconds: float | None = None,
        reconnect_delay_seconds: float | None = None,
        outbox_options: dict[str, float] | None = None,
        recovery_options: dict[str, float] | None = None,
        permission_tiers: dict[str, VerificationTier] | None = None,
    ) -> None:
        self.clock = clock or SystemClock()
        self.wallet = wallet
        self.documents = DocumentRepository(session_factory) if session_factory else None

        self.verifiers = verifiers or WalletVerifierRegistry.with_software_verifiers()
        self.delegation = DelegationManager(
            self.verifiers,
            DelegationRepository(session_factory) if session_factory else None,
            clock=self.clock,
        )
        self.codec = MessageCodec(delegation_verifier=self.delegation.verify_delegated_message)
        self.gateway = TransportGateway(
            transport,
            self.codec,
            publish_timeout_seconds=publish_timeout_seconds,
            reconnect_delay_seconds=reconnect_delay_seconds,
        )
        self.reducer = StateReducer()
        self.detector = GapDetector(
            clock=self.clock, counters=self.documents, **(recovery_options or {})
        )
        self.outbox = Outbox(
            self.gateway.publish,
            repository=OutboxRepository(session_factory) if session_factory else None,
            clock=self.clock,
            **(outbox_options or {}),
        )
        self.identity = UserIdentityService(self.reducer, resolver, clock=self.clock)
        self.permissions = PermissionEngine(self.reducer, **(permission_tiers or {}))
        self.scorer = RelevanceScorer()

        self._session_key: tuple[str, str] | None = (
            CryptoService.generate_key_pair() if anonymous_session else None
        )
        self._queue: asyncio.Queue[_Inbound] = asyncio.Queue()
        self._tasks: list[asyncio.Task[None]] = []
        self._recovery_tasks: dict[str, asyncio.Task[None]] = {}
        self._unsubscribers: list[Callable[[], None]] = []
        self._permanently_missing: deque[PermanentlyMissingReference] = deque(
            maxlen=_PERMANENT_LOG_LIMIT
        )
        self._last_sync_ms: int | None = None
        self._disconnected_at_ms: int | None = None
        self._running = False

    # -- lifecycle ---------------------------------------------------------------

    async def init(self) -> None:
        """Hydrate from the local cache, connect and start background tasks."""
        if self._running:
            return
        if self.documents is not None:
            hydrated = await asyncio.to_thread(self._hydrate)
            logger.info("Hydrated %d messages from the local cache", hydrated)
        await self.outbox.restore()

        self._unsubscribers.append(self.outbox.on_confirmed(self._on_outbox_confirmed))
        self._unsubscribers.append(self.gateway.on_connectivity_change(self._on_connectivity))
        if self.wallet is not None:
            account = self.wallet.get_account()
            if self.delegation.reconcile(account):
                logger.info("Stored delegation does not match the connected wallet; revoked")
            self.identity.set_local_wallet(account)
            self._unsubscribers.append(self.delegation.watch_wallet(self.wallet))
            self._unsubscribers.append(self.wallet.on_change(self._on_wallet_change))

        await self.gateway.connect()
        self._running = True
        self._tasks = [
            asyncio.create_task(self._apply_loop(), name="chorus-sync-apply"),
            asyncio.create_task(self._pump_inbound(), name="chorus-sync-inbound"),
            asyncio.create_task(self._sweep_recovery(), name="chorus-sync-recovery"),
        ]
        await self.outbox.start()

    async def shutdown(self) -> None:
        """Stop background work and release the transport."""
        if not self._running:
            return
        self._running = False
        await self.outbox.stop()
        for task in list(self._recovery_tasks.values()):
            task.cancel()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(
            *self._tasks, *self._recovery_tasks.values(), return_exceptions=True
        )
        self._tasks = []
        self._recovery_tasks.clear()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        await self.gateway.close()

    async def wait_until_idle(self, timeout: float = 5.0) -> None:
        """Wait until queued messages and recovery queries have been processed."""

        async def _settle() -> None:
            while True:
                await self._queue.join()
                pending = [t for t in self._recovery_tasks.values() if not t.done()]
                if not pending and self._queue.empty():
                    return
                await asyncio.gather(*pending, return_exceptions=True)

        await asyncio.wait_for(_settle(), timeout)

    def _hydrate(self) -> int:
        assert self.documents is not None
        count = 0
        for store in MESSAGE_STORES:
            for payload in self.documents.list_all(store):
                message = MESSAGE_ADAPTER.validate_python(payload)
                result = self.reducer.apply(message)
                if result.outcome == ApplyOutcome.MISSING_DEPENDENCY:
                    # Queries start from the sweeper once the engine is running.
                    seq = self.detector.next_seq()
                    for entity_id in self.detector.hold(message, result.missing, seq):
                        self.detector.query_finished(entity_id)
                elif result.recorded:
                    count += 1
        return count

    # -- background tasks --------------------------------------------------------

    async def _apply_loop(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self._process(item)
            except (ValueError, TypeError, KeyError, AttributeError) as e:
                logger.error("Apply loop encountered data processing error: %s", e, exc_info=True)
            except Exception as e:
                logger.error("Apply loop failed on %s: %s", item.message.id, e, exc_info=True)
            finally:
                self._queue.task_done()

    async def _pump_inbound(self) -> None:
        async for message in self.gateway.inbound():
            await self._queue.put(_Inbound(message, MessageSource.LIVE))

    async def _sweep_recovery(self) -> None:
        interval = max(0.05, float(settings.recovery_sweep_seconds))
        while True:
            await asyncio.sleep(interval)
            self.sweep()

    def sweep(self) -> list[PermanentlyMissingReference]:
        """Expire stale dependents and retry queries whose cooldown elapsed."""
        dropped = self.detector.expire()
        self._permanently_missing.extend(dropped)
        for entity_id in self.detector.due_queries():
            self._start_recovery(entity_id)
        return dropped

    def _start_recovery(self, entity_id: str, start_ms: int | None = None) -> None:
        if not self._running:
            self.detector.query_finished(entity_id)
            return
        task = asyncio.create_task(self._recover(entity_id, start_ms))
        self._recovery_tasks[entity_id] = task

    async def _recover(self, entity_id: str, start_ms: int | None) -> None:
        now = self.clock.now_ms()
        lookback_ms = int(settings.recovery_lookback_seconds * 1000)
        start = start_ms if start_ms is not None else max(0, now - lookback_ms)
        # Catch-up queries run to completion; gap queries stop once resolved.
        targeted = start_ms is None
        try:
            async for message in self.gateway.query_history(start, now):
                if targeted and not self.detector.is_missing(entity_id):
                    logger.debug("Reference %s resolved elsewhere; abandoning query", entity_id)
                    break
                if not self.reducer.has_applied(message.id):
                    await self._queue.put(_Inbound(message, MessageSource.HISTORY))
        except TransportError as exc:
            logger.warning("History query for %s failed: %s", entity_id, exc)
        finally:
            self.detector.query_finished(entity_id)
            if self._recovery_tasks.get(entity_id) is asyncio.current_task():
                del self._recovery_tasks[entity_id]

    # -- apply -------------------------------------------------------------------

    async def _process(self, item: _Inbound) -> None:
        if item.source != MessageSource.LOCAL:
            # Seeing our own message on the network confirms it without a resend.
            self.outbox.mark_observed(item.message.id)

        worklist: deque[tuple[Message, int]] = deque([(item.message, self.detector.next_seq())])
        while worklist:
            message, seq = worklist.popleft()
            if self.detector.is_held(message.id):
                continue
            result = self.reducer.apply(message)
            if result.outcome == ApplyOutcome.MISSING_DEPENDENCY:
                for entity_id in self.detector.hold(message, result.missing, seq):
                    self._start_recovery(entity_id)
                continue
            if not result.recorded:
                continue

            self._last_sync_ms = self.clock.now_ms()
            await self._persist(message, result)
            if self.detector.is_missing(message.id) and self.reducer.is_known(message.id):
                worklist.extend(
                    (dependent.message, dependent.seq)
                    for dependent in self.detector.release(message.id)
                )

    async def _persist(self, message: Message, result: ApplyResult) -> None:
        if self.documents is None or result.outcome != ApplyOutcome.APPLIED:
            return
        store = _STORE_BY_TYPE[message.type]
        key = message.lww_key() or message.id
        payload = message.model_dump(mode="json", exclude_none=True)
        try:
            await asyncio.to_thread(self.documents.put, store, key, payload, message.timestamp)
        except (SQLAlchemyError, OSError) as exc:
            # State stays applied in memory; the cache misses this message.
            logger.error("Could not cache %s %s: %s", message.type, message.id, exc)

    # -- listeners ---------------------------------------------------------------

    def _on_outbox_confirmed(self, entry: OutboxEntry) -> None:
        self._queue.put_nowait(_Inbound(entry.message, MessageSource.LOCAL))

    def _on_connectivity(self, connected: bool) -> None:
        self.outbox.set_connected(connected)
        if not connected:
            if self._disconnected_at_ms is None:
                self._disconnected_at_ms = self.clock.now_ms()
            return
        since = self._disconnected_at_ms
        self._disconnected_at_ms = None
        if since is not None and self._running:
            # Catch up on whatever was relayed while we were away.
            margin_ms = int(settings.recovery_cooldown_seconds * 1000)
            self._start_recovery(f"catch-up:{since}", start_ms=max(0, since - margin_ms))

    def _on_wallet_change(self, account: WalletAccount | None) -> None:
        self.identity.set_local_wallet(account)

    # -- identity and delegation -------------------------------------------------

    async def authorize(self, duration: str | timedelta = "7days") -> DelegationGrant:
        """Ask the connected wallet to authorize a delegated signing key."""
        grant = await self.delegation.create_grant(self.wallet, duration)
        if self.wallet is not None:
            self.identity.set_local_wallet(self.wallet.get_account())
        await self.identity.refresh(grant.wallet_address, force=True)
        return grant

    def revoke(self) -> None:
        self.delegation.revoke()

    def current_identity(self) -> UserIdentity | None:
        """Identity local actions will be attributed to, if any."""
        grant = self.delegation.get_active_grant()
        if grant is not None:
            return self.identity.identity(grant.wallet_address)
        if self._session_key is not None:
            return self.identity.identity(self._session_key[1])
        return None

    def _sign(self, draft: Message) -> Message:
        if self.delegation.get_active_grant() is None and self._session_key is not None:
            return MessageCodec.sign_message(draft, self._session_key[0])
        return self.delegation.sign_with_delegation(draft)

    def _require(self, action: str, cell_id: str | None = None) -> UserIdentity:
        identity = self.current_identity()
        check = self.permissions.check(action, identity, cell_id)
        if not check.allowed or identity is None:
            raise PermissionDeniedError(action, check.reason)
        return identity

    def _submit(self, draft: Message) -> Message:
        message = self._sign(draft)
        self.outbox.enqueue(message)
        return message

    # -- actions -----------------------------------------------------------------

    def create_cell(self, name: str, description: str = "", icon: str | None = None) -> Message:
        self._require("create_cell")
        return self._submit(
            CellMessage(
                timestamp=self.clock.now_ms(), name=name, description=description, icon=icon
            )
        )

    def create_post(self, cell_id: str, title: str, content: str) -> Message:
        if cell_id not in self.reducer.state.cells:
            raise LookupError(f"Unknown cell {cell_id}")
        self._require("post")
        return self._submit(
            PostMessage(timestamp=self.clock.now_ms(), cell_id=cell_id, title=title, content=content)
        )

    def create_comment(self, post_id: str, content: str) -> Message:
        if post_id not in self.reducer.state.posts:
            raise LookupError(f"Unknown post {post_id}")
        self._require("comment")
        return self._submit(
            CommentMessage(timestamp=self.clock.now_ms(), post_id=post_id, content=content)
        )

    def vote(self, target_id: str, is_upvote: bool) -> Message:
        state = self.reducer.state
        if target_id in state.posts:
            kind = TargetKind.POST
        elif target_id in state.comments:
            kind = TargetKind.COMMENT
        else:
            raise LookupError(f"Unknown vote target {target_id}")
        self._require("vote")
        return self._submit(
            VoteMessage(
                timestamp=self.clock.now_ms(),
                target_id=target_id,
                target_kind=kind,
                is_upvote=is_upvote,
            )
        )

    def moderate(
        self,
        cell_id: str,
        target_id: str,
        target_kind: TargetKind,
        reason: str | None = None,
        *,
        unmoderate: bool = False,
    ) -> Message:
        """Moderate or unmoderate a post, comment or user within a cell.

        Raises:
            UnauthorizedActionError: The local identity is not the cell admin,
                or the target does not belong to the cell.
        """
        identity = self.current_identity()
        if identity is None or not self.permissions.is_admin(identity.address, cell_id):
            raise UnauthorizedActionError("Only the cell admin can moderate")
        if target_kind != TargetKind.USER and self.permissions.cell_of(target_id) != cell_id:
            raise UnauthorizedActionError("Target does not belong to this cell")
        action = ModerationActionKind.UNMODERATE if unmoderate else ModerationActionKind.MODERATE
        return self._submit(
            ModerateMessage(
                timestamp=self.clock.now_ms(),
                cell_id=cell_id,
                target_id=target_id,
                target_kind=target_kind,
                action=action,
                reason=reason,
            )
        )

    def update_profile(
        self,
        call_sign: str | None = None,
        display_preference: DisplayPreference = DisplayPreference.WALLET_ADDRESS,
    ) -> Message:
        if self.current_identity() is None:
            raise PermissionDeniedError("update_profile", "Connect your wallet to update your profile")
        return self._submit(
            ProfileUpdateMessage(
                timestamp=self.clock.now_ms(),
                call_sign=call_sign,
                display_preference=display_preference,
            )
        )

    # -- reads -------------------------------------------------------------------

    def _scores(self, now_ms: int | None) -> tuple[dict[str, ScoredItem], int]:
        now = now_ms if now_ms is not None else self.clock.now_ms()
        state = self.reducer.state
        addresses: set[str] = set()
        for post in state.posts.values():
            addresses.add(post.author)
            addresses.update(post.upvotes)
        for comment in state.comments.values():
            addresses.add(comment.author)
            addresses.update(comment.upvotes)
        tiers = self.identity.tiers(addresses)
        return self.scorer.score_state(state, tiers, now), now

    def ranked_cells(self, now_ms: int | None = None) -> list[tuple[CellEntity, ScoredItem]]:
        scores, _ = self._scores(now_ms)
        cells = self.reducer.snapshot().cells.values()
        return sorted(
            ((cell, scores[cell.id]) for cell in cells),
            key=lambda pair: (-pair[1].score, pair[0].id),
        )

    def ranked_posts(
        self, cell_id: str | None = None, now_ms: int | None = None
    ) -> list[tuple[PostEntity, ScoredItem]]:
        scores, _ = self._scores(now_ms)
        posts = [
            post
            for post in self.reducer.snapshot().posts.values()
            if cell_id is None or post.cell_id == cell_id
        ]
        return sorted(
            ((post, scores[post.id]) for post in posts),
            key=lambda pair: (-pair[1].score, pair[0].id),
        )

    def ranked_comments(
        self, post_id: str, now_ms: int | None = None
    ) -> list[tuple[CommentEntity, ScoredItem]]:
        scores, _ = self._scores(now_ms)
        comments = [
            comment
            for comment in self.reducer.snapshot().comments.values()
            if comment.post_id == post_id
        ]
        return sorted(
            ((comment, scores[comment.id]) for comment in comments),
            key=lambda pair: (-pair[1].score, pair[0].id),
        )

    def permanently_missing(self) -> list[PermanentlyMissingReference]:
        return list(self._permanently_missing)

    def status(self) -> SyncStatus:
        counters = self.detector.counters()
        return SyncStatus(
            missing=counters.missing,
            recovered_this_session=counters.recovered_this_session,
            total_missing=counters.total_missing,
            total_recovered=counters.total_recovered,
            permanently_missing=counters.permanently_missing,
            held_messages=counters.held_messages,
            outbox_pending=self.outbox.pending_count,
            outbox_abandoned=len(self.outbox.abandoned()),
            connected=self.gateway.connected,
            dropped_invalid=self.gateway.dropped_invalid,
            last_sync_ms=self._last_sync_ms,
        )
