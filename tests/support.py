# tests/support.py
"""Shared test doubles and helpers."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable

from chorus_sync.schemas.messages import (
    CellMessage,
    CommentMessage,
    KeyScheme,
    Message,
    ModerateMessage,
    ModerationActionKind,
    PostMessage,
    TargetKind,
    VoteMessage,
)
from chorus_sync.services.codec import MessageCodec
from chorus_sync.services.crypto import CryptoService
from chorus_sync.services.reducer import ApplyOutcome, ForumState, apply_message

START_MS = 1_700_000_000_000
DAY_MS = 24 * 60 * 60 * 1000


class FakeClock:
    """Manually advanced clock shared by every component under test."""

    def __init__(self, now_ms: int = START_MS) -> None:
        self._now_ms = now_ms
        self._monotonic = 1000.0

    def now_ms(self) -> int:
        return self._now_ms

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        self._now_ms += int(seconds * 1000)
        self._monotonic += seconds


class OwnershipResolver:
    """Name resolver that reports an owned asset for chosen addresses."""

    def __init__(
        self,
        owners: dict[str, str] | None = None,
        names: dict[str, str] | None = None,
    ) -> None:
        self.owners = dict(owners or {})
        self.names = dict(names or {})
        self.calls = 0

    async def resolve_name(self, address: str) -> str | None:
        self.calls += 1
        return self.names.get(address)

    async def resolve_ownership(self, address: str) -> str | None:
        return self.owners.get(address)


class Signer:
    """A session key that signs drafts as its own author."""

    def __init__(self, scheme: KeyScheme = KeyScheme.ED25519) -> None:
        self.scheme = scheme
        self.private_key, self.public_key = CryptoService.generate_key_pair(scheme)

    @property
    def address(self) -> str:
        return self.public_key

    def sign(self, draft: Message) -> Message:
        return MessageCodec.sign_message(draft, self.private_key, self.scheme)

    def cell(self, name: str = "general", ts: int = START_MS) -> Message:
        return self.sign(CellMessage(timestamp=ts, name=name, description=f"{name} talk"))

    def post(self, cell_id: str, title: str = "hello", ts: int = START_MS + 1) -> Message:
        return self.sign(PostMessage(timestamp=ts, cell_id=cell_id, title=title, content="body"))

    def comment(self, post_id: str, content: str = "reply", ts: int = START_MS + 2) -> Message:
        return self.sign(CommentMessage(timestamp=ts, post_id=post_id, content=content))

    def vote(
        self,
        target_id: str,
        up: bool = True,
        ts: int = START_MS + 3,
        kind: TargetKind = TargetKind.POST,
    ) -> Message:
        return self.sign(
            VoteMessage(timestamp=ts, target_id=target_id, target_kind=kind, is_upvote=up)
        )

    def moderate(
        self,
        cell_id: str,
        target_id: str,
        kind: TargetKind = TargetKind.POST,
        ts: int = START_MS + 4,
        undo: bool = False,
        reason: str | None = "spam",
    ) -> Message:
        action = ModerationActionKind.UNMODERATE if undo else ModerationActionKind.MODERATE
        return self.sign(
            ModerateMessage(
                timestamp=ts,
                cell_id=cell_id,
                target_id=target_id,
                target_kind=kind,
                action=action,
                reason=reason,
            )
        )


def frame_of(message: Message) -> bytes:
    return MessageCodec.to_frame(message)


def fold(messages: Iterable[Message]) -> ForumState:
    """Fold messages in the given order, re-trying held ones as references arrive."""
    state = ForumState()
    held: list[Message] = []
    for message in messages:
        held.append(message)
        progress = True
        while progress:
            progress = False
            for candidate in list(held):
                result = apply_message(state, candidate)
                if result.outcome != ApplyOutcome.MISSING_DEPENDENCY:
                    held.remove(candidate)
                    progress = True
    return state


async def eventually(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    """Poll ``predicate`` on the running loop until it holds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Blocking variant of ``eventually`` for TestClient-based tests."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        time.sleep(0.02)
