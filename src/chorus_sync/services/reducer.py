"""Fold verified messages into derived forum state.

The fold is idempotent (each message id is applied at most once) and
replay-safe: any arrival order that respects dependency gating produces the
same state. Votes, moderation and profiles compete for last-write-wins slots
ordered by ``(timestamp, id)``.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from chorus_sync.schemas.messages import (
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

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Active:
    """Content is visible and unmoderated."""


@dataclass(frozen=True)
class Moderated:
    """Content was moderated by a cell admin."""

    by: str
    reason: str | None
    at: int


ModerationStatus = Active | Moderated

ACTIVE = Active()


@dataclass
class CellEntity:
    id: str
    name: str
    description: str
    icon: str | None
    author: str
    timestamp: int


@dataclass
class PostEntity:
    id: str
    cell_id: str
    author: str
    title: str
    content: str
    timestamp: int
    upvotes: set[str] = field(default_factory=set)
    downvotes: set[str] = field(default_factory=set)
    moderation: ModerationStatus = ACTIVE


@dataclass
class CommentEntity:
    id: str
    post_id: str
    cell_id: str
    author: str
    content: str
    timestamp: int
    upvotes: set[str] = field(default_factory=set)
    downvotes: set[str] = field(default_factory=set)
    moderation: ModerationStatus = ACTIVE


@dataclass
class ProfileEntity:
    address: str
    call_sign: str | None
    display_preference: DisplayPreference
    updated_at: int


@dataclass(frozen=True)
class AuditEntry:
    """A verified message that was rejected for lack of authority."""

    message_id: str
    actor: str
    target_id: str
    reason: str
    timestamp: int


@dataclass
class ForumState:
    """Derived forum state. Mutated only by ``apply_message``."""

    cells: dict[str, CellEntity] = field(default_factory=dict)
    posts: dict[str, PostEntity] = field(default_factory=dict)
    comments: dict[str, CommentEntity] = field(default_factory=dict)
    votes: dict[str, VoteMessage] = field(default_factory=dict)
    moderations: dict[str, ModerateMessage] = field(default_factory=dict)
    profile_messages: dict[str, ProfileUpdateMessage] = field(default_factory=dict)
    profiles: dict[str, ProfileEntity] = field(default_factory=dict)
    wallet_authors: set[str] = field(default_factory=set)
    applied_ids: set[str] = field(default_factory=set)
    audit_log: list[AuditEntry] = field(default_factory=list)

    def knows(self, entity_id: str) -> bool:
        return entity_id in self.cells or entity_id in self.posts or entity_id in self.comments

    def fingerprint(self) -> dict[str, Any]:
        """Order-independent view of the state for convergence checks."""
        return {
            "cells": self.cells,
            "posts": self.posts,
            "comments": self.comments,
            "votes": {key: vote.id for key, vote in self.votes.items()},
            "moderations": {key: mod.id for key, mod in self.moderations.items()},
            "profiles": self.profiles,
            "wallet_authors": frozenset(self.wallet_authors),
            "applied_ids": frozenset(self.applied_ids),
            "rejected": frozenset(entry.message_id for entry in self.audit_log),
        }


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    SUPERSEDED = "superseded"
    UNAUTHORIZED = "unauthorized"
    MISSING_DEPENDENCY = "missing_dependency"


@dataclass(frozen=True)
class ApplyResult:
    outcome: ApplyOutcome
    message_id: str
    missing: tuple[str, ...] = ()
    reason: str | None = None

    @property
    def recorded(self) -> bool:
        """True when the message id is now part of the applied set."""
        return self.outcome in (
            ApplyOutcome.APPLIED,
            ApplyOutcome.SUPERSEDED,
            ApplyOutcome.UNAUTHORIZED,
        )


def _wins(candidate: Message, incumbent: Message | None) -> bool:
    if incumbent is None:
        return True
    return (candidate.timestamp, candidate.id) > (incumbent.timestamp, incumbent.id)


def missing_references(state: ForumState, message: Message) -> tuple[str, ...]:
    """Return referenced ids that are not yet known locally."""
    return tuple(ref for ref in message.dependencies() if not state.knows(ref))


def _resolve_cell(state: ForumState, message: ModerateMessage) -> str | None:
    if message.target_kind == TargetKind.USER:
        return message.cell_id
    post = state.posts.get(message.target_id)
    if post is not None:
        return post.cell_id
    comment = state.comments.get(message.target_id)
    if comment is not None:
        return comment.cell_id
    return None


def _status_for(state: ForumState, cell_id: str, kind: TargetKind, target_id: str,
                author: str) -> ModerationStatus:
    for key in (f"{cell_id}:{kind.value}:{target_id}", f"{cell_id}:{TargetKind.USER.value}:{author}"):
        action = state.moderations.get(key)
        if action is not None and action.action == ModerationActionKind.MODERATE:
            return Moderated(by=action.author, reason=action.reason, at=action.timestamp)
    return ACTIVE


def _refresh_post(state: ForumState, post: PostEntity) -> None:
    post.moderation = _status_for(state, post.cell_id, TargetKind.POST, post.id, post.author)


def _refresh_comment(state: ForumState, comment: CommentEntity) -> None:
    comment.moderation = _status_for(
        state, comment.cell_id, TargetKind.COMMENT, comment.id, comment.author
    )


def _apply_cell(state: ForumState, message: CellMessage) -> ApplyResult:
    state.cells[message.id] = CellEntity(
        id=message.id,
        name=message.name,
        description=message.description,
        icon=message.icon,
        author=message.author,
        timestamp=message.timestamp,
    )
    return ApplyResult(ApplyOutcome.APPLIED, message.id)


def _apply_post(state: ForumState, message: PostMessage) -> ApplyResult:
    post = PostEntity(
        id=message.id,
        cell_id=message.cell_id,
        author=message.author,
        title=message.title,
        content=message.content,
        timestamp=message.timestamp,
    )
    _refresh_post(state, post)
    state.posts[message.id] = post
    return ApplyResult(ApplyOutcome.APPLIED, message.id)


def _apply_comment(state: ForumState, message: CommentMessage) -> ApplyResult:
    parent = state.posts.get(message.post_id)
    if parent is None:
        return ApplyResult(
            ApplyOutcome.UNAUTHORIZED,
            message.id,
            reason="Comment parent is not a post",
        )
    comment = CommentEntity(
        id=message.id,
        post_id=message.post_id,
        cell_id=parent.cell_id,
        author=message.author,
        content=message.content,
        timestamp=message.timestamp,
    )
    _refresh_comment(state, comment)
    state.comments[message.id] = comment
    return ApplyResult(ApplyOutcome.APPLIED, message.id)


def _apply_vote(state: ForumState, message: VoteMessage) -> ApplyResult:
    target: PostEntity | CommentEntity | None = state.posts.get(message.target_id)
    if target is None:
        target = state.comments.get(message.target_id)
    if target is None:
        return ApplyResult(
            ApplyOutcome.UNAUTHORIZED,
            message.id,
            reason="Vote target is not a post or comment",
        )
    key = message.lww_key()
    if not _wins(message, state.votes.get(key)):
        return ApplyResult(ApplyOutcome.SUPERSEDED, message.id)
    state.votes[key] = message
    target.upvotes.discard(message.author)
    target.downvotes.discard(message.author)
    if message.is_upvote:
        target.upvotes.add(message.author)
    else:
        target.downvotes.add(message.author)
    return ApplyResult(ApplyOutcome.APPLIED, message.id)


def _apply_moderation(state: ForumState, message: ModerateMessage) -> ApplyResult:
    resolved_cell = _resolve_cell(state, message)
    if resolved_cell is None or resolved_cell != message.cell_id:
        return ApplyResult(
            ApplyOutcome.UNAUTHORIZED,
            message.id,
            reason="Moderation target does not belong to the named cell",
        )
    cell = state.cells.get(resolved_cell)
    if cell is None or cell.author != message.author:
        return ApplyResult(
            ApplyOutcome.UNAUTHORIZED,
            message.id,
            reason="Only the cell admin can moderate",
        )

    key = message.lww_key()
    if not _wins(message, state.moderations.get(key)):
        return ApplyResult(ApplyOutcome.SUPERSEDED, message.id)
    state.moderations[key] = message

    if message.target_kind == TargetKind.USER:
        for post in state.posts.values():
            if post.cell_id == resolved_cell and post.author == message.target_id:
                _refresh_post(state, post)
        for comment in state.comments.values():
            if comment.cell_id == resolved_cell and comment.author == message.target_id:
                _refresh_comment(state, comment)
    elif message.target_id in state.posts:
        _refresh_post(state, state.posts[message.target_id])
    else:
        _refresh_comment(state, state.comments[message.target_id])
    return ApplyResult(ApplyOutcome.APPLIED, message.id)


def _apply_profile(state: ForumState, message: ProfileUpdateMessage) -> ApplyResult:
    key = message.lww_key()
    if not _wins(message, state.profile_messages.get(key)):
        return ApplyResult(ApplyOutcome.SUPERSEDED, message.id)
    state.profile_messages[key] = message
    state.profiles[message.author] = ProfileEntity(
        address=message.author,
        call_sign=message.call_sign,
        display_preference=message.display_preference,
        updated_at=message.timestamp,
    )
    return ApplyResult(ApplyOutcome.APPLIED, message.id)


_HANDLERS: dict[type, Callable[[ForumState, Any], ApplyResult]] = {
    CellMessage: _apply_cell,
    PostMessage: _apply_post,
    CommentMessage: _apply_comment,
    VoteMessage: _apply_vote,
    ModerateMessage: _apply_moderation,
    ProfileUpdateMessage: _apply_profile,
}


def apply_message(state: ForumState, message: Message) -> ApplyResult:
    """Fold one verified message into ``state`` in place.

    Messages with unresolved references are not recorded; the caller must
    hold them until the references arrive.
    """
    if message.id in state.applied_ids:
        return ApplyResult(ApplyOutcome.DUPLICATE, message.id)

    missing = missing_references(state, message)
    if missing:
        return ApplyResult(ApplyOutcome.MISSING_DEPENDENCY, message.id, missing=missing)

    result = _HANDLERS[type(message)](state, message)
    state.applied_ids.add(message.id)
    if result.outcome == ApplyOutcome.UNAUTHORIZED:
        target = getattr(message, "target_id", None) or getattr(message, "post_id", "")
        state.audit_log.append(
            AuditEntry(
                message_id=message.id,
                actor=message.author,
                target_id=target,
                reason=result.reason or "unauthorized",
                timestamp=message.timestamp,
            )
        )
        logger.info(
            "Rejected %s %s from %s: %s", message.type, message.id, message.author, result.reason
        )
        return result
    if message.delegation_proof is not None:
        state.wallet_authors.add(message.author)
    return result


class StateReducer:
    """Owner of the live ``ForumState``.

    Only the sync engine's apply loop calls ``apply``; readers work on
    ``snapshot()`` copies.
    """

    def __init__(self, state: ForumState | None = None) -> None:
        self._state = state or ForumState()
        self._listeners: list[Callable[[Message, ApplyResult], None]] = []

    @property
    def state(self) -> ForumState:
        return self._state

    def apply(self, message: Message) -> ApplyResult:
        result = apply_message(self._state, message)
        if result.recorded:
            for listener in list(self._listeners):
                listener(message, result)
        return result

    def missing_references(self, message: Message) -> tuple[str, ...]:
        return missing_references(self._state, message)

    def is_known(self, entity_id: str) -> bool:
        return self._state.knows(entity_id)

    def has_applied(self, message_id: str) -> bool:
        return message_id in self._state.applied_ids

    def snapshot(self) -> ForumState:
        return copy.deepcopy(self._state)

    def on_applied(self, listener: Callable[[Message, ApplyResult], None]) -> Callable[[], None]:
        """Register a callback for every recorded message; returns an unsubscribe."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe
