"""Relevance scoring for posts, comments and cells.

Scores are a pure function of forum state, author verification tiers and
an explicit ``now_ms``, so two nodes with the same state rank identically.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass

from chorus_sync.core.settings import settings
from chorus_sync.services.identity import VerificationTier
from chorus_sync.services.reducer import (
    CellEntity,
    CommentEntity,
    ForumState,
    Moderated,
    PostEntity,
)

BASE_SCORES = {"post": 10.0, "comment": 5.0, "cell": 15.0}
UPVOTE_SCORE = 1.0
COMMENT_SCORE = 0.5
OWNER_VERIFIED_BONUS = 1.25
WALLET_CONNECTED_BONUS = 1.1
VERIFIED_UPVOTE_BONUS = 0.1
VERIFIED_COMMENTER_BONUS = 0.05
CELL_POST_SCORE = 0.5
CELL_UPVOTE_SCORE = 0.1

MS_PER_DAY = 1000 * 60 * 60 * 24


@dataclass(frozen=True)
class RelevanceDetails:
    base_score: float
    engagement_score: float
    author_verification_bonus: float
    verified_upvote_bonus: float
    verified_commenter_bonus: float
    time_decay_multiplier: float
    moderation_penalty: float
    final_score: float
    is_verified: bool
    upvotes: int
    comments: int
    verified_upvotes: int
    verified_commenters: int
    days_old: float
    is_moderated: bool


@dataclass(frozen=True)
class ScoredItem:
    id: str
    score: float
    details: RelevanceDetails


class RelevanceScorer:
    """Deterministic relevance calculator.

    Args:
        decay_rate: Exponential decay per day of age.
        moderation_penalty: Multiplier applied to moderated content.
    """

    def __init__(
        self,
        *,
        decay_rate: float | None = None,
        moderation_penalty: float | None = None,
    ) -> None:
        self.decay_rate = decay_rate if decay_rate is not None else settings.relevance_decay_rate
        self.moderation_penalty = (
            moderation_penalty
            if moderation_penalty is not None
            else settings.relevance_moderation_penalty
        )

    def score_post(
        self,
        post: PostEntity,
        comments: list[CommentEntity],
        tiers: Mapping[str, VerificationTier],
        now_ms: int,
    ) -> ScoredItem:
        base = BASE_SCORES["post"]
        score = base
        engagement = len(post.upvotes) * UPVOTE_SCORE + len(comments) * COMMENT_SCORE
        score += engagement

        author_bonus, is_verified = self._author_bonus(score, post.author, tiers)
        score += author_bonus

        verified_upvotes = sum(1 for voter in post.upvotes if self._verified(voter, tiers))
        upvote_bonus = verified_upvotes * VERIFIED_UPVOTE_BONUS
        score += upvote_bonus

        verified_commenters = len(
            {c.author for c in comments if self._verified(c.author, tiers)}
        )
        commenter_bonus = verified_commenters * VERIFIED_COMMENTER_BONUS
        score += commenter_bonus

        multiplier, days_old = self._decay(post.timestamp, now_ms)
        score *= multiplier

        moderated = isinstance(post.moderation, Moderated)
        penalty = self.moderation_penalty if moderated else 1.0
        score = max(0.0, score * penalty)

        return ScoredItem(
            id=post.id,
            score=score,
            details=RelevanceDetails(
                base_score=base,
                engagement_score=engagement,
                author_verification_bonus=author_bonus,
                verified_upvote_bonus=upvote_bonus,
                verified_commenter_bonus=commenter_bonus,
                time_decay_multiplier=multiplier,
                moderation_penalty=penalty,
                final_score=score,
                is_verified=is_verified,
                upvotes=len(post.upvotes),
                comments=len(comments),
                verified_upvotes=verified_upvotes,
                verified_commenters=verified_commenters,
                days_old=days_old,
                is_moderated=moderated,
            ),
        )

    def score_comment(
        self,
        comment: CommentEntity,
        tiers: Mapping[str, VerificationTier],
        now_ms: int,
    ) -> ScoredItem:
        base = BASE_SCORES["comment"]
        engagement = len(comment.upvotes) * UPVOTE_SCORE
        score = base + engagement

        author_bonus, is_verified = self._author_bonus(score, comment.author, tiers)
        score += author_bonus

        verified_upvotes = sum(1 for voter in comment.upvotes if self._verified(voter, tiers))
        upvote_bonus = verified_upvotes * VERIFIED_UPVOTE_BONUS
        score += upvote_bonus

        multiplier, days_old = self._decay(comment.timestamp, now_ms)
        score *= multiplier

        moderated = isinstance(comment.moderation, Moderated)
        penalty = self.moderation_penalty if moderated else 1.0
        score = max(0.0, score * penalty)

        return ScoredItem(
            id=comment.id,
            score=score,
            details=RelevanceDetails(
                base_score=base,
                engagement_score=engagement,
                author_verification_bonus=author_bonus,
                verified_upvote_bonus=upvote_bonus,
                verified_commenter_bonus=0.0,
                time_decay_multiplier=multiplier,
                moderation_penalty=penalty,
                final_score=score,
                is_verified=is_verified,
                upvotes=len(comment.upvotes),
                comments=0,
                verified_upvotes=verified_upvotes,
                verified_commenters=0,
                days_old=days_old,
                is_moderated=moderated,
            ),
        )

    def score_cell(self, cell: CellEntity, posts: list[PostEntity], now_ms: int) -> ScoredItem:
        base = BASE_SCORES["cell"]
        total_upvotes = sum(len(post.upvotes) for post in posts)
        engagement = len(posts) * CELL_POST_SCORE + total_upvotes * CELL_UPVOTE_SCORE
        score = base + engagement

        latest = max((post.timestamp for post in posts), default=now_ms)
        multiplier, days_old = self._decay(latest, now_ms)
        score = max(0.0, score * multiplier)

        return ScoredItem(
            id=cell.id,
            score=score,
            details=RelevanceDetails(
                base_score=base,
                engagement_score=engagement,
                author_verification_bonus=0.0,
                verified_upvote_bonus=0.0,
                verified_commenter_bonus=0.0,
                time_decay_multiplier=multiplier,
                moderation_penalty=1.0,
                final_score=score,
                is_verified=False,
                upvotes=total_upvotes,
                comments=len(posts),
                verified_upvotes=0,
                verified_commenters=0,
                days_old=days_old,
                is_moderated=False,
            ),
        )

    def score_state(
        self,
        state: ForumState,
        tiers: Mapping[str, VerificationTier],
        now_ms: int,
    ) -> dict[str, ScoredItem]:
        """Score every cell, post and comment in ``state``."""
        comments_by_post: dict[str, list[CommentEntity]] = {}
        for comment in state.comments.values():
            comments_by_post.setdefault(comment.post_id, []).append(comment)
        posts_by_cell: dict[str, list[PostEntity]] = {}
        for post in state.posts.values():
            posts_by_cell.setdefault(post.cell_id, []).append(post)

        scores: dict[str, ScoredItem] = {}
        for post in state.posts.values():
            scores[post.id] = self.score_post(
                post, comments_by_post.get(post.id, []), tiers, now_ms
            )
        for comment in state.comments.values():
            scores[comment.id] = self.score_comment(comment, tiers, now_ms)
        for cell in state.cells.values():
            scores[cell.id] = self.score_cell(cell, posts_by_cell.get(cell.id, []), now_ms)
        return scores

    @staticmethod
    def _verified(address: str, tiers: Mapping[str, VerificationTier]) -> bool:
        tier = tiers.get(address, VerificationTier.ANONYMOUS)
        return tier.at_least(VerificationTier.WALLET_CONNECTED)

    @staticmethod
    def _author_bonus(
        score: float, author: str, tiers: Mapping[str, VerificationTier]
    ) -> tuple[float, bool]:
        tier = tiers.get(author, VerificationTier.ANONYMOUS)
        if tier == VerificationTier.OWNER_VERIFIED:
            return score * (OWNER_VERIFIED_BONUS - 1), True
        if tier == VerificationTier.WALLET_CONNECTED:
            return score * (WALLET_CONNECTED_BONUS - 1), True
        return 0.0, False

    def _decay(self, timestamp_ms: int, now_ms: int) -> tuple[float, float]:
        # Future timestamps count as brand new.
        days_old = max(0.0, (now_ms - timestamp_ms) / MS_PER_DAY)
        return math.exp(-self.decay_rate * days_old), days_old
