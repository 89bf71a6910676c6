# tests/test_relevance.py
from __future__ import annotations

import math

import pytest
from support import DAY_MS, START_MS, Signer, fold

from chorus_sync.schemas.messages import TargetKind
from chorus_sync.services.identity import VerificationTier
from chorus_sync.services.relevance import RelevanceScorer

NOW = START_MS + 1


@pytest.fixture()
def scorer() -> RelevanceScorer:
    return RelevanceScorer(decay_rate=0.1, moderation_penalty=0.05)


def test_fresh_post_without_engagement_scores_base(scorer, alice: Signer) -> None:
    cell = alice.cell()
    post = alice.post(cell.id)
    state = fold([cell, post])
    scored = scorer.score_post(state.posts[post.id], [], {}, NOW)
    assert scored.score == pytest.approx(10.0)
    assert scored.details.time_decay_multiplier == 1.0
    assert not scored.details.is_verified


def test_engagement_adds_upvotes_and_comments(
    scorer, alice: Signer, bob: Signer, carol: Signer
) -> None:
    cell = alice.cell()
    post = alice.post(cell.id)
    messages = [cell, post, bob.vote(post.id), carol.vote(post.id), carol.comment(post.id)]
    state = fold(messages)
    scores = scorer.score_state(state, {}, NOW)
    details = scores[post.id].details
    assert details.upvotes == 2
    assert details.comments == 1
    assert scores[post.id].score == pytest.approx(12.5)


def test_downvotes_do_not_add_engagement(scorer, alice: Signer, bob: Signer) -> None:
    cell = alice.cell()
    post = alice.post(cell.id)
    state = fold([cell, post, bob.vote(post.id, up=False)])
    assert scorer.score_state(state, {}, NOW)[post.id].score == pytest.approx(10.0)


def test_moderated_post_is_penalized(scorer, alice: Signer) -> None:
    cell = alice.cell()
    post = alice.post(cell.id)
    state = fold([cell, post, alice.moderate(cell.id, post.id)])
    scored = scorer.score_state(state, {}, NOW)[post.id]
    assert scored.details.is_moderated
    assert scored.score == pytest.approx(10.0 * 0.05)


def test_age_decays_exponentially(scorer, alice: Signer) -> None:
    cell = alice.cell()
    post = alice.post(cell.id, ts=START_MS)
    state = fold([cell, post])
    scored = scorer.score_post(state.posts[post.id], [], {}, START_MS + DAY_MS)
    assert scored.details.days_old == pytest.approx(1.0)
    assert scored.score == pytest.approx(10.0 * math.exp(-0.1))


def test_future_timestamps_count_as_new(scorer, alice: Signer) -> None:
    cell = alice.cell()
    post = alice.post(cell.id, ts=START_MS + DAY_MS)
    state = fold([cell, post])
    scored = scorer.score_post(state.posts[post.id], [], {}, START_MS)
    assert scored.details.days_old == 0.0
    assert scored.score == pytest.approx(10.0)


def test_verified_authors_and_voters_earn_bonuses(
    scorer, alice: Signer, bob: Signer, carol: Signer
) -> None:
    cell = alice.cell()
    post = alice.post(cell.id)
    state = fold([cell, post, bob.vote(post.id), carol.comment(post.id)])
    tiers = {
        alice.address: VerificationTier.OWNER_VERIFIED,
        bob.address: VerificationTier.WALLET_CONNECTED,
        carol.address: VerificationTier.WALLET_CONNECTED,
    }
    details = scorer.score_state(state, tiers, NOW)[post.id].details
    assert details.is_verified
    # 10 base + 1 upvote + 0.5 comment
    assert details.author_verification_bonus == pytest.approx(11.5 * 0.25)
    assert details.verified_upvote_bonus == pytest.approx(0.1)
    assert details.verified_commenter_bonus == pytest.approx(0.05)
    assert details.final_score == pytest.approx(11.5 * 1.25 + 0.15)


def test_comment_scores(scorer, alice: Signer, bob: Signer) -> None:
    cell = alice.cell()
    post = alice.post(cell.id)
    comment = bob.comment(post.id)
    state = fold([cell, post, comment, alice.vote(comment.id, kind=TargetKind.COMMENT)])
    tiers = {bob.address: VerificationTier.WALLET_CONNECTED}
    scored = scorer.score_state(state, tiers, NOW)[comment.id]
    assert scored.score == pytest.approx(6.0 * 1.1)


def test_cell_scores(scorer, alice: Signer, bob: Signer) -> None:
    empty = alice.cell("empty")
    busy = alice.cell("busy")
    post = alice.post(busy.id)
    state = fold([empty, busy, post, bob.vote(post.id)])
    scores = scorer.score_state(state, {}, NOW)
    assert scores[empty.id].score == pytest.approx(15.0)
    assert scores[busy.id].score == pytest.approx(15.0 + 0.5 + 0.1)


def test_scores_are_deterministic(scorer, alice: Signer, bob: Signer) -> None:
    cell = alice.cell()
    post = alice.post(cell.id)
    messages = [cell, post, bob.vote(post.id), bob.comment(post.id)]
    first = scorer.score_state(fold(messages), {}, NOW)
    second = scorer.score_state(fold(reversed(messages)), {}, NOW)
    assert first == second
