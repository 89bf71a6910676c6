"""Read-only permission checks over reducer state."""

from __future__ import annotations

from dataclasses import dataclass

from chorus_sync.core.settings import settings
from chorus_sync.services.identity import UserIdentity, VerificationTier
from chorus_sync.services.reducer import StateReducer

_TIER_HINTS = {
    VerificationTier.WALLET_UNCONNECTED: "Connect your wallet",
    VerificationTier.WALLET_CONNECTED: "Connect and authorize your wallet",
    VerificationTier.OWNER_VERIFIED: "Verify ENS or Ordinal ownership",
}

_ACTION_LABELS = {
    "post": "post",
    "comment": "comment",
    "vote": "vote",
    "create_cell": "create cells",
}


@dataclass(frozen=True)
class PermissionCheck:
    allowed: bool
    reason: str


class PermissionEngine:
    """Answers who may do what, with a human-readable reason."""

    def __init__(
        self,
        reducer: StateReducer,
        *,
        min_tier_to_post: VerificationTier | None = None,
        min_tier_to_vote: VerificationTier | None = None,
        min_tier_to_create_cell: VerificationTier | None = None,
    ) -> None:
        self._reducer = reducer
        self._thresholds = {
            "post": min_tier_to_post or VerificationTier(settings.min_tier_to_post),
            "comment": min_tier_to_post or VerificationTier(settings.min_tier_to_post),
            "vote": min_tier_to_vote or VerificationTier(settings.min_tier_to_vote),
            "create_cell": min_tier_to_create_cell
            or VerificationTier(settings.min_tier_to_create_cell),
        }

    def is_admin(self, actor: str, cell_id: str) -> bool:
        cell = self._reducer.state.cells.get(cell_id)
        return cell is not None and cell.author == actor

    def cell_of(self, target_id: str) -> str | None:
        """Resolve the cell owning a cell, post or comment id."""
        state = self._reducer.state
        if target_id in state.cells:
            return target_id
        post = state.posts.get(target_id)
        if post is not None:
            return post.cell_id
        comment = state.comments.get(target_id)
        if comment is not None:
            return comment.cell_id
        return None

    def can_moderate(self, actor: str, target_id: str) -> bool:
        cell_id = self.cell_of(target_id)
        return cell_id is not None and self.is_admin(actor, cell_id)

    def moderate_check(self, identity: UserIdentity | None, cell_id: str | None) -> PermissionCheck:
        if identity is None:
            return PermissionCheck(False, "Connect your wallet to moderate")
        if not cell_id:
            return PermissionCheck(False, "Invalid cell")
        if cell_id not in self._reducer.state.cells:
            return PermissionCheck(False, "Cell not found")
        if self.is_admin(identity.address, cell_id):
            return PermissionCheck(True, "You can moderate this cell")
        return PermissionCheck(False, "Only cell owners can moderate")

    def _tier_check(self, action: str, identity: UserIdentity | None) -> PermissionCheck:
        label = _ACTION_LABELS[action]
        if identity is None:
            return PermissionCheck(False, f"Connect your wallet to {label}")
        required = self._thresholds[action]
        if identity.tier.at_least(required):
            return PermissionCheck(True, f"You can {label}")
        hint = _TIER_HINTS.get(required, "Verify your identity")
        return PermissionCheck(False, f"{hint} to {label}")

    def can_post(self, identity: UserIdentity | None) -> PermissionCheck:
        return self._tier_check("post", identity)

    def can_comment(self, identity: UserIdentity | None) -> PermissionCheck:
        return self._tier_check("comment", identity)

    def can_vote(self, identity: UserIdentity | None) -> PermissionCheck:
        return self._tier_check("vote", identity)

    def can_create_cell(self, identity: UserIdentity | None) -> PermissionCheck:
        return self._tier_check("create_cell", identity)

    def check(
        self, action: str, identity: UserIdentity | None, cell_id: str | None = None
    ) -> PermissionCheck:
        """Dispatch a permission check by action name."""
        if action == "moderate":
            return self.moderate_check(identity, cell_id)
        if action not in _ACTION_LABELS:
            raise ValueError(f"Unknown action: {action}")
        return self._tier_check(action, identity)
