"""Request and response schemas for the local node API."""

from __future__ import annotations

from pydantic import BaseModel, Field

from chorus_sync.schemas.messages import DisplayPreference, TargetKind
from chorus_sync.services.reducer import CellEntity, CommentEntity, Moderated, PostEntity
from chorus_sync.services.relevance import ScoredItem


class ModerationView(BaseModel):
    moderated: bool
    moderated_by: str | None = None
    reason: str | None = None
    moderated_at: int | None = None


class CellResponse(BaseModel):
    """Cell as shown in the cell directory."""

    id: str
    name: str
    description: str
    icon: str | None
    author: str
    timestamp: int
    relevance: float


class PostResponse(BaseModel):
    """Post with derived vote tallies, moderation and relevance."""

    id: str
    cell_id: str
    author: str
    title: str
    content: str
    timestamp: int
    upvotes: int
    downvotes: int
    moderation: ModerationView
    relevance: float


class CommentResponse(BaseModel):
    id: str
    post_id: str
    cell_id: str
    author: str
    content: str
    timestamp: int
    upvotes: int
    downvotes: int
    moderation: ModerationView
    relevance: float


class MessageAccepted(BaseModel):
    """Acknowledgement that a signed message entered the outbox."""

    id: str
    type: str
    status: str = "pending"


class CellCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=5000)
    icon: str | None = None


class PostCreate(BaseModel):
    cell_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=300)
    content: str = Field(..., min_length=1, max_length=40000)


class CommentCreate(BaseModel):
    post_id: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1, max_length=10000)


class VoteCreate(BaseModel):
    target_id: str = Field(..., min_length=1)
    is_upvote: bool


class ModerationCreate(BaseModel):
    """Schema for a moderation or unmoderation request."""

    cell_id: str = Field(..., min_length=1)
    target_id: str = Field(..., min_length=1)
    target_kind: TargetKind
    reason: str | None = Field(default=None, max_length=1000)
    unmoderate: bool = False


class ProfileUpdate(BaseModel):
    call_sign: str | None = Field(default=None, max_length=64)
    display_preference: DisplayPreference = DisplayPreference.WALLET_ADDRESS


class DelegationCreate(BaseModel):
    duration: str = Field(default="7days", description="Named duration preset")


def moderation_view(entity: PostEntity | CommentEntity) -> ModerationView:
    status = entity.moderation
    if isinstance(status, Moderated):
        return ModerationView(
            moderated=True,
            moderated_by=status.by,
            reason=status.reason,
            moderated_at=status.at,
        )
    return ModerationView(moderated=False)


def cell_response(cell: CellEntity, scored: ScoredItem) -> CellResponse:
    return CellResponse(
        id=cell.id,
        name=cell.name,
        description=cell.description,
        icon=cell.icon,
        author=cell.author,
        timestamp=cell.timestamp,
        relevance=scored.score,
    )


def post_response(post: PostEntity, scored: ScoredItem) -> PostResponse:
    return PostResponse(
        id=post.id,
        cell_id=post.cell_id,
        author=post.author,
        title=post.title,
        content=post.content,
        timestamp=post.timestamp,
        upvotes=len(post.upvotes),
        downvotes=len(post.downvotes),
        moderation=moderation_view(post),
        relevance=scored.score,
    )


def comment_response(comment: CommentEntity, scored: ScoredItem) -> CommentResponse:
    return CommentResponse(
        id=comment.id,
        post_id=comment.post_id,
        cell_id=comment.cell_id,
        author=comment.author,
        content=comment.content,
        timestamp=comment.timestamp,
        upvotes=len(comment.upvotes),
        downvotes=len(comment.downvotes),
        moderation=moderation_view(comment),
        relevance=scored.score,
    )
