"""Forum read and action endpoints backed by the sync engine."""

from __future__ import annotations

from collections.abc import Callable

from fastapi import APIRouter, HTTPException, status

from chorus_sync.api.deps import EngineDep
from chorus_sync.core.errors import (
    NoValidDelegationError,
    PermissionDeniedError,
    UnauthorizedActionError,
)
from chorus_sync.schemas.forum import (
    CellCreate,
    CellResponse,
    CommentCreate,
    CommentResponse,
    MessageAccepted,
    ModerationCreate,
    PostCreate,
    PostResponse,
    ProfileUpdate,
    VoteCreate,
    cell_response,
    comment_response,
    post_response,
)
from chorus_sync.schemas.messages import Message

router = APIRouter(tags=["forum"])


def _submit(action: Callable[[], Message]) -> MessageAccepted:
    """Run a local action and translate its failures into HTTP errors."""
    try:
        message = action()
    except NoValidDelegationError as err:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(err)) from err
    except PermissionDeniedError as err:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=err.reason) from err
    except UnauthorizedActionError as err:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(err)) from err
    except LookupError as err:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(err)) from err
    return MessageAccepted(id=message.id, type=message.type)


@router.get("/cells", response_model=list[CellResponse])
async def list_cells(engine: EngineDep) -> list[CellResponse]:
    """List cells ordered by relevance."""
    return [cell_response(cell, scored) for cell, scored in engine.ranked_cells()]


@router.get("/cells/{cell_id}/posts", response_model=list[PostResponse])
async def list_cell_posts(cell_id: str, engine: EngineDep) -> list[PostResponse]:
    """List the posts of one cell ordered by relevance.

    Args:
        cell_id: Cell message id
        engine: Running sync engine

    Raises:
        HTTPException: If the cell is not known locally
    """
    if cell_id not in engine.reducer.state.cells:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Cell not found")
    return [post_response(post, scored) for post, scored in engine.ranked_posts(cell_id)]


@router.get("/posts", response_model=list[PostResponse])
async def list_posts(engine: EngineDep) -> list[PostResponse]:
    return [post_response(post, scored) for post, scored in engine.ranked_posts()]


@router.get("/posts/{post_id}/comments", response_model=list[CommentResponse])
async def list_post_comments(post_id: str, engine: EngineDep) -> list[CommentResponse]:
    if post_id not in engine.reducer.state.posts:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Post not found")
    return [
        comment_response(comment, scored)
        for comment, scored in engine.ranked_comments(post_id)
    ]


@router.post("/cells", response_model=MessageAccepted, status_code=status.HTTP_202_ACCEPTED)
async def create_cell(body: CellCreate, engine: EngineDep) -> MessageAccepted:
    return _submit(lambda: engine.create_cell(body.name, body.description, body.icon))


@router.post("/posts", response_model=MessageAccepted, status_code=status.HTTP_202_ACCEPTED)
async def create_post(body: PostCreate, engine: EngineDep) -> MessageAccepted:
    return _submit(lambda: engine.create_post(body.cell_id, body.title, body.content))


@router.post("/comments", response_model=MessageAccepted, status_code=status.HTTP_202_ACCEPTED)
async def create_comment(body: CommentCreate, engine: EngineDep) -> MessageAccepted:
    return _submit(lambda: engine.create_comment(body.post_id, body.content))


@router.post("/votes", response_model=MessageAccepted, status_code=status.HTTP_202_ACCEPTED)
async def cast_vote(body: VoteCreate, engine: EngineDep) -> MessageAccepted:
    return _submit(lambda: engine.vote(body.target_id, body.is_upvote))


@router.post("/moderation", response_model=MessageAccepted, status_code=status.HTTP_202_ACCEPTED)
async def moderate(body: ModerationCreate, engine: EngineDep) -> MessageAccepted:
    """Moderate or unmoderate a post, comment or user as the cell admin."""
    return _submit(
        lambda: engine.moderate(
            body.cell_id,
            body.target_id,
            body.target_kind,
            body.reason,
            unmoderate=body.unmoderate,
        )
    )


@router.post("/profile", response_model=MessageAccepted, status_code=status.HTTP_202_ACCEPTED)
async def update_profile(body: ProfileUpdate, engine: EngineDep) -> MessageAccepted:
    return _submit(lambda: engine.update_profile(body.call_sign, body.display_preference))


@router.post("/outbox/{message_id}/retry", status_code=status.HTTP_202_ACCEPTED)
async def retry_outbox_entry(message_id: str, engine: EngineDep) -> dict[str, str]:
    """Give an abandoned message a fresh attempt budget."""
    if not engine.outbox.retry(message_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="No abandoned entry with that id"
        )
    return {"id": message_id, "status": "pending"}


@router.delete("/outbox/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def dismiss_outbox_entry(message_id: str, engine: EngineDep) -> None:
    if not engine.outbox.dismiss(message_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="No abandoned entry with that id"
        )
